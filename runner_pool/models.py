import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from runner_pool.state_machine import can_transition


RUNNER_NAME = "drone-runner-aws"

TAG_DRONE = "drone"
TAG_CREATOR = "creator"
TAG_POOL = "pool"
TAG_STATUS = "status"
TAG_ACQUIRED_FROM = "acquired-from"
TAG_STAGE_ID = "stage-id"
STATUS_IN_USE = "in-use"

# keys only the pool may set; caller tags never override them
OWNERSHIP_TAGS = frozenset(
    {TAG_DRONE, TAG_CREATOR, TAG_POOL, TAG_STATUS, TAG_ACQUIRED_FROM}
)
RESERVED_TAGS = OWNERSHIP_TAGS | {TAG_STAGE_ID}

OS_LINUX = "linux"
OS_WINDOWS = "windows"
OS_DARWIN = "darwin"
SUPPORTED_OS = {OS_LINUX, OS_WINDOWS, OS_DARWIN}
SUPPORTED_ARCH = {"amd64", "arm64"}


class InstanceState(str, Enum):
    CREATING = "creating"
    FREE = "free"
    IN_USE = "in_use"
    DESTROYING = "destroying"
    GONE = "gone"


@dataclass
class Instance:
    id: str
    ip: str = ""
    pool: str = ""
    state: InstanceState = InstanceState.CREATING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state_since: datetime = field(default_factory=lambda: datetime.now(UTC))
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def is_busy(self) -> bool:
        return self.tags.get(TAG_STATUS) == STATUS_IN_USE

    def age(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        return (now - self.created_at).total_seconds()

    def move_to(self, target: InstanceState) -> None:
        if not can_transition(self.state.value, target.value):
            raise ValueError(
                f"instance {self.id}: invalid transition {self.state.value} -> {target.value}"
            )
        if target != self.state:
            self.state = target
            self.state_since = datetime.now(UTC)


@dataclass(frozen=True)
class Platform:
    os: str = OS_LINUX
    arch: str = "amd64"


@dataclass(frozen=True)
class Account:
    access_key_id: str = ""
    access_key_secret: str = ""
    region: str = "us-east-1"
    availability_zone: str = ""
    project_id: str = ""
    json_path: str = ""


@dataclass(frozen=True)
class Disk:
    size: int = 32
    type: str = "gp2"
    iops: int = 0


@dataclass(frozen=True)
class Network:
    subnet_id: str = ""
    security_groups: tuple[str, ...] = ()
    private_ip: bool = False
    network: str = ""
    subnetwork: str = ""


@dataclass(frozen=True)
class ServiceAccount:
    email: str = ""
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class VMShape:
    image: str = ""
    instance_type: str = ""
    user: str = "root"
    disk: Disk = field(default_factory=Disk)
    network: Network = field(default_factory=Network)
    iam_profile_arn: str = ""
    service_account: ServiceAccount = field(default_factory=ServiceAccount)
    key_pair_name: str = ""
    device: str = "/dev/sda1"
    zones: tuple[str, ...] = ()


@dataclass(frozen=True)
class PoolSpec:
    name: str
    provider: str = "amazon"
    min_size: int = 0
    max_size: int = 100
    platform: Platform = field(default_factory=Platform)
    account: Account = field(default_factory=Account)
    shape: VMShape = field(default_factory=VMShape)
    user_data: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def user_data_b64(self) -> str:
        return base64.b64encode(self.user_data.encode("utf-8")).decode("ascii")
