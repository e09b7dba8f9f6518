"""Pool catalog loader.

The catalog is a YAML stream, one document per pool::

    name: ubuntu
    min_pool_size: 2
    max_pool_size: 4
    platform: {os: linux, arch: amd64}
    account: {region: us-east-2}
    instance:
      ami: ami-0123456789
      network: {subnet_id: subnet-1, security_groups: [sg-1]}

Every document is validated, defaults are applied and the bootstrap user-data
is rendered, producing one immutable :class:`PoolSpec` per document.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from runner_pool.config import Settings
from runner_pool.errors import ConfigInvalid
from runner_pool.models import (
    OS_LINUX,
    OS_WINDOWS,
    SUPPORTED_ARCH,
    SUPPORTED_OS,
    Account,
    Disk,
    Network,
    Platform,
    PoolSpec,
    ServiceAccount,
    VMShape,
)
from runner_pool.userdata import BootstrapParams, custom, default_user_data


logger = logging.getLogger(__name__)

PROVIDERS = {"amazon", "google", "noop"}
DEFAULT_MAX_POOL_SIZE = 100
DEFAULT_REGION = "us-east-1"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PlatformDef(_Section):
    os: str = ""
    arch: str = ""


class AccountDef(_Section):
    access_key_id: str = ""
    access_key_secret: str = ""
    region: str = ""
    availability_zone: str = ""
    project_id: str = ""
    json_path: str = ""


class DiskDef(_Section):
    size: int = 0
    type: str = ""
    iops: int = 0


class NetworkDef(_Section):
    subnet_id: str = ""
    security_groups: list[str] = Field(default_factory=list)
    private_ip: bool = False
    network: str = ""
    subnetwork: str = ""


class DeviceDef(_Section):
    name: str = ""


class ServiceAccountDef(_Section):
    email: str = ""
    scopes: list[str] = Field(default_factory=list)


class InstanceDef(_Section):
    ami: str = ""
    image: str = ""
    type: str = ""
    user: str = ""
    iam_profile_arn: str = ""
    key_pair_name: str = ""
    zone: list[str] = Field(default_factory=list)
    tags: dict[str, str] | None = None
    disk: DiskDef = Field(default_factory=DiskDef)
    network: NetworkDef = Field(default_factory=NetworkDef)
    device: DeviceDef = Field(default_factory=DeviceDef)
    service_account: ServiceAccountDef = Field(default_factory=ServiceAccountDef)


class PoolDef(_Section):
    name: str = ""
    type: str = "amazon"
    min_pool_size: int = 0
    max_pool_size: int = 0
    init_script: str = ""
    platform: PlatformDef = Field(default_factory=PlatformDef)
    account: AccountDef = Field(default_factory=AccountDef)
    instance: InstanceDef = Field(default_factory=InstanceDef)


def _default_instance_type(provider: str, arch: str) -> str:
    if provider == "google":
        return "t2a-standard-1" if arch == "arm64" else "e2-small"
    return "a1.medium" if arch == "arm64" else "t3.nano"


def _apply_defaults(pool: PoolDef, settings: Settings) -> None:
    if pool.min_pool_size < 0:
        pool.min_pool_size = 0
    if pool.max_pool_size <= 0:
        pool.max_pool_size = DEFAULT_MAX_POOL_SIZE
    if pool.min_pool_size > pool.max_pool_size:
        pool.min_pool_size = pool.max_pool_size

    account = pool.account
    if not account.access_key_id:
        account.access_key_id = settings.aws_access_key_id
    if not account.access_key_secret:
        account.access_key_secret = settings.aws_access_key_secret
    if not account.region:
        account.region = settings.aws_region or DEFAULT_REGION

    if not pool.platform.os:
        pool.platform.os = OS_LINUX
    if not pool.platform.arch:
        pool.platform.arch = "amd64"

    instance = pool.instance
    if not instance.type:
        instance.type = _default_instance_type(pool.type, pool.platform.arch)
    if instance.tags is None:
        instance.tags = {}
    if instance.disk.size == 0:
        instance.disk.size = 32
    if not instance.disk.type:
        instance.disk.type = "pd-standard" if pool.type == "google" else "gp2"
    if instance.disk.type == "io1" and instance.disk.iops == 0:
        instance.disk.iops = 100
    if not instance.device.name:
        instance.device.name = "/dev/sda1"
    if not instance.user:
        instance.user = "Administrator" if pool.platform.os == OS_WINDOWS else "root"
    if not instance.key_pair_name:
        instance.key_pair_name = settings.aws_key_pair_name
    if not instance.zone and account.availability_zone:
        instance.zone = [account.availability_zone]


def _validate(pool: PoolDef, index: int) -> None:
    if not pool.name:
        raise ConfigInvalid(f"pool definition #{index} has no name")
    if pool.type not in PROVIDERS:
        raise ConfigInvalid(
            f"pool {pool.name!r}: unknown provider {pool.type!r}, expected one of {sorted(PROVIDERS)}"
        )
    if pool.platform.os not in SUPPORTED_OS:
        raise ConfigInvalid(f"pool {pool.name!r}: unsupported os {pool.platform.os!r}")
    if pool.platform.arch not in SUPPORTED_ARCH:
        raise ConfigInvalid(
            f"pool {pool.name!r}: unsupported arch {pool.platform.arch!r}"
        )
    if pool.type == "google":
        if not pool.account.project_id:
            raise ConfigInvalid(f"pool {pool.name!r}: google pools need account.project_id")
        if not pool.instance.zone:
            raise ConfigInvalid(f"pool {pool.name!r}: google pools need instance.zone")


def _read_public_key(settings: Settings) -> str:
    if not settings.public_key_file:
        return ""
    try:
        return Path(settings.public_key_file).read_text()
    except OSError as exc:
        raise ConfigInvalid(f"unable to read public key file: {exc}") from exc


def _render_user_data(
    pool: PoolDef, settings: Settings, base_dir: Path, public_key: str
) -> str:
    params = BootstrapParams(
        platform=pool.platform.os,
        arch=pool.platform.arch,
        lite_engine_path=settings.lite_engine_path,
        public_key=public_key,
        certificate_folder=settings.certificate_folder,
    )
    if not pool.init_script:
        return default_user_data(params)

    script_path = Path(pool.init_script)
    if not script_path.is_absolute():
        script_path = base_dir / script_path
    try:
        template = script_path.read_text()
    except OSError as exc:
        raise ConfigInvalid(
            f"pool {pool.name!r}: failed to load init script template {script_path}: {exc}"
        ) from exc
    return custom(template, params)


def _to_spec(pool: PoolDef, user_data: str) -> PoolSpec:
    instance = pool.instance
    return PoolSpec(
        name=pool.name,
        provider=pool.type,
        min_size=pool.min_pool_size,
        max_size=pool.max_pool_size,
        platform=Platform(os=pool.platform.os, arch=pool.platform.arch),
        account=Account(
            access_key_id=pool.account.access_key_id,
            access_key_secret=pool.account.access_key_secret,
            region=pool.account.region,
            availability_zone=pool.account.availability_zone,
            project_id=pool.account.project_id,
            json_path=pool.account.json_path,
        ),
        shape=VMShape(
            image=instance.ami or instance.image,
            instance_type=instance.type,
            user=instance.user,
            disk=Disk(
                size=instance.disk.size,
                type=instance.disk.type,
                iops=instance.disk.iops,
            ),
            network=Network(
                subnet_id=instance.network.subnet_id,
                security_groups=tuple(instance.network.security_groups),
                private_ip=instance.network.private_ip,
                network=instance.network.network,
                subnetwork=instance.network.subnetwork,
            ),
            iam_profile_arn=instance.iam_profile_arn,
            service_account=ServiceAccount(
                email=instance.service_account.email,
                scopes=tuple(instance.service_account.scopes),
            ),
            key_pair_name=instance.key_pair_name,
            device=instance.device.name,
            zones=tuple(instance.zone),
        ),
        user_data=user_data,
        tags=dict(instance.tags or {}),
    )


def parse_pool_file(
    text: str, settings: Settings, base_dir: Path | None = None
) -> list[PoolSpec]:
    base_dir = base_dir or Path.cwd()
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as exc:
        raise ConfigInvalid(f"malformed pool file: {exc}") from exc

    public_key = _read_public_key(settings)
    specs: list[PoolSpec] = []
    seen: set[str] = set()
    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ConfigInvalid(f"pool definition #{index} is not a mapping")
        try:
            pool = PoolDef.model_validate(document)
        except ValidationError as exc:
            raise ConfigInvalid(f"pool definition #{index} is invalid: {exc}") from exc

        _apply_defaults(pool, settings)
        _validate(pool, index)
        if pool.name in seen:
            raise ConfigInvalid(f"pool {pool.name!r} defined more than once")
        seen.add(pool.name)

        if not pool.account.access_key_id and pool.type == "amazon":
            logger.info(
                "pool=%s no AWS access key provided, falling back to instance profile",
                pool.name,
            )

        user_data = _render_user_data(pool, settings, base_dir, public_key)
        specs.append(_to_spec(pool, user_data))
        logger.info(
            "parsed pool definition name=%s provider=%s os=%s arch=%s min=%s max=%s init_script=%s",
            pool.name,
            pool.type,
            pool.platform.os,
            pool.platform.arch,
            pool.min_pool_size,
            pool.max_pool_size,
            pool.init_script or "-",
        )
    return specs


def load_pool_file(path: str, settings: Settings) -> list[PoolSpec]:
    pool_path = Path(path)
    try:
        text = pool_path.read_text()
    except OSError as exc:
        raise ConfigInvalid(f"unable to read pool file {path}: {exc}") from exc
    return parse_pool_file(text, settings, base_dir=pool_path.resolve().parent)
