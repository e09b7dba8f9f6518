import itertools
import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from runner_pool.context import Context
from runner_pool.drivers.base import DEFAULT_STATES, Driver, tags_match
from runner_pool.errors import CloudUnreachable, ProvisionFailed, TagConflict
from runner_pool.models import Instance, InstanceState, PoolSpec


logger = logging.getLogger(__name__)


@dataclass
class _Record:
    id: str
    ip: str
    state: str
    launch_time: datetime
    tags: dict[str, str] = field(default_factory=dict)
    user_data_b64: str = ""


class NoopDriver(Driver):
    """In-memory cloud used for local runs and tests.

    Every operation is atomic under one lock, so ``tag`` with ``expect`` is a
    true compare-and-set, like a cloud that serializes tag updates server-side.
    """

    provider = "noop"

    def __init__(self, address: str = "127.0.0.1", region: str = "local"):
        self.address = address
        self.region = region
        self._lock = threading.Lock()
        self._records: dict[str, _Record] = {}
        self._ids = itertools.count(1)
        self.provision_calls = 0
        self.destroy_calls: list[tuple[str, ...]] = []
        self.fail_provision = False
        self.fail_ping = False

    def provision(
        self, ctx: Context, spec: PoolSpec, tags: Mapping[str, str]
    ) -> Instance:
        ctx.check()
        with self._lock:
            self.provision_calls += 1
            if self.fail_provision:
                raise ProvisionFailed(
                    pool=spec.name,
                    provider=self.provider,
                    stage="create",
                    detail="provisioning disabled",
                )
            instance_id = f"noop-{next(self._ids):06d}"
            record = _Record(
                id=instance_id,
                ip=self.address,
                state="running",
                launch_time=datetime.now(UTC),
                tags=dict(tags),
                user_data_b64=spec.user_data_b64,
            )
            self._records[instance_id] = record
            logger.debug("noop: created instance id=%s pool=%s", instance_id, spec.name)
            return self._to_instance(record)

    def destroy(self, ctx: Context, *instance_ids: str) -> None:
        if not instance_ids:
            return
        with self._lock:
            self.destroy_calls.append(tuple(instance_ids))
            for instance_id in instance_ids:
                record = self._records.get(instance_id)
                if record is not None:
                    record.state = "terminated"

    def tag(
        self,
        ctx: Context,
        instance_id: str,
        tags: Mapping[str, str],
        remove: Iterable[str] = (),
        expect: Mapping[str, str | None] | None = None,
    ) -> None:
        ctx.check()
        with self._lock:
            record = self._records.get(instance_id)
            if record is None or record.state == "terminated":
                raise TagConflict(instance_id=instance_id, expected=dict(expect or {}))
            if expect is not None and not tags_match(record.tags, expect):
                raise TagConflict(instance_id=instance_id, expected=dict(expect))
            for key in remove:
                record.tags.pop(key, None)
            record.tags.update(tags)

    def get(self, ctx: Context, instance_id: str) -> Instance | None:
        with self._lock:
            record = self._records.get(instance_id)
            if record is None or record.state == "terminated":
                return None
            return self._to_instance(record)

    def ping(self, ctx: Context) -> None:
        if self.fail_ping:
            raise CloudUnreachable(provider=self.provider, detail="ping disabled")

    def inject(
        self,
        tags: Mapping[str, str],
        launch_time: datetime | None = None,
        ip: str | None = None,
    ) -> Instance:
        """Add an instance that was not created through ``provision``."""
        with self._lock:
            instance_id = f"noop-{next(self._ids):06d}"
            record = _Record(
                id=instance_id,
                ip=self.address if ip is None else ip,
                state="running",
                launch_time=launch_time or datetime.now(UTC),
                tags=dict(tags),
            )
            self._records[instance_id] = record
            return self._to_instance(record)

    def tags_of(self, instance_id: str) -> dict[str, str]:
        with self._lock:
            return dict(self._records[instance_id].tags)

    @staticmethod
    def _to_instance(record: _Record) -> Instance:
        return Instance(
            id=record.id,
            ip=record.ip,
            state=InstanceState.CREATING,
            created_at=record.launch_time,
            tags=dict(record.tags),
        )

    def list(
        self,
        ctx: Context,
        tags: Mapping[str, str],
        states: Iterable[str] = DEFAULT_STATES,
    ) -> list[Instance]:
        ctx.check()
        wanted = set(states)
        with self._lock:
            return [
                self._to_instance(record)
                for record in self._records.values()
                if record.state in wanted and tags_match(record.tags, tags)
            ]
