"""Warm pool of interchangeable VMs backed by one cloud shape.

Pool membership lives in cloud tags only: a free instance carries
``pool=<name>``, a busy one ``status=in-use`` and ``acquired-from=<name>``.
Counts are always derived from a fresh cloud listing plus the number of
provisions this process has in flight.
"""

import logging
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime

from runner_pool.context import Context
from runner_pool.drivers.base import Driver, tags_match
from runner_pool.errors import (
    InstanceNotFound,
    OperationCancelled,
    PoolExhausted,
    ProvisionFailed,
    TagConflict,
)
from runner_pool.metrics import metrics
from runner_pool.models import (
    OWNERSHIP_TAGS,
    RUNNER_NAME,
    STATUS_IN_USE,
    TAG_ACQUIRED_FROM,
    TAG_CREATOR,
    TAG_DRONE,
    TAG_POOL,
    TAG_STATUS,
    Instance,
    InstanceState,
    PoolSpec,
)
from runner_pool.strategy import MinMax, Strategy


logger = logging.getLogger(__name__)

COUNT_STATES = ("pending", "running")
MAX_ACQUIRE_ATTEMPTS = 10
MAX_PARALLEL_PROVISION = 8


class Pool:
    def __init__(
        self,
        spec: PoolSpec,
        driver: Driver,
        *,
        runner_name: str,
        strategy: Strategy | None = None,
        parent_ctx: Context | None = None,
    ):
        self.spec = spec
        self.name = spec.name
        self.driver = driver
        self.runner_name = runner_name
        self.strategy = strategy or MinMax()

        self._lock = threading.Lock()
        self._inflight_free = 0
        self._inflight_busy = 0

        self._background = Context(parent=parent_ctx)
        self._replenish_state = threading.Lock()
        self._replenish_running = False
        self._replenish_again = False
        self._replenish_idle = threading.Event()
        self._replenish_idle.set()

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def owner_tags(self) -> dict[str, str]:
        return {TAG_DRONE: RUNNER_NAME, TAG_CREATOR: self.runner_name}

    def free_tags(self) -> dict[str, str]:
        return {**self.owner_tags(), TAG_POOL: self.name}

    def busy_tags(self) -> dict[str, str]:
        return {
            **self.owner_tags(),
            TAG_STATUS: STATUS_IN_USE,
            TAG_ACQUIRED_FROM: self.name,
        }

    def _caller_tags(self, tags: Mapping[str, str] | None) -> dict[str, str]:
        dropped = sorted(key for key in (tags or {}) if key in OWNERSHIP_TAGS)
        if dropped:
            logger.warning("pool=%s ignoring reserved tags keys=%s", self.name, dropped)
        return {k: v for k, v in (tags or {}).items() if k not in OWNERSHIP_TAGS}

    def count_free(self, ctx: Context) -> int:
        with self._lock:
            _, free = self.list(ctx)
            return len(free)

    def count_busy(self, ctx: Context) -> int:
        with self._lock:
            busy, _ = self.list(ctx)
            return len(busy)

    def acquire(
        self, ctx: Context, extra_tags: Mapping[str, str] | None = None
    ) -> Instance:
        extra = self._caller_tags(extra_tags)
        for attempt in range(1, MAX_ACQUIRE_ATTEMPTS + 1):
            ctx.check()
            with self._lock:
                busy, free = self.list(ctx)
                candidates = sorted(
                    (instance for instance in free if instance.ip),
                    key=lambda instance: instance.created_at,
                )
                if candidates:
                    chosen = candidates[0]
                    if self._claim(ctx, chosen, extra, attempt):
                        metrics.inc("pool_acquired_total")
                        logger.info(
                            "pool=%s acquired instance id=%s ip=%s",
                            self.name,
                            chosen.id,
                            chosen.ip,
                        )
                        self.trigger_replenish()
                        return chosen
                    continue

                busy_count = len(busy) + self._inflight_busy
                free_count = len(free) + self._inflight_free
                if not self.strategy.can_create(
                    self.spec.min_size, self.spec.max_size, busy_count, free_count
                ):
                    metrics.inc("pool_exhausted_total")
                    raise PoolExhausted(
                        pool=self.name,
                        busy=busy_count,
                        free=free_count,
                        max_size=self.spec.max_size,
                    )
                self._inflight_busy += 1

            instance = self._provision_busy(ctx, extra)
            self.trigger_replenish()
            return instance

        metrics.inc("pool_exhausted_total")
        raise PoolExhausted(
            pool=self.name, busy=-1, free=-1, max_size=self.spec.max_size
        )

    def _claim(
        self, ctx: Context, instance: Instance, extra: dict[str, str], attempt: int
    ) -> bool:
        tags = {**extra, **self.busy_tags()}
        try:
            self.driver.tag(
                ctx,
                instance.id,
                tags,
                remove=[TAG_POOL],
                expect={TAG_POOL: self.name, TAG_STATUS: None},
            )
        except TagConflict as exc:
            metrics.inc("pool_tag_conflicts_total")
            logger.info("pool=%s lost acquire race attempt=%s: %s", self.name, attempt, exc)
            return False
        except OperationCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "pool=%s retag failed id=%s attempt=%s error=%s",
                self.name,
                instance.id,
                attempt,
                exc,
            )
            return False
        instance.tags.pop(TAG_POOL, None)
        instance.tags.update(tags)
        instance.move_to(InstanceState.IN_USE)
        return True

    def _provision_busy(self, ctx: Context, extra: dict[str, str]) -> Instance:
        tags = {**self._caller_tags(self.spec.tags), **extra, **self.busy_tags()}
        logger.info("pool=%s no free instance, provisioning on demand", self.name)
        try:
            instance = self.driver.provision(ctx, self.spec, tags)
        except Exception:
            metrics.inc("pool_provision_failures_total")
            raise
        finally:
            with self._lock:
                self._inflight_busy -= 1
        instance.pool = self.name
        instance.move_to(InstanceState.IN_USE)
        metrics.inc("pool_provisioned_on_demand_total")
        logger.info(
            "pool=%s acquired on-demand instance id=%s ip=%s",
            self.name,
            instance.id,
            instance.ip,
        )
        return instance

    def _provision_free(self, ctx: Context) -> Instance:
        tags = {**self._caller_tags(self.spec.tags), **self.free_tags()}
        try:
            instance = self.driver.provision(ctx, self.spec, tags)
        finally:
            with self._lock:
                self._inflight_free -= 1
        instance.pool = self.name
        instance.move_to(InstanceState.FREE)
        return instance

    def owns(self, instance: Instance) -> bool:
        """Whether ``instance`` was created by this runner for this pool."""
        stored = self.driver.stored_tags
        if not tags_match(instance.tags, stored(self.owner_tags())):
            return False
        return tags_match(instance.tags, stored({TAG_POOL: self.name})) or tags_match(
            instance.tags, stored({TAG_ACQUIRED_FROM: self.name})
        )

    def release(self, ctx: Context, instance_id: str) -> None:
        instance = self.driver.get(ctx, instance_id)
        if instance is None:
            logger.info("pool=%s instance already gone id=%s", self.name, instance_id)
            return
        if not self.owns(instance):
            logger.warning(
                "pool=%s refusing to release foreign instance id=%s tags=%s",
                self.name,
                instance_id,
                instance.tags,
            )
            raise InstanceNotFound(pool=self.name, key="id", value=instance_id)
        instance.pool = self.name
        self._destroy(ctx, [instance])
        metrics.inc("pool_released_total")
        logger.info("pool=%s released instance id=%s", self.name, instance_id)
        self.trigger_replenish()

    def _destroy(self, ctx: Context, instances: list[Instance]) -> None:
        if not instances:
            return
        for instance in instances:
            instance.move_to(InstanceState.DESTROYING)
        self.driver.destroy(ctx, *(instance.id for instance in instances))
        for instance in instances:
            instance.move_to(InstanceState.GONE)

    def replenish(self, ctx: Context) -> int:
        """Top the pool up toward its floor; return how many instances were created."""
        with self._lock:
            busy, free = self.list(ctx)
            busy_count = len(busy) + self._inflight_busy
            free_count = len(free) + self._inflight_free
            create, remove = self.strategy.count_create_remove(
                self.spec.min_size, self.spec.max_size, busy_count, free_count
            )
            if remove:
                surplus = sorted(free, key=lambda instance: instance.created_at)[:remove]
                self._destroy(ctx, surplus)
                ids = [instance.id for instance in surplus]
                logger.info("pool=%s removed surplus free instances ids=%s", self.name, ids)
            self._inflight_free += create

        if create == 0:
            return 0
        logger.info(
            "pool=%s replenishing create=%s busy=%s free=%s min=%s max=%s",
            self.name,
            create,
            busy_count,
            free_count,
            self.spec.min_size,
            self.spec.max_size,
        )

        created = 0
        failure: Exception | None = None
        with ThreadPoolExecutor(
            max_workers=min(create, MAX_PARALLEL_PROVISION),
            thread_name_prefix=f"provision-{self.name}",
        ) as executor:
            futures = [executor.submit(self._provision_free, ctx) for _ in range(create)]
            for future in as_completed(futures):
                try:
                    instance = future.result()
                except Exception as exc:  # noqa: BLE001
                    if failure is None:
                        failure = exc
                        # abort the cycle; provisions not yet started are dropped
                        for pending in futures:
                            if pending.cancel():
                                with self._lock:
                                    self._inflight_free -= 1
                    continue
                created += 1
                logger.debug("pool=%s added free instance id=%s", self.name, instance.id)

        if failure is not None:
            metrics.inc("pool_provision_failures_total")
            logger.error(
                "pool=%s replenish aborted created=%s wanted=%s error=%s",
                self.name,
                created,
                create,
                failure,
            )
            raise failure
        return created

    def trigger_replenish(self) -> None:
        """Schedule a background replenish, coalescing with one already running."""
        with self._replenish_state:
            if self._background.done():
                return
            if self._replenish_running:
                self._replenish_again = True
                return
            self._replenish_running = True
            self._replenish_idle.clear()
        thread = threading.Thread(
            target=self._replenish_worker,
            name=f"replenish-{self.name}",
            daemon=True,
        )
        thread.start()

    def _replenish_worker(self) -> None:
        while True:
            try:
                self.replenish(self._background)
            except OperationCancelled:
                logger.debug("pool=%s background replenish cancelled", self.name)
            except ProvisionFailed as exc:
                logger.warning("pool=%s background replenish failed: %s", self.name, exc)
            except Exception as exc:  # noqa: BLE001
                logger.exception("pool=%s background replenish failed: %s", self.name, exc)
            with self._replenish_state:
                if self._replenish_again and not self._background.done():
                    self._replenish_again = False
                    continue
                self._replenish_running = False
                self._replenish_again = False
                self._replenish_idle.set()
                return

    def wait_replenished(self, timeout: float | None = None) -> bool:
        return self._replenish_idle.wait(timeout)

    def stop(self) -> None:
        """Cancel background replenishing; in-flight cloud calls stop at their next check."""
        self._background.cancel()

    def clean(
        self, ctx: Context, destroy_busy: bool = True, destroy_free: bool = True
    ) -> int:
        with self._lock:
            busy, free = self.list(ctx)
            doomed: list[Instance] = []
            if destroy_busy:
                doomed.extend(busy)
            if destroy_free:
                doomed.extend(free)
            self._destroy(ctx, doomed)
        logger.info(
            "pool=%s cleaned instances=%s busy=%s free=%s",
            self.name,
            len(doomed),
            destroy_busy,
            destroy_free,
        )
        return len(doomed)

    def purge_stale(
        self,
        ctx: Context,
        busy_max_age: float,
        free_max_age: float,
        now: datetime | None = None,
    ) -> tuple[list[str], list[str]]:
        """Destroy instances older than their limit; return ``(busy_ids, free_ids)``."""
        now = now or datetime.now(UTC)
        busy, free = self.list(ctx)
        stale_busy = [i for i in busy if i.age(now) > busy_max_age]
        stale_free = [i for i in free if i.age(now) > free_max_age]
        if stale_busy or stale_free:
            with self._lock:
                if stale_free:
                    # an acquire may have claimed a stale free instance meanwhile
                    still_free = {i.id for i in self.list(ctx)[1]}
                    stale_free = [i for i in stale_free if i.id in still_free]
                self._destroy(ctx, stale_busy + stale_free)
        return [i.id for i in stale_busy], [i.id for i in stale_free]

    def find_by_tag(self, ctx: Context, key: str, value: str) -> Instance | None:
        matches: list[Instance] = []
        for tags, state in (
            (self.busy_tags(), InstanceState.IN_USE),
            (self.free_tags(), InstanceState.FREE),
        ):
            for instance in self.driver.list(ctx, {**tags, key: value}, COUNT_STATES):
                instance.pool = self.name
                instance.move_to(state)
                matches.append(instance)
        if not matches:
            return None
        return min(matches, key=lambda instance: instance.created_at)

    def ping(self, ctx: Context) -> None:
        self.driver.ping(ctx)

    def list(
        self, ctx: Context, states: Iterable[str] = COUNT_STATES
    ) -> tuple[list[Instance], list[Instance]]:
        """Return ``(busy, free)`` as currently seen by the cloud."""
        states = tuple(states)
        busy: dict[str, Instance] = {}
        for instance in self.driver.list(ctx, self.busy_tags(), states):
            instance.pool = self.name
            instance.move_to(InstanceState.IN_USE)
            busy[instance.id] = instance

        free: list[Instance] = []
        for instance in self.driver.list(ctx, self.free_tags(), states):
            instance.pool = self.name
            if instance.is_busy:
                logger.warning(
                    "pool=%s instance id=%s carries both pool and status tags, treating as busy",
                    self.name,
                    instance.id,
                )
                if instance.id not in busy:
                    instance.move_to(InstanceState.IN_USE)
                    busy[instance.id] = instance
                continue
            instance.move_to(InstanceState.FREE)
            free.append(instance)
        return list(busy.values()), free
