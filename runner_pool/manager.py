import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any

from runner_pool.config import Settings
from runner_pool.context import Context, background
from runner_pool.drivers.base import Driver
from runner_pool.drivers.factory import create_driver
from runner_pool.errors import (
    CloudUnreachable,
    ConfigInvalid,
    OperationCancelled,
    PoolUnknown,
)
from runner_pool.models import TAG_STAGE_ID, Instance, PoolSpec
from runner_pool.pool import Pool
from runner_pool.purger import BusyPurgedCallback, Purger
from runner_pool.strategy import Strategy, get_strategy


logger = logging.getLogger(__name__)

PING_PAUSE_SEC = 0.5


class Manager:
    """Registry of pools owned by this runner.

    Pools are registered once at startup and only looked up afterwards, so
    reads need no lock. ``ctx`` is the root of every background operation the
    manager starts; cancelling it stops replenishers and the purger.
    """

    def __init__(
        self,
        runner_name: str,
        *,
        strategy: Strategy | None = None,
        ping_retry_sec: float = 1.0,
        ping_pause_sec: float = PING_PAUSE_SEC,
    ):
        self.runner_name = runner_name
        self.strategy = strategy or get_strategy("minmax")
        self.ping_retry_sec = ping_retry_sec
        self.ping_pause_sec = ping_pause_sec
        self.ctx = background()
        self._pools: dict[str, Pool] = {}
        self._purger: Purger | None = None

    @classmethod
    def from_specs(
        cls,
        specs: Iterable[PoolSpec],
        settings: Settings,
        driver_factory: Callable[[PoolSpec, Settings], Driver] = create_driver,
    ) -> "Manager":
        manager = cls(
            settings.runner_name,
            strategy=get_strategy(settings.pool_strategy),
            ping_retry_sec=settings.ping_retry_sec,
        )
        manager.add(*(manager.new_pool(spec, driver_factory(spec, settings)) for spec in specs))
        return manager

    def new_pool(self, spec: PoolSpec, driver: Driver) -> Pool:
        return Pool(
            spec,
            driver,
            runner_name=self.runner_name,
            strategy=self.strategy,
            parent_ctx=self.ctx,
        )

    def add(self, *pools: Pool) -> None:
        for pool in pools:
            if not pool.name:
                raise ConfigInvalid("pool name must not be empty")
            if pool.name in self._pools:
                raise ConfigInvalid(f"pool {pool.name!r} already defined")
            self._pools[pool.name] = pool
            logger.info(
                "registered pool name=%s provider=%s min=%s max=%s",
                pool.name,
                pool.driver.provider,
                pool.spec.min_size,
                pool.spec.max_size,
            )

    def get(self, name: str) -> Pool | None:
        return self._pools.get(name)

    def exists(self, name: str) -> bool:
        return name in self._pools

    def names(self) -> list[str]:
        return list(self._pools)

    def _require(self, name: str) -> Pool:
        pool = self._pools.get(name)
        if pool is None:
            raise PoolUnknown(name)
        return pool

    def for_each(self, ctx: Context, f: Callable[[Context, Pool], Any]) -> None:
        for pool in self._pools.values():
            ctx.check()
            f(ctx, pool)

    def build_pools(self, ctx: Context) -> None:
        def build(ctx: Context, pool: Pool) -> None:
            created = pool.replenish(ctx)
            logger.info("pool=%s built created=%s", pool.name, created)

        self.for_each(ctx, build)

    def clean_pools(
        self, ctx: Context, destroy_busy: bool = True, destroy_free: bool = True
    ) -> None:
        self.for_each(
            ctx, lambda ctx, pool: pool.clean(ctx, destroy_busy, destroy_free)
        )

    def ping(self, ctx: Context) -> None:
        for index, pool in enumerate(self._pools.values()):
            if index and ctx.wait(self.ping_pause_sec):
                ctx.check()
            pool.ping(ctx)

    def ping_with_retry(self, ctx: Context) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                self.ping(ctx)
                return
            except CloudUnreachable as exc:
                logger.warning("cloud ping failed attempt=%s error=%s", attempt, exc)
            if ctx.wait(self.ping_retry_sec):
                ctx.check()

    def acquire(
        self, ctx: Context, pool_name: str, extra_tags: Mapping[str, str] | None = None
    ) -> Instance:
        return self._require(pool_name).acquire(ctx, extra_tags)

    def release(self, ctx: Context, pool_name: str, instance_id: str) -> None:
        self._require(pool_name).release(ctx, instance_id)

    def find_by_stage(self, ctx: Context, pool_name: str, stage_id: str) -> Instance | None:
        return self._require(pool_name).find_by_tag(ctx, TAG_STAGE_ID, stage_id)

    def start_instance_purger(
        self,
        ctx: Context,
        busy_max_age: timedelta,
        free_max_age: timedelta,
        interval: float = 60.0,
        on_busy_purged: BusyPurgedCallback | None = None,
    ) -> Purger:
        if self._purger is not None:
            raise ConfigInvalid("instance purger already started")
        purger = Purger(
            self,
            busy_max_age=busy_max_age,
            free_max_age=free_max_age,
            interval=interval,
            on_busy_purged=on_busy_purged,
        )
        purger.start(ctx)
        self._purger = purger
        return purger

    def startup(self, ctx: Context, reuse_pool: bool) -> None:
        """Make every pool ready before external requests are accepted."""
        self.ping_with_retry(ctx)
        if reuse_pool:
            logger.info("reusing instances left by a previous run")
        else:
            self.clean_pools(ctx)
        self.build_pools(ctx)

    def shutdown(self, reuse_pool: bool, timeout: float) -> None:
        self.ctx.cancel()
        for pool in self._pools.values():
            pool.stop()
        if self._purger is not None:
            self._purger.stop()
            self._purger = None
        if reuse_pool:
            return
        ctx = Context(timeout=timeout)
        try:
            self.clean_pools(ctx)
        except OperationCancelled:
            logger.error("cleaning pools timed out after %ss", timeout)
        except Exception as exc:  # noqa: BLE001
            logger.exception("failed to clean pools on shutdown: %s", exc)
