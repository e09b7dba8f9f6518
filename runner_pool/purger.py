import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from runner_pool.context import Context
from runner_pool.errors import ConfigInvalid, OperationCancelled
from runner_pool.metrics import metrics

if TYPE_CHECKING:
    from runner_pool.manager import Manager


logger = logging.getLogger(__name__)

MIN_MAX_AGE = timedelta(minutes=5)

BusyPurgedCallback = Callable[[str, str], None]


def report_busy_purged(pool: str, instance_id: str) -> None:
    metrics.inc("purger_build_failures_total")
    logger.warning(
        "destroyed busy instance past its age limit, its build is reported failed pool=%s id=%s",
        pool,
        instance_id,
    )


class Purger:
    """Process-wide reaper destroying instances past their age limit."""

    def __init__(
        self,
        manager: "Manager",
        *,
        busy_max_age: timedelta,
        free_max_age: timedelta,
        interval: float = 60.0,
        on_busy_purged: BusyPurgedCallback | None = None,
    ):
        if busy_max_age < MIN_MAX_AGE or free_max_age < MIN_MAX_AGE:
            raise ConfigInvalid(
                f"purger ages must be at least {MIN_MAX_AGE}: busy={busy_max_age} free={free_max_age}"
            )
        if busy_max_age > free_max_age:
            raise ConfigInvalid(
                f"busy max age {busy_max_age} must not exceed free max age {free_max_age}"
            )
        self.manager = manager
        self.busy_max_age = busy_max_age
        self.free_max_age = free_max_age
        self.interval = interval
        self.on_busy_purged = on_busy_purged or report_busy_purged
        self._ctx: Context | None = None
        self._thread: threading.Thread | None = None

    def tick(self, ctx: Context, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        destroyed = 0
        for name in self.manager.names():
            ctx.check()
            pool = self.manager.get(name)
            if pool is None:
                continue
            try:
                busy_ids, free_ids = pool.purge_stale(
                    ctx,
                    self.busy_max_age.total_seconds(),
                    self.free_max_age.total_seconds(),
                    now,
                )
            except OperationCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                metrics.inc("purger_errors_total")
                logger.exception("purger failed on pool=%s: %s", name, exc)
                continue

            destroyed += len(busy_ids) + len(free_ids)
            if busy_ids:
                metrics.inc("purger_busy_destroyed_total", len(busy_ids))
                for instance_id in busy_ids:
                    self.on_busy_purged(name, instance_id)
            if free_ids:
                metrics.inc("purger_free_destroyed_total", len(free_ids))
                logger.info("purged stale free instances pool=%s ids=%s", name, free_ids)
                pool.trigger_replenish()
        return destroyed

    def start(self, ctx: Context) -> threading.Thread:
        self._ctx = ctx.child()
        loop_ctx = self._ctx

        def worker() -> None:
            logger.info(
                "instance purger started busy_max_age=%s free_max_age=%s interval=%ss",
                self.busy_max_age,
                self.free_max_age,
                self.interval,
            )
            while not loop_ctx.done():
                if loop_ctx.wait(self.interval):
                    break
                try:
                    self.tick(loop_ctx)
                except OperationCancelled:
                    break
                except Exception as exc:  # noqa: BLE001
                    logger.exception("purger tick failed: %s", exc)
            logger.info("instance purger stopped")

        self._thread = threading.Thread(target=worker, name="instance-purger", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._ctx is not None:
            self._ctx.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
