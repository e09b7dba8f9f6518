import random
import time
from datetime import UTC, datetime, timedelta

import pytest

from runner_pool.errors import ConfigInvalid
from runner_pool.manager import Manager
from runner_pool.metrics import metrics
from runner_pool.purger import Purger

HOUR = timedelta(hours=1)


def _manager(*pools):
    manager = Manager("test-runner")
    manager.add(*pools)
    return manager


def test_leaked_busy_instance_destroyed_in_one_tick(make_pool, driver, ctx):
    pool = make_pool(min_size=0, max_size=4)
    leaked = driver.inject(pool.busy_tags(), launch_time=datetime.now(UTC) - 2 * HOUR)
    reported = []
    purger = Purger(
        _manager(pool),
        busy_max_age=HOUR,
        free_max_age=12 * HOUR,
        on_busy_purged=lambda pool_name, instance_id: reported.append((pool_name, instance_id)),
    )

    assert purger.tick(ctx) == 1
    assert driver.get(ctx, leaked.id) is None
    assert driver.list(ctx, pool.owner_tags()) == []
    assert reported == [("p1", leaked.id)]
    assert metrics.get("purger_busy_destroyed_total") == 1


def test_stale_free_instance_destroyed_and_replaced(make_pool, driver, ctx):
    pool = make_pool(min_size=1, max_size=4)
    stale = driver.inject(pool.free_tags(), launch_time=datetime.now(UTC) - 13 * HOUR)
    purger = Purger(_manager(pool), busy_max_age=HOUR, free_max_age=12 * HOUR)

    purger.tick(ctx)
    assert pool.wait_replenished(5)
    free = pool.list(ctx)[1]
    assert [instance.id for instance in free] != [stale.id]
    assert len(free) == 1
    assert metrics.get("purger_free_destroyed_total") == 1


def test_every_instance_past_its_limit_is_purged(make_pool, driver, ctx):
    rng = random.Random(11)
    pool = make_pool(min_size=0, max_size=100)
    now = datetime.now(UTC)
    expected_gone, expected_kept = set(), set()
    for _ in range(30):
        busy = rng.random() < 0.5
        age = timedelta(minutes=rng.randrange(1, 24 * 60))
        tags = pool.busy_tags() if busy else pool.free_tags()
        instance = driver.inject(tags, launch_time=now - age)
        limit = HOUR if busy else 12 * HOUR
        (expected_gone if age > limit else expected_kept).add(instance.id)

    Purger(_manager(pool), busy_max_age=HOUR, free_max_age=12 * HOUR).tick(ctx, now=now)
    remaining = {instance.id for instance in driver.list(ctx, pool.owner_tags())}
    assert remaining == expected_kept
    assert not remaining & expected_gone


def test_pool_error_does_not_stop_the_tick(make_pool, driver, ctx):
    class BrokenDriver(type(driver)):
        def list(self, ctx, tags, states=("running",)):
            raise RuntimeError("api down")

    broken = make_pool(name="broken", pool_driver=BrokenDriver())
    healthy = make_pool(name="healthy", min_size=0)
    driver.inject(healthy.busy_tags(), launch_time=datetime.now(UTC) - 2 * HOUR)

    destroyed = Purger(_manager(broken, healthy), busy_max_age=HOUR, free_max_age=HOUR).tick(ctx)
    assert destroyed == 1
    assert metrics.get("purger_errors_total") == 1


@pytest.mark.parametrize(
    "busy,free",
    [
        (timedelta(minutes=1), 12 * HOUR),
        (HOUR, timedelta(minutes=4)),
        (3 * HOUR, 2 * HOUR),
    ],
)
def test_invalid_ages_rejected(busy, free):
    with pytest.raises(ConfigInvalid):
        Purger(Manager("test-runner"), busy_max_age=busy, free_max_age=free)


def test_background_loop_ticks_until_stopped(make_pool, driver, ctx):
    pool = make_pool(min_size=0, max_size=4)
    leaked = driver.inject(pool.busy_tags(), launch_time=datetime.now(UTC) - 2 * HOUR)
    purger = Purger(_manager(pool), busy_max_age=HOUR, free_max_age=HOUR, interval=0.01)
    thread = purger.start(ctx)

    deadline = time.monotonic() + 5
    while driver.get(ctx, leaked.id) is not None and time.monotonic() < deadline:
        time.sleep(0.01)
    purger.stop()
    assert driver.get(ctx, leaked.id) is None
    assert not thread.is_alive()
