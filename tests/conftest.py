import pytest

from runner_pool.config import Settings
from runner_pool.context import Context
from runner_pool.drivers.noop import NoopDriver
from runner_pool.metrics import metrics
from runner_pool.models import PoolSpec
from runner_pool.pool import Pool
from runner_pool.strategy import MinMax

RUNNER = "test-runner"


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        runner_name=RUNNER,
        certificate_folder="",
        lite_engine_path="https://example.test/lite-engine",
        aws_region="",
        setup_timeout_sec=1,
        health_retry_interval_sec=0,
        step_timeout_sec=1,
        shutdown_clean_timeout_sec=5,
        ping_retry_sec=0.01,
        disable_background_loops=True,
    )


@pytest.fixture
def driver() -> NoopDriver:
    return NoopDriver()


@pytest.fixture
def ctx():
    context = Context(timeout=30)
    yield context
    context.cancel()


@pytest.fixture
def make_pool(driver):
    pools: list[Pool] = []

    def factory(min_size=2, max_size=4, strategy=None, name="p1", pool_driver=None) -> Pool:
        pool = Pool(
            PoolSpec(name=name, provider="noop", min_size=min_size, max_size=max_size),
            pool_driver or driver,
            runner_name=RUNNER,
            strategy=strategy or MinMax(),
        )
        pools.append(pool)
        return pool

    yield factory
    for pool in pools:
        pool.wait_replenished(5)
        pool.stop()
