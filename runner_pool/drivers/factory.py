from runner_pool.config import Settings
from runner_pool.drivers.amazon import AmazonDriver
from runner_pool.drivers.base import Driver
from runner_pool.drivers.google import GoogleDriver
from runner_pool.drivers.noop import NoopDriver
from runner_pool.errors import ConfigInvalid
from runner_pool.models import PoolSpec


def create_driver(spec: PoolSpec, settings: Settings) -> Driver:
    if spec.provider == "amazon":
        return AmazonDriver(
            region=spec.account.region,
            access_key_id=spec.account.access_key_id,
            access_key_secret=spec.account.access_key_secret,
            availability_zone=spec.account.availability_zone,
            poll_interval_sec=settings.provision_poll_interval_sec,
            provision_timeout_sec=settings.provision_timeout_sec,
        )
    if spec.provider == "google":
        return GoogleDriver(
            project_id=spec.account.project_id,
            zones=spec.shape.zones,
            json_path=spec.account.json_path,
            poll_interval_sec=settings.provision_poll_interval_sec,
            provision_timeout_sec=settings.provision_timeout_sec,
        )
    if spec.provider == "noop":
        return NoopDriver(region=spec.account.region)
    raise ConfigInvalid(f"pool {spec.name!r}: unknown provider {spec.provider!r}")
