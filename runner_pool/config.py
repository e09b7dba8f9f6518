import socket
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    runner_name: str = Field(default_factory=socket.gethostname)
    pool_file: str = Field(default="pool.yml")
    pool_strategy: Literal["minmax", "greedy"] = Field(default="minmax")

    reuse_pool: bool = Field(default=False)
    busy_max_age: int = Field(default=1, ge=1)
    free_max_age: int = Field(default=12, ge=1)
    purger_interval_sec: int = Field(default=60, ge=1)

    setup_timeout_sec: int = Field(default=600, ge=1)
    health_retry_interval_sec: int = Field(default=60, ge=0)
    step_timeout_sec: int = Field(default=4 * 3600, ge=1)
    provision_poll_interval_sec: int = Field(default=60, ge=0)
    provision_timeout_sec: int = Field(default=15 * 60, ge=1)
    shutdown_clean_timeout_sec: int = Field(default=60, ge=1)
    ping_retry_sec: float = Field(default=1.0, ge=0)

    lite_engine_path: str = Field(
        default="https://github.com/harness/lite-engine/releases/download/v0.0.1.14"
    )
    lite_engine_port: int = Field(default=9079, ge=1)
    certificate_folder: str = Field(default="/tmp/certs")
    ca_cert_file: str | None = Field(default=None)
    cert_file: str | None = Field(default=None)
    key_file: str | None = Field(default=None)
    public_key_file: str | None = Field(default=None)

    aws_access_key_id: str = Field(default="")
    aws_access_key_secret: str = Field(default="")
    aws_region: str = Field(default="")
    aws_key_pair_name: str = Field(default="")

    http_host: str = Field(default="0.0.0.0")
    http_port: int = Field(default=3000, ge=1)
    log_level: str = Field(default="INFO")

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=1, ge=0)

    disable_background_loops: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
