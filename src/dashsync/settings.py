"""Environment-driven settings: DASHSYNC_* variables, optionally from a .env file."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from dashsync.config import (
    DEFAULT_BASE_URL,
    CacheConfig,
    ClientConfig,
    PollingConfig,
    RetryPolicy,
)

ENV_PREFIX = "DASHSYNC_"


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # API Configuration
    api_url: str = Field(default=DEFAULT_BASE_URL, alias="DASHSYNC_API_URL")
    request_timeout: str = Field(default="30s", alias="DASHSYNC_REQUEST_TIMEOUT")
    tenant_id: str | None = Field(default=None, alias="DASHSYNC_TENANT_ID")

    # Retry Configuration
    retry_max_attempts: int = Field(default=3, alias="DASHSYNC_RETRY_MAX_ATTEMPTS")
    retry_base_delay: str = Field(default="1s", alias="DASHSYNC_RETRY_BASE_DELAY")
    retry_cap: str = Field(default="30s", alias="DASHSYNC_RETRY_CAP")

    # Cache / Polling Configuration
    stale_time: str = Field(default="5m", alias="DASHSYNC_STALE_TIME")
    gc_time: str = Field(default="10m", alias="DASHSYNC_GC_TIME")
    poll_interval: str = Field(default="5s", alias="DASHSYNC_POLL_INTERVAL")

    debug: bool = Field(default=False, alias="DASHSYNC_DEBUG")

    def to_config(self) -> ClientConfig:
        return ClientConfig(
            base_url=self.api_url,
            timeout=self.request_timeout,
            tenant_id=self.tenant_id or None,
            retry=RetryPolicy(
                max_attempts=self.retry_max_attempts,
                base_delay=self.retry_base_delay,
                cap=self.retry_cap,
            ),
            cache=CacheConfig(stale_time=self.stale_time, gc_time=self.gc_time),
            polling=PollingConfig(default_interval=self.poll_interval),
            debug=self.debug,
        )


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Read settings from the environment, after loading an optional .env file."""
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()
    # only prefixed variables come from the environment
    env = {name: value for name, value in os.environ.items() if name.startswith(ENV_PREFIX)}
    return Settings.model_validate(env)


def load_config(env_file: str | Path | None = None) -> ClientConfig:
    return load_settings(env_file).to_config()
