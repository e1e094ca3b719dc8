"""
Engine settings - tunable parameters for repositories and the command bus

Constructed once at process start and passed to the components that
need it. Every field can be overridden from the environment as
DURABLE_AGGREGATES_<FIELD_NAME>, e.g. DURABLE_AGGREGATES_SNAPSHOT_INTERVAL=50.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from durable_aggregates.kernel.logging import is_production


class EngineSettings(BaseSettings):
    """
    Configuration for the aggregate persistence engine

    Defaults favour catching mistakes early (strict routing) and keep
    snapshots off until a stream is known to grow long. JSON logs
    default to on when ENVIRONMENT=production.
    """

    strict_routing: bool = Field(
        default=True,
        description="Fail with NoHandlerForEvent instead of ignoring unrouted events",
    )

    snapshot_interval: int | None = Field(
        default=None,
        ge=1,
        description="Write a snapshot whenever a save crosses a multiple of this version",
    )

    command_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for one command dispatch, retries included",
    )

    command_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts the command bus makes on concurrency conflicts",
    )

    retry_min_wait_ms: int = Field(default=10, ge=0)
    retry_max_wait_ms: int = Field(default=200, ge=0)

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default_factory=is_production)

    model_config = SettingsConfigDict(
        env_prefix="DURABLE_AGGREGATES_",
        env_ignore_empty=True,
    )

    @model_validator(mode="after")
    def _check_wait_bounds(self) -> "EngineSettings":
        if self.retry_max_wait_ms < self.retry_min_wait_ms:
            raise ValueError("retry_max_wait_ms must be >= retry_min_wait_ms")
        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {self.log_level}")
        return self
