from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RECORDSHIFT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "recordshift"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    jobs_root: Path | None = None
    database_url: str | None = None

    heartbeat_interval_seconds: PositiveInt = 10
    stale_after_seconds: PositiveInt = 60
    pause_timeout_seconds: PositiveInt = 60
    pause_poll_seconds: float = 1.0
    pause_log_every_polls: PositiveInt = 10
    shutdown_grace_seconds: PositiveInt = 300

    save_max_attempts: PositiveInt = 3
    save_backoff_base_ms: PositiveInt = 100

    migration_batch_size: PositiveInt = 500
    migration_concurrency: PositiveInt = 5
    cleanup_batch_size: PositiveInt = 100
    cleanup_concurrency: PositiveInt = 3
    delete_batch_size: PositiveInt = 100
    delete_concurrency: PositiveInt = 5
    max_batch_size: PositiveInt = 500
    max_concurrency: PositiveInt = 20

    rate_limit_pause_threshold: int = 10
    item_max_retries: PositiveInt = 3
    item_retry_base_ms: int = 1000
    item_retry_max_ms: int = 30000

    @field_validator("state_root", "jobs_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None:
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        if self.jobs_root is None:
            self.jobs_root = self.state_root / "migrations"
        self.jobs_root = self.jobs_root.resolve(strict=False)
        if self.state_root != self.jobs_root and self.state_root not in self.jobs_root.parents:
            raise ValueError("jobs_root must be under state_root")

        self.state_root.mkdir(parents=True, exist_ok=True)
        self.jobs_root.mkdir(parents=True, exist_ok=True)

        if self.stale_after_seconds <= self.heartbeat_interval_seconds:
            raise ValueError("stale_after_seconds must be greater than heartbeat_interval_seconds")

        if self.pause_poll_seconds <= 0:
            raise ValueError("pause_poll_seconds must be positive")

        if max(self.migration_batch_size, self.cleanup_batch_size, self.delete_batch_size) > self.max_batch_size:
            raise ValueError("default batch sizes must be less than or equal to max_batch_size")

        if max(self.migration_concurrency, self.cleanup_concurrency, self.delete_concurrency) > self.max_concurrency:
            raise ValueError("default concurrency must be less than or equal to max_concurrency")

        if self.rate_limit_pause_threshold < 0:
            raise ValueError("rate_limit_pause_threshold must be >= 0")

        if self.item_retry_base_ms < 0 or self.item_retry_max_ms < self.item_retry_base_ms:
            raise ValueError("item_retry_max_ms must be greater than or equal to item_retry_base_ms")

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("log_level must be one of ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']")
        self.log_level = normalized_level

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "recordshift.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
