import logging
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Database
    expected_schema_version: str = "001_dispatch_core.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_command_timeout: float = 60.0
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    api_token: str | None = None  # Bearer token shared with the portal backend / mobile gateway
    allowed_origins: list[str] = ["*"]

    # Dispatch rules
    dispatch_timezone: str = "UTC"  # Year of reference numbers and "today" for run lists
    capacity_warning_threshold: float = 0.8  # Utilization above this is flagged (advisory only)
    job_update_max_attempts: int = 3  # Re-apply attempts on version conflicts

    # Notification fan-out
    # "direct" - write notifications in-process right after the job mutation
    # "queued" - enqueue a durable fan_out_notifications task (worker delivers, retries)
    notification_delivery: Literal["direct", "queued"] = "queued"

    # Task Worker (DB-backed queue)
    task_worker_enabled: bool = False          # Master switch, enable explicitly in worker service
    task_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    task_worker_batch_size: int = 5            # Tasks claimed per poll cycle
    task_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    task_worker_stale_timeout: int = 300       # Reset tasks stuck 'running' for this long (seconds)
    task_cleanup_completed_ttl_days: int = 7   # Delete completed tasks older than N days
    task_cleanup_failed_ttl_days: int = 30     # Delete failed tasks older than N days

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def server_settings(self) -> dict[str, str]:
        """Per-connection Postgres settings applied by the pool."""
        return {
            "application_name": "truckdesk",
            "statement_timeout": str(self.pg_statement_timeout_ms),
            "idle_in_transaction_session_timeout": str(self.pg_idle_in_tx_timeout_ms),
        }

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("api_token", self.api_token),
        ]
        if self.storage_backend == "postgres":
            required_fields.append(("database_url or pghost", self.database_url or self.pghost))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        if self.storage_backend == "memory":
            missing.append("storage_backend=postgres (memory backend is dev-only)")

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.api_token:
        warnings.append("api_token is not set (dispatch endpoints are unauthenticated).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not 0 < s.capacity_warning_threshold <= 1:
        warnings.append(
            f"capacity_warning_threshold={s.capacity_warning_threshold} is outside (0, 1]; "
            "near-capacity warnings will behave oddly."
        )

    if s.job_update_max_attempts < 1:
        warnings.append("job_update_max_attempts < 1: every job write will fail.")

    if s.notification_delivery == "queued" and s.storage_backend == "memory":
        warnings.append(
            "notification_delivery=queued needs the postgres task queue; "
            "memory backend falls back to direct delivery."
        )

    if s.notification_delivery == "queued" and not s.task_worker_enabled:
        warnings.append(
            "notification_delivery=queued but task_worker_enabled=False: "
            "make sure a separate worker process drains dispatch_tasks."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        logger.warning("[config] %s", msg)


settings = Settings()
validate_or_warn(settings)
