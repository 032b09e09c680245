from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _parse_float_schedule(value: Any, *, field_name: str, default: list[float]) -> list[float]:
    if value in (None, "", []):
        return list(default)
    if isinstance(value, str):
        tokens = [token.strip() for token in value.split(",") if token.strip()]
        if not tokens:
            raise ValueError(f"{field_name} must contain at least one value")
        value = tokens
    if isinstance(value, (list, tuple)):
        schedule: list[float] = []
        for item in value:
            try:
                delay = float(item)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{field_name} entries must be numeric") from exc
            if delay < 0:
                raise ValueError(f"{field_name} entries must not be negative")
            schedule.append(delay)
        if not schedule:
            raise ValueError(f"{field_name} must contain at least one value")
        return schedule
    raise ValueError(
        f"{field_name} must be provided as a comma-separated string or list of numbers"
    )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Echo SQL statements and enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/indexer.db",
        description="SQLAlchemy compatible database URL",
    )
    production_database_url: AnyUrl | str | None = Field(
        default=None,
        description="Postgres connection string used when ENVIRONMENT=production",
    )

    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        description="JSON-RPC endpoint of the chain the markets live on",
    )
    rpc_timeout_seconds: float = Field(
        default=10.0,
        description="Per-request timeout applied to JSON-RPC calls",
        gt=0,
    )
    conditional_tokens_address: str | None = Field(
        default=None,
        description="Conditional tokens contract used for claims and outcome balances",
    )

    indexer_confirmation_lag: int = Field(
        default=0,
        description="Blocks withheld from the chain head before a block is indexed",
        ge=0,
    )
    indexer_default_window_size: int = Field(
        default=1024,
        description="Window size assigned to newly created chain cursors",
        ge=1,
    )
    indexer_sleep_seconds: float = Field(
        default=5.0,
        description="Fixed pause between indexer cycles, whether or not work was found",
        ge=0,
    )
    indexer_require_known_wallets: bool = Field(
        default=False,
        description="Treat events from wallets without a user row as a missing reference",
    )

    supervisor_interval_seconds: float = Field(
        default=5.0,
        description="Interval between supervisor planning cycles",
        gt=0,
    )
    supervisor_exit_poll_seconds: float = Field(
        default=0.5,
        description="How often the supervisor checks for exited indexers between planning cycles",
        gt=0,
    )
    supervisor_process_kind: str = Field(
        default="prediction_set_parser",
        description="Prefix used when naming indexer processes (<kind>_<market_id>)",
    )
    supervisor_stop_timeout_seconds: float = Field(
        default=30.0,
        description="How long shutdown waits for indexers to acknowledge a stop",
        ge=0,
    )
    supervisor_restart_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [0.0, 2.0, 4.0],
        description=(
            "Delays (seconds) before restarting an indexer after its 1st, 2nd, ... consecutive "
            "crash; doubles after the last entry"
        ),
    )
    supervisor_restart_backoff_max_seconds: float = Field(
        default=300.0,
        description="Upper bound for the crash-restart delay",
        ge=0,
    )
    supervisor_healthy_runtime_seconds: float = Field(
        default=60.0,
        description="An indexer running at least this long resets its crash counter",
        ge=0,
    )

    job_default_timeout_seconds: int = Field(
        default=15 * 60,
        description="Lock age after which a held job is reported as stale",
        ge=1,
    )
    job_scheduler_interval_seconds: float = Field(
        default=15.0,
        description="Polling interval of the job scheduler loop",
        gt=0,
    )
    health_check_max_block_lag: int = Field(
        default=50,
        description="Blocks a cursor may trail the chain head before the health check alerts",
        ge=0,
    )

    fanout_max_workers: int = Field(
        default=4,
        description="Thread pool size used by fan-out workers",
        ge=1,
    )
    fanout_batch_size: int = Field(
        default=50,
        description="Maximum number of work items claimed per fan-out run",
        ge=1,
    )
    fanout_claim_timeout_seconds: int = Field(
        default=10 * 60,
        description="Claimed work items not finished within this window are queued again",
        ge=1,
    )
    fanout_refresh_all_active: bool = Field(
        default=False,
        description="Also refresh every ACTIVE market with position ids, not only queued ones",
    )

    slack_webhook_url: str | None = Field(
        default=None,
        description="Incoming webhook for operational alerts (alerts are only logged when unset)",
    )
    slack_channel: str = Field(default="#indexer-alerts", description="Default alert channel")
    slack_username: str = Field(default="Indexer Log Bot", description="Alert bot display name")
    alert_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for delivering a single alert",
        gt=0,
    )

    @field_validator("database_url", "production_database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("supervisor_restart_backoff_seconds", mode="before")
    @classmethod
    def _parse_restart_backoff(cls, value: Any) -> list[float]:
        return _parse_float_schedule(
            value,
            field_name="SUPERVISOR_RESTART_BACKOFF_SECONDS",
            default=[0.0, 2.0, 4.0],
        )

    @field_validator("conditional_tokens_address", mode="after")
    @classmethod
    def _blank_address_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        candidate = value.strip()
        return candidate or None

    @property
    def resolved_database_url(self) -> str:
        if self.environment.lower() == "production":
            if not self.production_database_url:
                raise ValueError(
                    "PRODUCTION_DATABASE_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.production_database_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def restart_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.supervisor_restart_backoff_seconds)
        if not sequence:
            return (0.0,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
