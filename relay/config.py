from pathlib import Path

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, model_validator
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay.core.errors import ConfigError

BACKEND_TRANSPORTS = ("http", "websocket")
GATEWAYS = ("slack", "console")

# Project root (parent of relay/) - used so .env is found regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Explicitly load .env into os.environ so it works in tests and subprocesses
load_dotenv(_PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="allow",
    )

    app_name: str = "slack-relay"
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENV", "ENVIRONMENT"),
    )
    log_level: str = Field(default="INFO", json_schema_extra={"env": "LOG_LEVEL"})
    port: int = Field(default=8000, json_schema_extra={"env": "PORT"})
    status_api_enabled: bool = Field(
        default=False, json_schema_extra={"env": "STATUS_API_ENABLED"}
    )

    # Gateway: "slack" (Socket Mode) or "console" (stdin/stdout)
    gateway: str = Field(default="slack", json_schema_extra={"env": "GATEWAY"})

    # Slack / Socket Mode
    slack_app_token: Optional[str] = Field(
        default=None, json_schema_extra={"env": "SLACK_APP_TOKEN"}
    )
    slack_bot_token: Optional[str] = Field(
        default=None, json_schema_extra={"env": "SLACK_BOT_TOKEN"}
    )
    control_prefix: str = Field(
        default="!", json_schema_extra={"env": "CONTROL_PREFIX"}
    )
    link_health_check_seconds: float = Field(
        default=5.0, gt=0, json_schema_extra={"env": "LINK_HEALTH_CHECK_SECONDS"}
    )

    # Reconnect backoff
    backoff_base_seconds: float = Field(
        default=1.0, gt=0, json_schema_extra={"env": "BACKOFF_BASE_SECONDS"}
    )
    backoff_cap_seconds: float = Field(
        default=60.0, gt=0, json_schema_extra={"env": "BACKOFF_CAP_SECONDS"}
    )
    backoff_jitter_seconds: float = Field(
        default=1.0, ge=0, json_schema_extra={"env": "BACKOFF_JITTER_SECONDS"}
    )
    connection_stability_seconds: float = Field(
        default=30.0, ge=0, json_schema_extra={"env": "CONNECTION_STABILITY_SECONDS"}
    )

    # Backend agent
    backend_url: Optional[str] = Field(
        default=None, json_schema_extra={"env": "BACKEND_URL"}
    )
    backend_transport: str = Field(
        default="http", json_schema_extra={"env": "BACKEND_TRANSPORT"}
    )
    backend_api_token: Optional[str] = Field(
        default=None, json_schema_extra={"env": "BACKEND_API_TOKEN"}
    )
    backend_timeout_seconds: float = Field(
        default=120.0, gt=0, json_schema_extra={"env": "BACKEND_TIMEOUT_SECONDS"}
    )
    backend_retry_limit: int = Field(
        default=2, ge=0, le=10, json_schema_extra={"env": "BACKEND_RETRY_LIMIT"}
    )
    backend_retry_delay_seconds: float = Field(
        default=1.0, ge=0, json_schema_extra={"env": "BACKEND_RETRY_DELAY_SECONDS"}
    )

    # Sessions
    session_idle_timeout_seconds: float = Field(
        default=1800.0, gt=0, json_schema_extra={"env": "SESSION_IDLE_TIMEOUT_SECONDS"}
    )
    session_sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        json_schema_extra={"env": "SESSION_SWEEP_INTERVAL_SECONDS"},
    )
    session_max_pending: int = Field(
        default=50, ge=1, json_schema_extra={"env": "SESSION_MAX_PENDING"}
    )
    worker_pool_size: int = Field(
        default=16, ge=1, json_schema_extra={"env": "WORKER_POOL_SIZE"}
    )

    # Outbound ordering
    outbound_gap_timeout_seconds: float = Field(
        default=30.0, gt=0, json_schema_extra={"env": "OUTBOUND_GAP_TIMEOUT_SECONDS"}
    )
    outbound_sweep_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        json_schema_extra={"env": "OUTBOUND_SWEEP_INTERVAL_SECONDS"},
    )
    shutdown_grace_seconds: float = Field(
        default=30.0, ge=0, json_schema_extra={"env": "SHUTDOWN_GRACE_SECONDS"}
    )

    @model_validator(mode="after")
    def check_choices(self) -> "Settings":
        """Normalize the backend transport and gateway names; reject unknown ones."""
        transport = (self.backend_transport or "").lower()
        if transport not in BACKEND_TRANSPORTS:
            raise ValueError(
                f"backend_transport must be one of {', '.join(BACKEND_TRANSPORTS)}"
            )
        self.backend_transport = transport
        gateway = (self.gateway or "").lower()
        if gateway not in GATEWAYS:
            raise ValueError(f"gateway must be one of {', '.join(GATEWAYS)}")
        self.gateway = gateway
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self

    @property
    def is_production(self) -> bool:
        """Check if the current environment is production."""
        return self.environment.lower() == "production"

    def require_runtime_settings(self) -> None:
        """Fail fast when settings needed to run the bridge are missing."""
        required = ["backend_url"]
        if self.gateway == "slack":
            required = ["slack_app_token", "slack_bot_token", "backend_url"]
        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ConfigError(
                "Missing required settings: " + ", ".join(n.upper() for n in missing)
            )
        if self.gateway == "slack" and not self.slack_app_token.startswith("xapp-"):
            raise ConfigError("SLACK_APP_TOKEN must be an app-level token (xapp-...)")


def get_settings() -> Settings:
    """Get application settings with required environment variables."""
    return Settings()
