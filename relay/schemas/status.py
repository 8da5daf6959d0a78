"""Response models for the status API."""

from typing import Optional

from pydantic import BaseModel, Field


class HealthRead(BaseModel):
    status: str
    connection_state: str
    reconnect_attempt: int = 0
    sessions: int = 0
    in_flight: int = 0
    undelivered: int = 0
    events: dict[str, int] = Field(default_factory=dict)


class SessionRow(BaseModel):
    key: str
    channel: str
    thread_ts: Optional[str] = None
    pending: int
    in_flight: Optional[int] = None
    idle_seconds: float
    has_context: bool


class AppGroup(BaseModel):
    name: str
    environment: str
    log_level: str
    port: int
    status_api_enabled: bool


class GatewayGroup(BaseModel):
    kind: str
    app_token_set: bool
    bot_token_set: bool
    control_prefix: str
    link_health_check_seconds: float
    backoff_base_seconds: float
    backoff_cap_seconds: float
    backoff_jitter_seconds: float
    connection_stability_seconds: float


class BackendGroup(BaseModel):
    url: Optional[str] = None
    transport: str
    api_token_set: bool
    timeout_seconds: float
    retry_limit: int
    retry_delay_seconds: float


class SessionsGroup(BaseModel):
    idle_timeout_seconds: float
    sweep_interval_seconds: float
    max_pending: int
    worker_pool_size: int
    outbound_gap_timeout_seconds: float
    shutdown_grace_seconds: float


class GeneralGroup(BaseModel):
    is_production: bool


class SystemSettingsGrouped(BaseModel):
    app: AppGroup
    gateway: GatewayGroup
    backend: BackendGroup
    sessions: SessionsGroup
    general: GeneralGroup
