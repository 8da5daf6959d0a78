from fastapi import APIRouter

from relay.config import Settings, get_settings
from relay.schemas.status import (
    AppGroup,
    BackendGroup,
    GatewayGroup,
    GeneralGroup,
    SessionsGroup,
    SystemSettingsGrouped,
)

router = APIRouter(
    prefix="/system",
    tags=["system"],
    responses={404: {"description": "Not found"}},
)


def group_settings(s: Settings) -> SystemSettingsGrouped:
    """Group settings for display; tokens are reported only as set/not set."""
    return SystemSettingsGrouped(
        app=AppGroup(
            name=s.app_name,
            environment=s.environment,
            log_level=s.log_level,
            port=s.port,
            status_api_enabled=s.status_api_enabled,
        ),
        gateway=GatewayGroup(
            kind=s.gateway,
            app_token_set=bool(s.slack_app_token),
            bot_token_set=bool(s.slack_bot_token),
            control_prefix=s.control_prefix,
            link_health_check_seconds=s.link_health_check_seconds,
            backoff_base_seconds=s.backoff_base_seconds,
            backoff_cap_seconds=s.backoff_cap_seconds,
            backoff_jitter_seconds=s.backoff_jitter_seconds,
            connection_stability_seconds=s.connection_stability_seconds,
        ),
        backend=BackendGroup(
            url=s.backend_url,
            transport=s.backend_transport,
            api_token_set=bool(s.backend_api_token),
            timeout_seconds=s.backend_timeout_seconds,
            retry_limit=s.backend_retry_limit,
            retry_delay_seconds=s.backend_retry_delay_seconds,
        ),
        sessions=SessionsGroup(
            idle_timeout_seconds=s.session_idle_timeout_seconds,
            sweep_interval_seconds=s.session_sweep_interval_seconds,
            max_pending=s.session_max_pending,
            worker_pool_size=s.worker_pool_size,
            outbound_gap_timeout_seconds=s.outbound_gap_timeout_seconds,
            shutdown_grace_seconds=s.shutdown_grace_seconds,
        ),
        general=GeneralGroup(is_production=s.is_production),
    )


@router.get("/settings", response_model=SystemSettingsGrouped)
def get_system_settings() -> SystemSettingsGrouped:
    """Return grouped, non-sensitive system configuration settings for troubleshooting."""
    return group_settings(get_settings())
