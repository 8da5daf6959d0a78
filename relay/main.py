from typing import Optional

from fastapi import FastAPI

from relay.config import get_settings
from relay.core.runtime import Runtime
from relay.routers import status, system


def create_app(runtime: Optional[Runtime] = None, testing: bool = False) -> FastAPI:
    """Build the status API. The runtime is owned by the caller, not the app."""
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        debug=testing or not settings.is_production,
    )
    app.state.runtime = runtime
    app.include_router(status.router)
    app.include_router(system.router)
    return app
