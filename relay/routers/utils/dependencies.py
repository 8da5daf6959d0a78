from fastapi import HTTPException, Request

from relay.core.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the Runtime the app was created with."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Relay runtime is not running")
    return runtime
