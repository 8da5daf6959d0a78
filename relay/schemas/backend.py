"""Wire contracts for the backend agent service (HTTP and WebSocket RPC)."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class BackendRequest(BaseModel):
    """One conversational turn sent to the backend."""

    conversation: str
    text: str
    context: Optional[Any] = None
    event_id: Optional[str] = None
    user_id: Optional[str] = None


class BackendReply(BaseModel):
    """One-shot HTTP reply body."""

    model_config = ConfigDict(extra="ignore")

    reply: str = ""
    context: Optional[Any] = None


class BackendChunk(BaseModel):
    """Transport-neutral piece of a backend reply."""

    text: str = ""
    done: bool = False
    context: Optional[Any] = None


# --- WebSocket RPC framing ---


class RpcError(BaseModel):
    code: int
    message: str = ""


class RpcMessage(BaseModel):
    """Request or response frame; requests carry method, responses result or error."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    method: Optional[str] = None
    params: Optional[dict[str, Any]] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[RpcError] = None


class AgentSendParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    message: str
    context: Optional[Any] = None
