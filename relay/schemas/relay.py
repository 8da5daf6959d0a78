"""
Normalized message contracts for the relay core.

Gateway adapters convert platform envelopes into InboundEvent; the core hands
OutboundMessage back to the gateway for delivery. Both are immutable.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """Kinds of inbound gateway events."""

    MESSAGE = "message"
    CONTROL = "control"
    SYSTEM = "system"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"


class ConversationKey(BaseModel):
    """Identity of a conversation: a channel, optionally narrowed to one thread."""

    model_config = ConfigDict(frozen=True)

    channel: str
    thread_ts: Optional[str] = None

    def __str__(self) -> str:
        if self.thread_ts:
            return f"{self.channel}:thread:{self.thread_ts}"
        return self.channel


class InboundEvent(BaseModel):
    """Normalized inbound event (gateway → core)."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    kind: EventKind = EventKind.MESSAGE
    channel: Optional[str] = None
    thread_ts: Optional[str] = None
    user_id: Optional[str] = None
    message_id: Optional[str] = None
    text: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OutboundMessage(BaseModel):
    """Reply chunk (core → gateway), tagged with the local sequence that produced it."""

    model_config = ConfigDict(frozen=True)

    key: ConversationKey
    sequence: int
    chunk: int = 0
    final: bool = True
    text: str = ""
    reply_to: Optional[str] = None
    is_error: bool = False

    @property
    def is_marker(self) -> bool:
        """An empty final message only closes its sequence; nothing is sent."""
        return self.final and not self.text


class OutboundSendResult(BaseModel):
    """Result of sending an outbound message (success + optional message_id)."""

    success: bool
    platform_message_id: Optional[str] = None


@dataclass(frozen=True)
class LinkClosed:
    """Terminal item of a gateway event sequence."""

    reason: str = "closed"
    error: Optional[BaseException] = None

    @property
    def graceful(self) -> bool:
        return self.error is None
