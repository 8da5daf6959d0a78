"""Error taxonomy for the relay core."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError):
    """Startup configuration is missing or invalid."""


class ConnectError(RelayError):
    """A gateway connection attempt failed (handshake or auth)."""


class SendErrorKind(str, Enum):
    NOT_CONNECTED = "not_connected"
    TRANSPORT = "transport"


class SendError(RelayError):
    def __init__(self, kind: SendErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class BackendErrorKind(str, Enum):
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    TRANSPORT = "transport"

    @property
    def retryable(self) -> bool:
        return self is not BackendErrorKind.REJECTED


class BackendError(RelayError):
    def __init__(
        self,
        kind: BackendErrorKind,
        message: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code


class RoutingError(RelayError):
    """An inbound event cannot be resolved to a conversation."""
