"""
Gateway link interface.

A link owns one persistent socket connection to a chat platform's event
gateway and exposes a normalized event stream to the relay core.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Union

from relay.schemas.relay import (
    InboundEvent,
    LinkClosed,
    OutboundMessage,
    OutboundSendResult,
)

LinkItem = Union[InboundEvent, LinkClosed]


class BaseGatewayLink(ABC):
    """Contract for gateway links. New platforms implement this interface."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the socket. Raise ConnectError on handshake or auth failure."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[LinkItem]:
        """
        Yield inbound events until the connection drops.

        The sequence always ends with exactly one LinkClosed item; a drop is
        reported that way rather than raised.
        """
        ...

    @abstractmethod
    async def send(self, outbound: OutboundMessage) -> OutboundSendResult:
        """Deliver a reply. Raise SendError when not connected or on platform failure."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the socket; the current event sequence ends with LinkClosed."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...
