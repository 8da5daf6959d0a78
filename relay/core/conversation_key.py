"""Conversation key derivation from an inbound event."""

from __future__ import annotations

from relay.core.errors import RoutingError
from relay.schemas.relay import ConversationKey, InboundEvent


def build_conversation_key(event: InboundEvent) -> ConversationKey:
    """
    Build a deterministic conversation key from an inbound event.

    Simple form: {channel} for direct messages and top-level channel messages;
    {channel}:thread:{thread_ts} when the event belongs to a thread. Identifiers
    are used exactly as the gateway reports them.
    """
    channel = event.channel
    if not channel:
        raise RoutingError(f"Event {event.sequence} has no channel")
    return ConversationKey(channel=channel, thread_ts=event.thread_ts or None)
