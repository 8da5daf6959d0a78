"""
Slack gateway link.

Uses slack_sdk Socket Mode (aiohttp) for the inbound event stream and the
async Web API client for sends. The SDK's own reconnect loop is disabled;
reconnection belongs to the Reconnector.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import re
from collections import OrderedDict
from typing import Any, AsyncIterator, Optional

import aiohttp
from slack_sdk.errors import SlackApiError, SlackClientError
from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

from relay.adapters.base import BaseGatewayLink, LinkItem
from relay.core.errors import ConnectError, SendError, SendErrorKind
from relay.infra.logging_config import get_logger
from relay.infra.observer import Observer
from relay.schemas.relay import (
    EventKind,
    InboundEvent,
    LinkClosed,
    OutboundMessage,
    OutboundSendResult,
)

logger = get_logger("slack")

MENTION_RE = re.compile(r"<@[A-Z0-9]+>\s*")

EVENTS_API = "events_api"
SLASH_COMMANDS = "slash_commands"

# Recent event_ids remembered for redelivery detection
SEEN_EVENT_LIMIT = 1000


class SlackGatewayLink(BaseGatewayLink):
    """Slack link: Socket Mode in, chat.postMessage out."""

    def __init__(
        self,
        app_token: str,
        bot_token: str,
        control_prefix: str = "!",
        health_check_interval: float = 5.0,
        observer: Optional[Observer] = None,
    ) -> None:
        self._app_token = app_token
        self._bot_token = bot_token
        self._control_prefix = control_prefix
        self._health_check_interval = health_check_interval
        self._observer = observer
        self._sequence = itertools.count(1)
        self._seen_events: OrderedDict[str, None] = OrderedDict()
        self._web_client: Optional[AsyncWebClient] = None
        self._socket_client: Optional[SocketModeClient] = None
        self._queue: Optional[asyncio.Queue[LinkItem]] = None
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._connected = False
        self.bot_user_id: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_web_client(self) -> AsyncWebClient:
        if self._web_client is None:
            self._web_client = AsyncWebClient(token=self._bot_token)
        return self._web_client

    def _new_socket_client(self, web_client: AsyncWebClient) -> SocketModeClient:
        return SocketModeClient(
            app_token=self._app_token,
            web_client=web_client,
            auto_reconnect_enabled=False,
        )

    async def connect(self) -> None:
        web_client = self._get_web_client()
        try:
            auth = await web_client.auth_test()
        except SlackApiError as e:
            raise ConnectError(f"Slack auth.test failed: {e.response.get('error')}") from e
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise ConnectError(f"Slack auth.test failed: {e}") from e
        self.bot_user_id = auth.get("user_id")

        socket_client = self._new_socket_client(web_client)
        socket_client.socket_mode_request_listeners.append(self._on_request)
        self._queue = asyncio.Queue()
        try:
            await socket_client.connect()
        except SlackApiError as e:
            await socket_client.close()
            raise ConnectError(
                f"Socket Mode handshake failed: {e.response.get('error')}"
            ) from e
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            await socket_client.close()
            raise ConnectError(f"Socket Mode handshake failed: {e}") from e

        self._socket_client = socket_client
        self._connected = True
        self._watchdog = asyncio.create_task(self._watch(socket_client))
        logger.info("Slack Socket Mode connected as %s", self.bot_user_id)

    def events(self) -> AsyncIterator[LinkItem]:
        # Bind this connection's queue now, not on first iteration
        return self._read(self._queue)

    @staticmethod
    async def _read(queue: Optional[asyncio.Queue[LinkItem]]) -> AsyncIterator[LinkItem]:
        if queue is None:
            yield LinkClosed(reason="not connected")
            return
        while True:
            item = await queue.get()
            yield item
            if isinstance(item, LinkClosed):
                return

    async def send(self, outbound: OutboundMessage) -> OutboundSendResult:
        if not self._connected:
            raise SendError(SendErrorKind.NOT_CONNECTED, "Slack link is not connected")
        if not outbound.text:
            return OutboundSendResult(success=True, platform_message_id=None)
        send_kw: dict[str, Any] = {
            "channel": outbound.key.channel,
            "text": outbound.text,
        }
        if outbound.key.thread_ts:
            send_kw["thread_ts"] = outbound.key.thread_ts
        try:
            resp = await self._get_web_client().chat_postMessage(**send_kw)
        except SlackApiError as e:
            raise SendError(
                SendErrorKind.TRANSPORT,
                f"chat.postMessage failed: {e.response.get('error')}",
            ) from e
        except SlackClientError as e:
            raise SendError(SendErrorKind.TRANSPORT, f"chat.postMessage failed: {e}") from e
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise SendError(SendErrorKind.TRANSPORT, str(e)) from e
        return OutboundSendResult(success=True, platform_message_id=resp.get("ts"))

    async def close(self) -> None:
        self._connected = False
        if self._watchdog is not None:
            self._watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog
            self._watchdog = None
        if self._socket_client is not None:
            await self._socket_client.close()
            self._socket_client = None
        self._closed("closed by client")

    def _closed(self, reason: str, error: Optional[BaseException] = None) -> None:
        self._connected = False
        if self._queue is not None:
            self._queue.put_nowait(LinkClosed(reason=reason, error=error))
            self._queue = None

    async def _watch(self, socket_client: SocketModeClient) -> None:
        """Poll the socket and end the event sequence once it drops."""
        while True:
            await asyncio.sleep(self._health_check_interval)
            try:
                alive = await socket_client.is_connected()
            except Exception as e:
                logger.warning("Socket Mode health check failed: %s", e)
                alive = False
                error: Optional[BaseException] = e
            else:
                error = None
            if not alive:
                self._socket_client = None
                try:
                    await socket_client.close()
                except Exception as e:
                    logger.debug("Closing dropped socket failed: %s", e)
                self._closed("socket disconnected", error or ConnectionError("lost"))
                return

    async def _on_request(
        self, client: SocketModeClient, req: SocketModeRequest
    ) -> None:
        # Queue before the first await: listeners run as concurrent tasks
        payload = req.payload or {}
        if not self._is_redelivery(payload, req.retry_attempt):
            inbound = self.to_inbound(req.type, payload)
            if inbound is not None and self._queue is not None:
                self._queue.put_nowait(inbound)
        await client.send_socket_mode_response(
            SocketModeResponse(envelope_id=req.envelope_id)
        )

    def _is_redelivery(self, payload: dict[str, Any], retry_attempt: Any) -> bool:
        """Remember event_ids; True when this one was already queued."""
        event_id = payload.get("event_id")
        if not event_id:
            return False
        if event_id in self._seen_events:
            self._seen_events.move_to_end(event_id)
            logger.info(
                "Dropping redelivered Slack event %s (retry_attempt=%s)",
                event_id,
                retry_attempt,
            )
            if self._observer is not None:
                self._observer.emit(
                    "event_dropped",
                    reason="duplicate",
                    event_id=event_id,
                    retry_attempt=retry_attempt,
                )
            return True
        self._seen_events[event_id] = None
        if len(self._seen_events) > SEEN_EVENT_LIMIT:
            self._seen_events.popitem(last=False)
        return False

    def to_inbound(
        self, request_type: str, payload: dict[str, Any]
    ) -> Optional[InboundEvent]:
        """Normalize a Socket Mode request; None means ignore."""
        if request_type == SLASH_COMMANDS:
            text = f"{payload.get('command', '')} {payload.get('text', '')}".strip()
            return InboundEvent(
                sequence=next(self._sequence),
                kind=EventKind.CONTROL,
                channel=payload.get("channel_id"),
                user_id=payload.get("user_id"),
                message_id=payload.get("trigger_id"),
                text=text,
                payload=payload,
            )
        if request_type != EVENTS_API:
            return None

        event = payload.get("event") or {}
        if event.get("type") != "message":
            return InboundEvent(
                sequence=next(self._sequence),
                kind=EventKind.SYSTEM,
                channel=event.get("channel"),
                thread_ts=event.get("thread_ts"),
                user_id=event.get("user"),
                message_id=payload.get("event_id"),
                payload=payload,
            )

        # Ignore bot/system messages: subtype covers edits, deletes, bot_message
        if event.get("subtype") or event.get("bot_id"):
            logger.debug(
                "Ignoring bot/system message (subtype=%s, bot_id=%s)",
                event.get("subtype"),
                event.get("bot_id"),
            )
            return None
        user_id = event.get("user")
        if not user_id or user_id == self.bot_user_id:
            return None

        text = MENTION_RE.sub("", event.get("text") or "").strip()
        if not text:
            return None

        kind = EventKind.MESSAGE
        if self._control_prefix and text.startswith(self._control_prefix):
            kind = EventKind.CONTROL
        return InboundEvent(
            sequence=next(self._sequence),
            kind=kind,
            channel=event.get("channel"),
            thread_ts=event.get("thread_ts"),
            user_id=user_id,
            message_id=event.get("ts"),
            text=text,
            payload=payload,
        )
