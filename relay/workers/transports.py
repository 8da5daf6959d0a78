"""
Backend transports.

A transport turns one BackendRequest into an async sequence of BackendChunk
(the last one has done=True) or raises BackendError. HttpBackendTransport is
one-shot; WebSocketBackendTransport streams over one shared connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from typing import Any, AsyncIterator, Optional, Protocol

import httpx
import websockets
from pydantic import ValidationError

from relay.core.errors import BackendError, BackendErrorKind
from relay.infra.logging_config import get_logger
from relay.schemas.backend import (
    AgentSendParams,
    BackendChunk,
    BackendReply,
    BackendRequest,
    RpcMessage,
)

logger = get_logger("backend")

CONVERSE_PATH = "/converse"
AGENT_SEND_METHOD = "agent.send"

TIMEOUT_STATUS_CODES = frozenset({408, 504})
RPC_TIMEOUT_CODE = -32001
RPC_INTERNAL_ERROR_CODE = -32603


class BackendTransport(Protocol):
    def exchange(self, request: BackendRequest) -> AsyncIterator[BackendChunk]: ...

    async def aclose(self) -> None: ...


def _auth_headers(api_token: Optional[str]) -> dict[str, str]:
    if not api_token:
        return {}
    return {"Authorization": f"Bearer {api_token}"}


class HttpBackendTransport:
    """One request, one reply: POST {base_url}/converse."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}{CONVERSE_PATH}"
        self._headers = {"Accept": "application/json", **_auth_headers(api_token)}
        self._timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def exchange(self, request: BackendRequest) -> AsyncIterator[BackendChunk]:
        try:
            resp = await self._get_client().post(
                self._url,
                json=request.model_dump(mode="json"),
                headers=self._headers,
            )
        except httpx.TimeoutException as e:
            raise BackendError(BackendErrorKind.TIMEOUT, f"Backend timed out: {e}") from e
        except httpx.TransportError as e:
            raise BackendError(BackendErrorKind.TRANSPORT, str(e)) from e

        if resp.status_code in TIMEOUT_STATUS_CODES:
            raise BackendError(
                BackendErrorKind.TIMEOUT,
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        if 400 <= resp.status_code < 500:
            raise BackendError(
                BackendErrorKind.REJECTED,
                f"HTTP {resp.status_code}: {resp.text[:500] if resp.text else 'no body'}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 500:
            raise BackendError(
                BackendErrorKind.TRANSPORT,
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            reply = BackendReply.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise BackendError(
                BackendErrorKind.TRANSPORT, f"Invalid backend reply: {e}"
            ) from e
        yield BackendChunk(text=reply.reply, done=True, context=reply.context)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class WebSocketBackendTransport:
    """
    Streaming agent.send over one persistent WebSocket.

    Frames are matched to requests by id, so many conversations share the
    socket. A dropped socket fails every pending request with TRANSPORT and is
    reopened by the next request.
    """

    def __init__(
        self,
        url: str,
        api_token: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        self._url = url
        self._headers = _auth_headers(api_token)
        self._timeout = timeout
        self._ids = itertools.count(1)
        self._ws: Any = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._pending: dict[str, asyncio.Queue[Any]] = {}
        self._connect_lock = asyncio.Lock()

    async def _ensure_connected(self) -> Any:
        async with self._connect_lock:
            if self._ws is not None:
                return self._ws
            try:
                ws = await asyncio.wait_for(
                    websockets.connect(
                        self._url, additional_headers=list(self._headers.items())
                    ),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as e:
                raise BackendError(
                    BackendErrorKind.TIMEOUT, "Backend WebSocket connect timed out"
                ) from e
            except (OSError, websockets.WebSocketException) as e:
                raise BackendError(BackendErrorKind.TRANSPORT, str(e)) from e
            self._ws = ws
            self._reader = asyncio.create_task(self._read_frames(ws))
            logger.info("Backend WebSocket connected to %s", self._url)
            return ws

    async def _read_frames(self, ws: Any) -> None:
        error: BaseException = ConnectionError("backend socket closed")
        try:
            async for raw in ws:
                try:
                    frame = RpcMessage.model_validate(json.loads(raw))
                except (ValueError, ValidationError) as e:
                    logger.warning("Ignoring malformed backend frame: %s", e)
                    continue
                queue = self._pending.get(frame.id or "")
                if queue is None:
                    logger.debug("Backend frame for unknown id %s", frame.id)
                    continue
                queue.put_nowait(frame)
        except websockets.WebSocketException as e:
            error = e
        finally:
            if self._ws is ws:
                self._ws = None
            for queue in self._pending.values():
                queue.put_nowait(error)

    async def exchange(self, request: BackendRequest) -> AsyncIterator[BackendChunk]:
        ws = await self._ensure_connected()
        request_id = f"req-{next(self._ids)}"
        params = AgentSendParams(
            session_id=request.conversation,
            message=request.text,
            context=request.context,
        )
        frame = RpcMessage(
            id=request_id,
            method=AGENT_SEND_METHOD,
            params=params.model_dump(by_alias=True, mode="json"),
        )
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pending[request_id] = queue
        try:
            try:
                await ws.send(frame.model_dump_json(exclude_none=True))
            except websockets.WebSocketException as e:
                raise BackendError(BackendErrorKind.TRANSPORT, str(e)) from e
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self._timeout)
                except asyncio.TimeoutError as e:
                    raise BackendError(
                        BackendErrorKind.TIMEOUT,
                        f"No backend frame within {self._timeout}s",
                    ) from e
                if isinstance(item, BaseException):
                    raise BackendError(BackendErrorKind.TRANSPORT, str(item)) from item
                chunk = self._to_chunk(item)
                yield chunk
                if chunk.done:
                    return
        finally:
            self._pending.pop(request_id, None)

    @staticmethod
    def _to_chunk(frame: RpcMessage) -> BackendChunk:
        if frame.error is not None:
            if frame.error.code == RPC_TIMEOUT_CODE:
                kind = BackendErrorKind.TIMEOUT
            elif frame.error.code == RPC_INTERNAL_ERROR_CODE:
                kind = BackendErrorKind.TRANSPORT
            else:
                kind = BackendErrorKind.REJECTED
            raise BackendError(kind, frame.error.message or f"RPC error {frame.error.code}")
        result = frame.result or {}
        text = result.get("chunk")
        if text is None:
            text = result.get("response", "")
        return BackendChunk(
            text=str(text or ""),
            # A result without "done" is a one-shot final reply
            done=bool(result.get("done", True)),
            context=result.get("context"),
        )

    async def aclose(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
