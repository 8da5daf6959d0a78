from __future__ import annotations

import asyncio
import contextlib
import functools
from typing import Optional

from relay.adapters.base import BaseGatewayLink
from relay.adapters.console import ConsoleGatewayLink
from relay.adapters.slack import SlackGatewayLink
from relay.config import Settings, get_settings
from relay.core.reconnector import BackoffPolicy, Reconnector
from relay.core.routing import EventRouter
from relay.infra.logging_config import get_logger
from relay.infra.observer import LoggingObserver, Observer
from relay.services.outbound_dispatcher import OutboundDispatcher
from relay.services.session_manager import SessionManager
from relay.workers.backend import BackendClient, build_backend_client_from_settings

logger = get_logger("runtime")


class Runtime:
    """
    Wires the gateway, sessions, backend and outbound path together.

    run() blocks until the gateway stream ends; shutdown() drains: stop taking
    events, let in-flight turns finish within the grace period, flush replies,
    then close the gateway.
    """

    def __init__(
        self,
        settings: Settings,
        link: BaseGatewayLink,
        backend: BackendClient,
        observer: Optional[Observer] = None,
    ) -> None:
        self.settings = settings
        self.observer = observer or LoggingObserver()
        self.reconnector = Reconnector(
            link,
            self.observer,
            backoff=BackoffPolicy(
                base=settings.backoff_base_seconds,
                cap=settings.backoff_cap_seconds,
                jitter=settings.backoff_jitter_seconds,
            ),
            stability_threshold=settings.connection_stability_seconds,
        )
        self.dispatcher = OutboundDispatcher(
            self.reconnector,
            self.observer,
            gap_timeout=settings.outbound_gap_timeout_seconds,
        )
        self.reconnector.on_connected(self._flush_deferred)
        self.backend = backend
        self.sessions = SessionManager(
            backend,
            self.dispatcher,
            self.observer,
            idle_timeout=settings.session_idle_timeout_seconds,
            max_pending=settings.session_max_pending,
            pool_size=settings.worker_pool_size,
            control_prefix=settings.control_prefix,
        )
        self.router = EventRouter(self.reconnector.events, self.sessions, self.observer)
        self._background: list[asyncio.Task[None]] = []
        self._shutdown_started = False
        self._shutdown_done = asyncio.Event()
        self._shutdown_task: Optional[asyncio.Task[None]] = None

    async def _flush_deferred(self) -> None:
        await self.dispatcher.flush_pending()

    async def run(self) -> None:
        self._background = [
            asyncio.create_task(
                self.sessions.run_sweeper(self.settings.session_sweep_interval_seconds),
                name="session-sweeper",
            ),
            asyncio.create_task(
                self.dispatcher.run_gap_sweeper(
                    self.settings.outbound_sweep_interval_seconds
                ),
                name="outbound-gap-sweeper",
            ),
        ]
        try:
            await self.router.run()
        finally:
            if self._shutdown_started:
                await self._shutdown_done.wait()
            else:
                await self.shutdown()

    def request_shutdown(self, reason: str = "requested") -> asyncio.Task[None]:
        """Start shutdown from a sync callback; the task is kept on the runtime."""
        if self._shutdown_task is None:
            logger.info("Shutdown requested: %s", reason)
            self._shutdown_task = asyncio.ensure_future(self.shutdown())
        return self._shutdown_task

    async def shutdown(self) -> None:
        if self._shutdown_started:
            await self._shutdown_done.wait()
            return
        self._shutdown_started = True
        logger.info("Shutting down relay")
        try:
            self.reconnector.begin_drain()
            self.router.stop()
            self.sessions.stop_accepting()
            finished = await self.sessions.wait_idle(self.settings.shutdown_grace_seconds)
            if not finished:
                logger.warning("Shutdown grace period elapsed with work in flight")
            await self.dispatcher.flush_pending()
            if self.dispatcher.undelivered_count:
                logger.warning(
                    "%d replies could not be delivered before shutdown",
                    self.dispatcher.undelivered_count,
                )
            for task in self._background:
                task.cancel()
            for task in self._background:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self.reconnector.close()
            await self.backend.aclose()
        finally:
            self._shutdown_done.set()
            logger.info("Relay stopped")


def build_link(settings: Settings, observer: Observer) -> BaseGatewayLink:
    """Create the gateway link named by settings.gateway."""
    if settings.gateway == "console":
        return ConsoleGatewayLink(control_prefix=settings.control_prefix)
    return SlackGatewayLink(
        app_token=settings.slack_app_token,
        bot_token=settings.slack_bot_token,
        control_prefix=settings.control_prefix,
        health_check_interval=settings.link_health_check_seconds,
        observer=observer,
    )


def build_runtime_from_settings(settings: Optional[Settings] = None) -> Runtime:
    settings = settings or get_settings()
    settings.require_runtime_settings()
    observer = LoggingObserver()
    link = build_link(settings, observer)
    backend = build_backend_client_from_settings(observer, settings)
    runtime = Runtime(settings, link, backend, observer=observer)
    if isinstance(link, ConsoleGatewayLink):
        link.on_eof = functools.partial(runtime.request_shutdown, "end of console input")
    return runtime
