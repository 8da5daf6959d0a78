"""
Command line entry point.

    relay run      run the Slack (or console) bridge and, when enabled, the status API
    relay send     send one message straight to the backend agent
    relay config   print the effective non-sensitive configuration
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Any, NoReturn, Optional

import click
from pydantic import ValidationError

from relay.config import Settings, get_settings
from relay.core.errors import ConfigError
from relay.infra.logging_config import LoggingConfig, get_logger
from relay.infra.observer import LoggingObserver
from relay.models.session import PendingEvent, Session
from relay.schemas.relay import ConversationKey, InboundEvent

logger = get_logger("cli")

CONFIG_ERROR_EXIT_CODE = 2


def _json_out(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


def _fail(message: str, *, exit_code: int = 1) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        _fail(f"invalid configuration: {e}", exit_code=CONFIG_ERROR_EXIT_CODE)


@click.group(help="Relay Slack conversations to a backend agent.")
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
def cli(log_level: Optional[str]) -> None:
    LoggingConfig(level=log_level)


async def _serve(settings: Settings, with_status_api: bool) -> None:
    # Imported here so `relay send` and `relay config` stay light
    from relay.core.runtime import build_runtime_from_settings

    runtime = build_runtime_from_settings(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # request_shutdown keeps a reference to the shutdown task
        loop.add_signal_handler(sig, runtime.request_shutdown, sig.name)

    api_task: Optional[asyncio.Task[None]] = None
    server = None
    if with_status_api:
        import uvicorn

        from relay.main import create_app

        server = uvicorn.Server(
            uvicorn.Config(
                create_app(runtime),
                host="0.0.0.0",
                port=settings.port,
                log_level=settings.log_level.lower(),
            )
        )
        # Signals are handled by the runtime, not uvicorn
        server.install_signal_handlers = lambda: None
        api_task = asyncio.create_task(server.serve(), name="status-api")
        logger.info("Status API listening on port %s", settings.port)

    try:
        await runtime.run()
    finally:
        if server is not None and api_task is not None:
            server.should_exit = True
            await api_task


@cli.command("run", help="Run the bridge until SIGINT/SIGTERM (or end of console input).")
@click.option(
    "--gateway",
    type=click.Choice(["slack", "console"], case_sensitive=False),
    default=None,
    help="Gateway to relay (default: GATEWAY, else slack).",
)
@click.option(
    "--status-api/--no-status-api",
    default=None,
    help="Serve /health, /sessions and /system/settings (default: STATUS_API_ENABLED).",
)
def cmd_run(gateway: Optional[str], status_api: Optional[bool]) -> None:
    settings = _load_settings()
    if gateway is not None:
        settings = settings.model_copy(update={"gateway": gateway.lower()})
    try:
        settings.require_runtime_settings()
    except ConfigError as e:
        _fail(str(e), exit_code=CONFIG_ERROR_EXIT_CODE)
    enabled = settings.status_api_enabled if status_api is None else status_api
    asyncio.run(_serve(settings, enabled))


async def _send_once(settings: Settings, conversation: str, message: str) -> bool:
    from relay.workers.backend import build_backend_client_from_settings

    client = build_backend_client_from_settings(LoggingObserver(), settings)
    event = InboundEvent(sequence=1, channel=conversation, text=message)
    session = Session(key=ConversationKey(channel=conversation))
    session.in_flight = PendingEvent(session.next_sequence(), event)
    ok = True
    try:
        async for reply in client.converse(session, event):
            if reply.is_error:
                ok = False
                click.echo(reply.text, err=True)
            elif reply.text:
                click.echo(reply.text)
    finally:
        await client.aclose()
    return ok


@cli.command("send", help="Send one message to the backend agent and print the reply.")
@click.option("-m", "--message", required=True, help="Message text.")
@click.option(
    "-c",
    "--conversation",
    default="cli",
    show_default=True,
    help="Conversation id sent to the backend.",
)
def cmd_send(message: str, conversation: str) -> None:
    settings = _load_settings()
    if not settings.backend_url:
        _fail("Missing required settings: BACKEND_URL", exit_code=CONFIG_ERROR_EXIT_CODE)
    if not asyncio.run(_send_once(settings, conversation, message)):
        raise SystemExit(1)


@cli.command("config", help="Print the effective configuration (tokens masked).")
def cmd_config() -> None:
    from relay.routers.system import group_settings

    _json_out(group_settings(_load_settings()).model_dump(mode="json"))


if __name__ == "__main__":
    cli()
