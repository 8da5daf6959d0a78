"""Tests for the relay command line."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from relay.cli.main import cli
from relay.core.errors import BackendError, BackendErrorKind
from relay.workers.backend import ERROR_NOTICE
from tests.fixtures.relay_fixtures import FakeTransport

BASE_ENV = {
    "SLACK_APP_TOKEN": "",
    "SLACK_BOT_TOKEN": "",
    "BACKEND_URL": "",
    "BACKEND_API_TOKEN": "",
}


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("relay.cli.main.LoggingConfig"):
        yield


@pytest.fixture
def runner():
    return CliRunner()


def test_config_prints_masked_settings(runner):
    env = {**BASE_ENV, "BACKEND_URL": "http://agent:8080", "BACKEND_API_TOKEN": "s3cr3t-value"}
    result = runner.invoke(cli, ["config"], env=env)
    assert result.exit_code == 0, result.output
    body = json.loads(result.stdout)
    assert body["backend"]["url"] == "http://agent:8080"
    assert body["backend"]["api_token_set"] is True
    assert "s3cr3t-value" not in result.stdout


def test_run_without_tokens_exits_with_config_error(runner):
    result = runner.invoke(cli, ["run"], env=BASE_ENV)
    assert result.exit_code == 2
    assert "SLACK_APP_TOKEN" in result.output


def test_run_console_gateway_needs_only_backend_url(runner):
    env = {**BASE_ENV, "BACKEND_URL": "http://agent:8080"}
    with patch("relay.cli.main._serve", new=AsyncMock()) as serve:
        result = runner.invoke(cli, ["run", "--gateway", "console", "--no-status-api"], env=env)
    assert result.exit_code == 0, result.output
    settings, with_status_api = serve.await_args.args
    assert settings.gateway == "console"
    assert with_status_api is False


def test_run_with_invalid_transport_exits_with_config_error(runner):
    result = runner.invoke(cli, ["run"], env={**BASE_ENV, "BACKEND_TRANSPORT": "grpc"})
    assert result.exit_code == 2


def test_send_prints_backend_reply(runner):
    transport = FakeTransport()
    transport.script("ping", ["pong ", "from agent"])
    env = {**BASE_ENV, "BACKEND_URL": "http://agent:8080"}
    with patch("relay.workers.backend.build_transport", return_value=transport):
        result = runner.invoke(cli, ["send", "-m", "ping"], env=env)
    assert result.exit_code == 0, result.output
    assert result.stdout.splitlines() == ["pong ", "from agent"]
    assert transport.requests[0].conversation == "cli"
    assert transport.closed


def test_send_reports_backend_failure(runner):
    transport = FakeTransport()
    transport.script("ping", BackendError(BackendErrorKind.REJECTED, "HTTP 400"))
    env = {**BASE_ENV, "BACKEND_URL": "http://agent:8080"}
    with patch("relay.workers.backend.build_transport", return_value=transport):
        result = runner.invoke(cli, ["send", "-m", "ping", "-c", "C42"], env=env)
    assert result.exit_code == 1
    assert ERROR_NOTICE in result.output
    assert transport.requests[0].conversation == "C42"


def test_send_requires_backend_url(runner):
    result = runner.invoke(cli, ["send", "-m", "ping"], env=BASE_ENV)
    assert result.exit_code == 2
    assert "BACKEND_URL" in result.output
