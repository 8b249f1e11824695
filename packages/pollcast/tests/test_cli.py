"""CLI tests — argument handling and output formatting, no network."""

import json

import pytest
import structlog
from click.testing import CliRunner

from pollcast import __version__
from pollcast.cli import format_envelope, format_error, main
from pollcast.envelope import Envelope, ErrorEnvelope


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


def test_help_lists_commands():
    result = CliRunner().invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "subscribe" in result.output
    assert "time" in result.output


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_subscribe_without_key_fails_cleanly(monkeypatch):
    monkeypatch.delenv("POLLCAST_SUBSCRIBE_KEY", raising=False)
    result = CliRunner().invoke(main, ["subscribe", "news"])
    assert result.exit_code == 1
    assert "subscribe_key" in result.output


def test_subscribe_without_channels_fails_cleanly():
    result = CliRunner().invoke(main, ["subscribe", "--subscribe-key", "demo"])
    assert result.exit_code == 1
    assert "at least one channel or group" in result.output


def test_format_envelope():
    line = format_envelope(
        Envelope(channel="news", message={"text": "hi"}, timetoken="15", group="feeds")
    )
    assert json.loads(line) == {
        "channel": "news",
        "timetoken": "15",
        "message": {"text": "hi"},
        "group": "feeds",
    }


def test_format_error():
    assert format_error(ErrorEnvelope(kind="server", message="HTTP 503")) == "server: HTTP 503"
    assert (
        format_error(ErrorEnvelope(kind="presence_heartbeat", message="down", channel="news"))
        == "presence_heartbeat [news]: down"
    )
