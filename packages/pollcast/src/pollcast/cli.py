"""pollcast CLI — watch channels from a terminal.

Usage:
    pollcast subscribe news sports               # Print every message as JSON
    pollcast subscribe -g alerts --heartbeat 60  # Channel group, with presence
    pollcast time                                # Current server timetoken

Keys and origin come from POLLCAST_* env vars (see pollcast.config) unless
given as options.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import sys
from typing import Optional

import click
import structlog

from pollcast import __version__
from pollcast.client import Client
from pollcast.envelope import Envelope, ErrorEnvelope
from pollcast.errors import PRESENCE_HEARTBEAT, PollcastError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _configure_logging(verbose: bool) -> None:
    """Console logging on stderr; debug with --verbose, warnings otherwise."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _overrides(subscribe_key: Optional[str], origin: Optional[str], ssl: bool) -> dict:
    overrides: dict = {}
    if subscribe_key:
        overrides["subscribe_key"] = subscribe_key
    if origin:
        overrides["origin"] = origin
    if ssl:
        overrides["ssl"] = True
    return overrides


def format_envelope(envelope: Envelope) -> str:
    """One JSON line per message."""
    record = {
        "channel": envelope.channel,
        "timetoken": envelope.timetoken,
        "message": envelope.message,
    }
    if envelope.group:
        record["group"] = envelope.group
    return json.dumps(record, default=str)


def format_error(envelope: ErrorEnvelope) -> str:
    where = f" [{envelope.channel}]" if envelope.channel else ""
    return f"{envelope.kind}{where}: {envelope.message}"


def _fail(error: PollcastError) -> None:
    click.secho(f"Error: {error.message or error}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------

key_option = click.option(
    "--subscribe-key", "-k", help="Subscribe key (or set POLLCAST_SUBSCRIBE_KEY)"
)
origin_option = click.option("--origin", help="Origin host (or set POLLCAST_ORIGIN)")
ssl_option = click.option("--ssl", is_flag=True, help="Use https")


@click.group()
@click.version_option(version=__version__, prog_name="pollcast")
def main():
    """pollcast — long-poll subscribe client for hosted pub/sub channels."""


# ---------------------------------------------------------------------------
# pollcast subscribe
# ---------------------------------------------------------------------------


@main.command()
@click.argument("channels", nargs=-1)
@click.option("--group", "-g", "groups", multiple=True, help="Channel group (repeatable)")
@click.option("--heartbeat", type=int, default=None, help="Presence timeout in seconds")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
@key_option
@origin_option
@ssl_option
def subscribe(channels: tuple[str, ...], groups: tuple[str, ...], heartbeat: Optional[int],
              verbose: bool, subscribe_key: Optional[str], origin: Optional[str], ssl: bool):
    """Subscribe to CHANNELS and print each message until interrupted."""
    _configure_logging(verbose)
    overrides = _overrides(subscribe_key, origin, ssl)
    if heartbeat is not None:
        overrides["heartbeat"] = heartbeat
    try:
        _run(_subscribe_impl(list(channels), list(groups), overrides))
    except PollcastError as e:
        _fail(e)
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)
        return
    # The loop gave up after max_retries.
    sys.exit(1)


async def _subscribe_impl(channels: list[str], groups: list[str], overrides: dict):
    done = asyncio.Event()

    def on_message(envelope: Envelope):
        click.echo(format_envelope(envelope))

    async def on_error(envelope: ErrorEnvelope):
        click.secho(format_error(envelope), fg="red", err=True)
        if envelope.kind != PRESENCE_HEARTBEAT:
            done.set()

    def on_status(message: str):
        click.secho(message, fg="cyan", err=True)

    async with Client(
        callback=on_message,
        error_callback=on_error,
        connect_callback=on_status,
        disconnect_callback=on_status,
        reconnect_callback=on_status,
        **overrides,
    ) as client:
        await client.subscribe(channels, groups)
        click.secho(
            f"Listening on {', '.join(channels + groups)} as {client.uuid}",
            fg="green",
            err=True,
        )
        await done.wait()


# ---------------------------------------------------------------------------
# pollcast time
# ---------------------------------------------------------------------------


@main.command()
@key_option
@origin_option
@ssl_option
def time(subscribe_key: Optional[str], origin: Optional[str], ssl: bool):
    """Print the server's current timetoken."""
    try:
        click.echo(str(_run(_time_impl(_overrides(subscribe_key, origin, ssl)))))
    except PollcastError as e:
        _fail(e)


async def _time_impl(overrides: dict) -> int:
    async with Client(**overrides) as client:
        return await client.time()


if __name__ == "__main__":
    main()
