#!/usr/bin/env python3
"""
pollcast Quickstart — subscribe, receive, add a channel, unsubscribe.

Run with: python examples/quickstart.py

Requires: pip install -e .
Uses the public "demo" subscribe key unless POLLCAST_SUBSCRIBE_KEY is set.
Publish to "pollcast-demo" from any other client to see messages arrive.
"""

import asyncio
import os

from pollcast import Client, Envelope, ErrorEnvelope


def on_message(envelope: Envelope):
    print(f"   [{envelope.channel}] {envelope.message!r} @ {envelope.timetoken}")


def on_error(envelope: ErrorEnvelope):
    print(f"   ERROR {envelope.kind}: {envelope.message}")


def on_status(message: str):
    print(f"   -- {message}")


async def main():
    key = os.environ.get("POLLCAST_SUBSCRIBE_KEY", "demo")

    async with Client(
        subscribe_key=key,
        heartbeat=60,
        callback=on_message,
        error_callback=on_error,
        connect_callback=on_status,
        reconnect_callback=on_status,
    ) as client:
        # ── Server time ───────────────────────────────────────────────
        print("1. Server time...")
        print(f"   {await client.time()}")

        # ── Subscribe ─────────────────────────────────────────────────
        print("\n2. Subscribing to pollcast-demo...")
        await client.subscribe("pollcast-demo", state={"mood": "curious"})
        await asyncio.sleep(15)
        print(f"   cursor: {client.timetoken()}")

        # ── Multiplex a second channel (cursor is kept) ───────────────
        print("\n3. Adding pollcast-demo-2...")
        await client.subscribe("pollcast-demo-2")
        await asyncio.sleep(15)
        print(f"   channels: {client.channels()}  cursor: {client.timetoken()}")

        # ── Unsubscribe (sends presence leave) ────────────────────────
        print("\n4. Unsubscribing...")
        await client.unsubscribe(["pollcast-demo", "pollcast-demo-2"])
        print(f"   subscribed: {client.subscribed()}  state: {client.loop_state().value}")

    print("\nDone.")


if __name__ == "__main__":
    asyncio.run(main())
