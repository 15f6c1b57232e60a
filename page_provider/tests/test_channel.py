"""
Tests for the in-process window message channel.
"""

from __future__ import annotations

import asyncio

import pytest

from page_provider.channel import MessageEvent, WindowChannel


@pytest.mark.asyncio
async def test_delivery_is_scheduled() -> None:
    channel = WindowChannel("https://dapp.example")
    received: list[MessageEvent] = []
    channel.add_listener(received.append)

    channel.post_message({"type": "ping"})
    assert received == []

    await asyncio.sleep(0)
    assert received == [MessageEvent(data={"type": "ping"}, origin="https://dapp.example")]


@pytest.mark.asyncio
async def test_target_origin_filter() -> None:
    channel = WindowChannel("https://dapp.example")
    received: list[MessageEvent] = []
    channel.add_listener(received.append)

    channel.post_message("for someone else", target_origin="https://evil.example")
    channel.post_message("for us", target_origin="https://dapp.example")
    await asyncio.sleep(0)

    assert [event.data for event in received] == ["for us"]


@pytest.mark.asyncio
async def test_source_origin_is_reported() -> None:
    channel = WindowChannel("https://dapp.example")
    received: list[MessageEvent] = []
    channel.add_listener(received.append)

    channel.post_message("hello", source_origin="https://iframe.example")
    await asyncio.sleep(0)

    assert received[0].origin == "https://iframe.example"


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others() -> None:
    channel = WindowChannel("https://dapp.example")
    received: list[MessageEvent] = []

    def broken(event: MessageEvent) -> None:
        raise RuntimeError("listener bug")

    channel.add_listener(broken)
    channel.add_listener(received.append)
    channel.post_message("still delivered")
    await asyncio.sleep(0)

    assert len(received) == 1


@pytest.mark.asyncio
async def test_remove_listener() -> None:
    channel = WindowChannel("https://dapp.example")
    received: list[MessageEvent] = []
    channel.add_listener(received.append)
    channel.remove_listener(received.append)
    # Removing twice is harmless
    channel.remove_listener(received.append)

    channel.post_message("nobody listens")
    await asyncio.sleep(0)

    assert received == []
