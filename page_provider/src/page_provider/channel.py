"""
In-process stand-in for ``window.postMessage``.

A page and its content relay share one WindowChannel. Posting never calls a
listener synchronously; delivery is scheduled on the running loop, like a
browser message event.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger


@dataclass(frozen=True)
class MessageEvent:
    data: Any
    origin: str


Listener = Callable[[MessageEvent], None]


class WindowChannel:
    def __init__(self, origin: str):
        self.origin = origin
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def post_message(
        self, data: Any, target_origin: str = "*", source_origin: str | None = None
    ) -> None:
        """
        Queue ``data`` for every listener.

        A message addressed to a specific origin is dropped unless it matches
        the channel's origin.
        """
        if target_origin != "*" and target_origin != self.origin:
            logger.debug(f"Dropping message for {target_origin} on {self.origin}")
            return

        event = MessageEvent(data=data, origin=source_origin or self.origin)
        asyncio.get_running_loop().call_soon(self._deliver, event)

    def _deliver(self, event: MessageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Message listener failed: {e}")
