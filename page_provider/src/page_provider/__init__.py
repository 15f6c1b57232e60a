"""
page_provider - Wallet API exposed to web pages and the content relay behind it.
"""

from page_provider.channel import MessageEvent, WindowChannel
from page_provider.relay import ContentRelay, RelayTabMessenger
from page_provider.request_queue import PepeProvider, ProviderConfig, ProviderError

__all__ = [
    "ContentRelay",
    "MessageEvent",
    "PepeProvider",
    "ProviderConfig",
    "ProviderError",
    "RelayTabMessenger",
    "WindowChannel",
]
