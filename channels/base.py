"""Base classes and registry for the channel abstraction layer.

ChannelMessage normalizes inbound data from any source (iMessage,
Telegram, webhooks) into a single structure.  Replies travel back out
through the originating channel's own ``send``.

The ChannelRegistry maps channel names to live Channel instances so the
dispatcher can route a reply by name without knowing adapter types.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from channels.scheduler import DeliverySink
    from config import ChannelSettings

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ChannelError(Exception):
    """Base class for channel failures."""


class ConfigError(ChannelError):
    """Missing credential or path. Disables one channel, not the process."""


class TransportError(ChannelError):
    """Network or external process call failed. Retried later."""


class ParseError(ChannelError):
    """External fetch or API returned an unexpected shape."""


class SendError(TransportError):
    """Outbound delivery failed; carries the transport's diagnostic text."""


class UnknownChannelError(ChannelError):
    """No channel is registered under the requested name."""


# ---------------------------------------------------------------------------
# Inbound message dataclass, the universal representation
# ---------------------------------------------------------------------------

@dataclass
class ChannelMessage:
    """Normalized inbound message from any channel.

    ``id`` is unique per ``(channel, id)``, not globally.
    """

    id: str
    sender: str
    content: str
    channel: str
    timestamp: int = field(default_factory=lambda: int(time.time()))
    reply_to: str | None = None   # recipient for replies when it differs from sender

    @property
    def reply_target(self) -> str:
        """Where a reply to this message should be sent."""
        return self.reply_to or self.sender


# ---------------------------------------------------------------------------
# Abstract Channel base class
# ---------------------------------------------------------------------------

class Channel(ABC):
    """Base class for all channel implementations.

    Each channel knows how to:
    1. Listen for new inbound messages and push them into a sink
    2. Send a reply to a channel-specific target
    3. Report whether its transport looks usable
    """

    name: str = "base"

    def __init__(
        self,
        allow_list: list[str] | None = None,
        *,
        name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        if name:
            self.name = name
        self.allow_list: list[str] = list(allow_list or [])
        self.log = logger or logging.getLogger(f"channels.{self.name}")

    @classmethod
    @abstractmethod
    def from_settings(
        cls, settings: ChannelSettings, logger: logging.Logger | None = None,
    ) -> Channel:
        """Build the channel from config. Raises ConfigError when unusable."""
        ...

    @abstractmethod
    async def send(self, message: str, target: str) -> None:
        """Deliver ``message`` to ``target``. Raises SendError on failure."""
        ...

    @abstractmethod
    async def listen(self, deliver: DeliverySink) -> None:
        """Push new inbound messages into ``deliver`` until it is closed."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Short self-test. Never raises."""
        ...

    async def aclose(self) -> None:
        """Release transport resources (HTTP clients etc.)."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


# ---------------------------------------------------------------------------
# Channel registry: lookup and outbound routing by name
# ---------------------------------------------------------------------------

@dataclass
class ChannelEntry:
    name: str
    channel: Channel
    settings: ChannelSettings | None = None


class ChannelRegistry:
    """Registry mapping channel names to live Channel instances.

    Filled once at startup, read-only afterwards.
    """

    def __init__(self):
        self._entries: dict[str, ChannelEntry] = {}
        self._lock = threading.Lock()

    def register(self, channel: Channel, settings: ChannelSettings | None = None) -> None:
        """Register a channel by its .name attribute."""
        with self._lock:
            if channel.name in self._entries:
                raise ConfigError(f"duplicate channel name: {channel.name}")
            self._entries[channel.name] = ChannelEntry(channel.name, channel, settings)
        log.debug("Registered channel: %s", channel.name)

    def get(self, name: str) -> Channel | None:
        """Look up a channel by name."""
        entry = self._entries.get(name)
        return entry.channel if entry else None

    def entries(self) -> list[ChannelEntry]:
        return [self._entries[name] for name in sorted(self._entries)]

    def list_channels(self) -> list[str]:
        """Return sorted list of registered channel names."""
        return sorted(self._entries)

    async def send(self, channel_name: str, message: str, target: str) -> None:
        """Route an outbound reply through the named channel."""
        channel = self.get(channel_name)
        if channel is None:
            raise UnknownChannelError(f"unknown channel: {channel_name}")
        await channel.send(message, target)

    async def health(self) -> dict[str, bool]:
        """Run every channel's health check concurrently."""
        names = self.list_channels()
        results = await asyncio.gather(
            *(self._safe_health(self._entries[name].channel) for name in names)
        )
        return dict(zip(names, results))

    @staticmethod
    async def _safe_health(channel: Channel) -> bool:
        try:
            return bool(await channel.health_check())
        except Exception:
            log.warning("Health check raised for %s", channel.name, exc_info=True)
            return False

    async def aclose(self) -> None:
        """Close every channel's transport resources."""
        for entry in self.entries():
            try:
                await entry.channel.aclose()
            except Exception:
                log.warning("Failed to close channel %s", entry.name, exc_info=True)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
