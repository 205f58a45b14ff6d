"""Cursor-tracked polling for channels backed by a pollable store.

A PollingChannel owns one PollCursor per listen loop.  The cursor is
seeded from the source's current maximum position, so history that
existed before startup is never replayed, and it only ever moves
forward.  Records are consumed (cursor advanced) even when the sender is
not allowed or the body is empty, so they are never retried.

Data access and outbound delivery sit behind the narrow MessageSource /
MessageTransport interfaces; adapters plug in the real subprocess or
HTTP implementations and tests plug in fakes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import config
from channels.access import is_allowed
from channels.base import Channel, ChannelError, ChannelMessage
from utils import LatencyTracker

if TYPE_CHECKING:
    from channels.scheduler import DeliverySink


@dataclass(frozen=True)
class SourceRecord:
    """One row fetched from a polled source."""

    position: int
    sender: str
    text: str
    reply_to: str | None = None
    aliases: tuple[str, ...] = ()   # other identities the allow-list may name


class MessageSource(ABC):
    """Read side of a polled store."""

    @abstractmethod
    async def max_position(self) -> int:
        """Current highest position in the store (0 when empty)."""
        ...

    @abstractmethod
    async def fetch_since(self, cursor: int, limit: int) -> list[SourceRecord]:
        """Records with position > cursor, ascending, at most ``limit``.

        Raises TransportError / ParseError on failure.
        """
        ...


class MessageTransport(ABC):
    """Write side: deliver one outbound message."""

    @abstractmethod
    async def deliver(self, message: str, target: str) -> None:
        """Raises SendError with the transport's diagnostic on failure."""
        ...


class PollCursor:
    """Last processed position for one polling loop. Never moves backwards."""

    __slots__ = ("_position",)

    def __init__(self, position: int = 0):
        self._position = max(0, int(position))

    @property
    def position(self) -> int:
        return self._position

    def advance(self, position: int) -> bool:
        """Move to ``position`` if it is ahead. Returns False for stale rows."""
        if position <= self._position:
            return False
        self._position = position
        return True

    def __repr__(self) -> str:
        return f"PollCursor({self._position})"


class PollingChannel(Channel):
    """Channel whose inbound side is a fixed-interval poll of a MessageSource."""

    default_poll_interval: float = config.DEFAULT_POLL_INTERVAL

    def __init__(
        self,
        source: MessageSource,
        transport: MessageTransport,
        allow_list: list[str] | None = None,
        *,
        poll_interval: float | None = None,
        page_size: int | None = None,
        name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        super().__init__(allow_list, name=name, logger=logger)
        self.source = source
        self.transport = transport
        self.poll_interval = poll_interval if poll_interval else self.default_poll_interval
        self.page_size = page_size or config.POLL_PAGE_SIZE
        self.cursor: PollCursor | None = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: str, target: str) -> None:
        await self.transport.deliver(message, target)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def check_prerequisites(self) -> None:
        """Raise ConfigError when the channel cannot run at all."""
        return None

    async def seed_cursor(self) -> PollCursor:
        """Start at the source's current maximum so old history is skipped."""
        try:
            start = await self.source.max_position()
        except (ChannelError, OSError) as exc:
            self.log.warning(
                "%s: could not read current position (%s); starting cursor at 0",
                self.name, exc,
            )
            start = 0
        self.log.debug("%s cursor seeded at %d", self.name, start)
        return PollCursor(start)

    def is_sender_allowed(self, record: SourceRecord) -> bool:
        return any(
            is_allowed(self.allow_list, identity)
            for identity in (record.sender, *record.aliases)
        )

    async def poll_once(self, cursor: PollCursor, deliver: DeliverySink) -> bool:
        """Fetch and emit one page. Returns False once ``deliver`` is closed."""
        try:
            async with LatencyTracker(self.name, "fetch", logger=self.log):
                fetched, records = await deliver.guard(
                    self.source.fetch_since(cursor.position, self.page_size)
                )
        except (ChannelError, OSError) as exc:
            self.log.warning("%s poll error: %s", self.name, exc)
            return True
        if not fetched:
            return False

        for record in sorted(records, key=lambda r: r.position):
            if not cursor.advance(record.position):
                continue
            if not self.is_sender_allowed(record):
                self.log.debug("%s: dropping message %d from %s (not allowed)",
                               self.name, record.position, record.sender)
                continue
            if not record.text.strip():
                continue

            message = ChannelMessage(
                id=str(record.position),
                sender=record.sender,
                content=record.text,
                channel=self.name,
                reply_to=record.reply_to,
            )
            if not await deliver.put(message):
                return False
        return True

    async def listen(self, deliver: DeliverySink) -> None:
        await self.check_prerequisites()
        self.log.info("%s channel listening (poll every %.1fs)", self.name, self.poll_interval)

        cursor = await self.seed_cursor()
        self.cursor = cursor

        while not deliver.closed:
            if await deliver.wait_closed(self.poll_interval):
                break
            if not await self.poll_once(cursor, deliver):
                break
