"""Webhook channel adapter.

Inbound messages arrive through the gateway's ``POST /webhook`` route,
which hands the JSON payload to :meth:`WebhookChannel.receive`.  Events
wait in a small inbox until the listen loop applies the allow-list and
moves them into the delivery queue.  Replies are POSTed to a configured
callback URL.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from channels.access import is_allowed
from channels.base import Channel, ChannelMessage, ParseError, SendError, TransportError
from channels.factory import register_channel_type
from config import ChannelSettings

if TYPE_CHECKING:
    from channels.scheduler import DeliverySink

# Remember this many recent event ids to drop sender retries
_RECENT_IDS = 512


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    sender: str
    text: str
    received_at: int


class WebhookChannel(Channel):
    """Webhook-receiver channel."""

    name = "webhook"

    def __init__(
        self,
        allow_list: list[str] | None = None,
        *,
        reply_url: str = "",
        reply_token: str = "",
        inbox_size: int = 100,
        http_transport: httpx.AsyncBaseTransport | None = None,
        name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        super().__init__(allow_list, name=name, logger=logger)
        self.reply_url = reply_url
        self.reply_token = reply_token
        self._inbox: asyncio.Queue[WebhookEvent] = asyncio.Queue(maxsize=inbox_size)
        self._recent: deque[str] = deque(maxlen=_RECENT_IDS)
        self._client = httpx.AsyncClient(timeout=10.0, transport=http_transport)

    @classmethod
    def from_settings(
        cls, settings: ChannelSettings, logger: logging.Logger | None = None,
    ) -> WebhookChannel:
        options = settings.options
        return cls(
            settings.allow_list,
            reply_url=str(options.get("reply_url") or ""),
            reply_token=str(options.get("reply_token") or ""),
            inbox_size=int(options.get("inbox_size") or 100),
            name=settings.name,
            logger=logger,
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def receive(self, payload: Any) -> str:
        """Validate a webhook payload and queue it for the listen loop.

        Expected payload keys:
            sender  : sender identity (required)
            message : text body (``content`` / ``text`` accepted too)
            id      : caller's message id; retries with the same id are dropped

        Returns the event id.  Raises ParseError for a malformed payload
        and TransportError when the inbox is full.
        """
        if not isinstance(payload, dict):
            raise ParseError("webhook payload must be a JSON object")

        sender = payload.get("sender")
        text = payload.get("message", payload.get("content", payload.get("text")))
        if not isinstance(sender, str) or not isinstance(text, str):
            raise ParseError("webhook payload needs string 'sender' and 'message' fields")

        raw_id = payload.get("id")
        event_id = str(raw_id) if raw_id not in (None, "") else uuid.uuid4().hex
        if event_id in self._recent:
            self.log.debug("%s: duplicate webhook event %s ignored", self.name, event_id)
            return event_id

        event = WebhookEvent(event_id, sender, text, int(time.time()))
        try:
            self._inbox.put_nowait(event)
        except asyncio.QueueFull:
            raise TransportError(f"{self.name} inbox is full") from None
        self._recent.append(event_id)
        return event_id

    def pending(self) -> int:
        """Events received but not yet picked up by the listen loop."""
        return self._inbox.qsize()

    async def listen(self, deliver: DeliverySink) -> None:
        self.log.info("%s channel listening for webhook events", self.name)
        while not deliver.closed:
            received, event = await deliver.guard(self._inbox.get())
            if not received:
                break
            if not is_allowed(self.allow_list, event.sender):
                self.log.debug("%s: dropping event %s from %s (not allowed)",
                               self.name, event.id, event.sender)
                continue
            if not event.text.strip():
                continue

            message = ChannelMessage(
                id=event.id,
                sender=event.sender,
                content=event.text,
                channel=self.name,
                timestamp=event.received_at,
            )
            if not await deliver.put(message):
                break

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: str, target: str) -> None:
        if not self.reply_url:
            raise SendError(f"{self.name} has no reply_url configured")

        headers = {}
        if self.reply_token:
            headers["Authorization"] = f"Bearer {self.reply_token}"
        body = {"channel": self.name, "target": target, "message": message}

        try:
            resp = await self._client.post(self.reply_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise SendError(f"webhook reply failed: {exc}") from exc
        if resp.is_error:
            raise SendError(f"webhook reply failed ({resp.status_code}): {resp.text[:200]}")

    async def health_check(self) -> bool:
        return not self._inbox.full()

    async def aclose(self) -> None:
        await self._client.aclose()


# Auto-register
register_channel_type("webhook", WebhookChannel)
