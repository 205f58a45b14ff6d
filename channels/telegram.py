"""Telegram channel adapter.

Talks to the Telegram Bot API over httpx.  Inbound updates come from
``getUpdates`` long polling; the ``update_id`` is the cursor position, so
the shared PollingChannel loop provides seeding, dedup and allow-list
filtering.  Replies go out through ``sendMessage``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

import config
from channels.base import ChannelError, ConfigError, ParseError, SendError, TransportError
from channels.factory import register_channel_type
from channels.polling import MessageSource, MessageTransport, PollingChannel, SourceRecord
from config import ChannelSettings
from utils import track_latency

# Telegram rejects messages longer than this
MAX_MESSAGE_CHARS = 4096


def chunk_text(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split a long message into sendable chunks.

    Prefers paragraph breaks, then sentence ends, then spaces.
    """
    if len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_chars:
            chunks.append(remaining)
            break

        split_at = remaining.rfind("\n\n", 0, max_chars)
        if split_at < max_chars // 2:
            split_at = remaining.rfind(". ", 0, max_chars)
        if split_at < max_chars // 3:
            split_at = remaining.rfind(" ", 0, max_chars)
        if split_at < 1:
            split_at = max_chars

        chunk = remaining[:split_at].rstrip()
        remaining = remaining[split_at:].lstrip()
        if chunk:
            chunks.append(chunk)

    return chunks


class TelegramApi:
    """Minimal Bot API client: POST a method, unwrap ``result``."""

    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = "https://api.telegram.org",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=f"{api_base.rstrip('/')}/bot{bot_token}",
            timeout=30.0,
            transport=transport,
        )

    async def call(self, method: str, payload: dict | None = None, *, timeout: float | None = None) -> Any:
        kwargs: dict[str, Any] = {"json": payload or {}}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self._client.post(f"/{method}", **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"Telegram {method} failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            raise ParseError(
                f"Telegram {method} returned non-JSON ({resp.status_code}): {resp.text[:200]}"
            ) from None

        if not isinstance(data, dict):
            raise ParseError(f"Telegram {method} returned unexpected body: {str(data)[:200]}")
        if not data.get("ok"):
            description = data.get("description") or resp.text[:200]
            raise TransportError(f"Telegram {method} error ({resp.status_code}): {description}")
        return data.get("result")

    async def aclose(self) -> None:
        await self._client.aclose()


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _parse_update(update: Any) -> SourceRecord:
    """Map one update to a record; only a missing ``update_id`` is fatal.

    Any other odd shape (non-dict message, non-string text) still yields a
    record at its ``update_id`` so the cursor can move past it.
    """
    update_id = update.get("update_id") if isinstance(update, dict) else None
    if not isinstance(update_id, int) or isinstance(update_id, bool):
        raise ParseError(f"malformed Telegram update: {str(update)[:120]}")

    message = _as_dict(update.get("message"))
    sender = _as_dict(message.get("from"))
    chat = _as_dict(message.get("chat"))

    user_id = str(sender["id"]) if "id" in sender else ""
    username = sender.get("username")
    if not isinstance(username, str):
        username = ""
    text = message.get("text")
    return SourceRecord(
        position=update_id,
        sender=username or user_id,
        text=text if isinstance(text, str) else "",
        reply_to=str(chat["id"]) if "id" in chat else None,
        aliases=(user_id,) if username and user_id else (),
    )


class TelegramUpdateSource(MessageSource):
    """``getUpdates`` as a cursor-addressable source."""

    def __init__(
        self,
        api: TelegramApi,
        *,
        long_poll_timeout: int = 25,
        logger: logging.Logger | None = None,
    ):
        self.api = api
        self.long_poll_timeout = long_poll_timeout
        self.log = logger or logging.getLogger(__name__)

    def _parse_page(self, updates: Any) -> list[SourceRecord]:
        if not isinstance(updates, list):
            raise ParseError("getUpdates result is not a list")
        records = []
        for update in updates:
            try:
                records.append(_parse_update(update))
            except ParseError as exc:
                self.log.warning("Skipping Telegram update: %s", exc)
        return records

    async def max_position(self) -> int:
        # offset=-1 returns only the newest update and drops older ones server-side
        updates = await self.api.call("getUpdates", {"offset": -1, "limit": 1, "timeout": 0})
        return max((r.position for r in self._parse_page(updates)), default=0)

    async def fetch_since(self, cursor: int, limit: int) -> list[SourceRecord]:
        updates = await self.api.call(
            "getUpdates",
            {
                "offset": cursor + 1,
                "limit": limit,
                "timeout": self.long_poll_timeout,
                "allowed_updates": ["message"],
            },
            timeout=self.long_poll_timeout + 10.0,
        )
        return self._parse_page(updates)


class TelegramTransport(MessageTransport):
    def __init__(self, api: TelegramApi):
        self.api = api

    @track_latency("telegram", "send")
    async def deliver(self, message: str, target: str) -> None:
        for chunk in chunk_text(message):
            try:
                await self.api.call("sendMessage", {"chat_id": target, "text": chunk})
            except ChannelError as exc:
                raise SendError(f"Telegram send failed: {exc}") from exc


class TelegramChannel(PollingChannel):
    """Push-bot-API channel for Telegram."""

    name = "telegram"
    default_poll_interval = config.TELEGRAM_POLL_INTERVAL

    def __init__(
        self,
        bot_token: str,
        allow_list: list[str] | None = None,
        *,
        api_base: str | None = None,
        poll_interval: float | None = None,
        long_poll_timeout: int | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        if not bot_token:
            raise ConfigError("Telegram bot token is not configured")
        self.api = TelegramApi(
            bot_token,
            api_base=api_base or config.TELEGRAM_API_BASE,
            transport=http_transport,
        )
        timeout = config.TELEGRAM_LONG_POLL_TIMEOUT if long_poll_timeout is None else long_poll_timeout
        super().__init__(
            TelegramUpdateSource(self.api, long_poll_timeout=timeout, logger=logger),
            TelegramTransport(self.api),
            allow_list,
            poll_interval=poll_interval,
            name=name,
            logger=logger,
        )

    @classmethod
    def from_settings(
        cls, settings: ChannelSettings, logger: logging.Logger | None = None,
    ) -> TelegramChannel:
        options = settings.options
        return cls(
            str(options.get("bot_token") or config.TELEGRAM_BOT_TOKEN),
            settings.allow_list,
            api_base=options.get("api_base"),
            poll_interval=settings.poll_interval,
            long_poll_timeout=options.get("long_poll_timeout"),
            name=settings.name,
            logger=logger,
        )

    async def health_check(self) -> bool:
        try:
            me = await self.api.call("getMe", timeout=5.0)
        except ChannelError as exc:
            self.log.debug("Telegram health check failed: %s", exc)
            return False
        return isinstance(me, dict) and bool(me.get("is_bot"))

    async def aclose(self) -> None:
        await self.api.aclose()


# Auto-register
register_channel_type("telegram", TelegramChannel)
