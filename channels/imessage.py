"""iMessage channel adapter.

Polls the macOS Messages database (``~/Library/Messages/chat.db``) through
the ``sqlite3`` command-line tool and sends replies with an AppleScript
``osascript`` bridge.  Requires Full Disk Access for the process that
runs the poller.
"""

from __future__ import annotations

import json
import logging
import shutil
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import config
from channels.base import ConfigError, ParseError, SendError, TransportError
from channels.factory import register_channel_type
from channels.polling import MessageSource, MessageTransport, PollingChannel, SourceRecord
from config import ChannelSettings
from utils import CommandResult, run_command

CommandRunner = Callable[..., Awaitable[CommandResult]]

MAX_ROWID_QUERY = "SELECT MAX(ROWID) FROM message WHERE is_from_me = 0;"

FETCH_QUERY = (
    "SELECT m.ROWID AS rowid, h.id AS sender, m.text AS text "
    "FROM message m "
    "JOIN handle h ON m.handle_id = h.ROWID "
    "WHERE m.ROWID > {cursor} "
    "AND m.is_from_me = 0 "
    "AND m.text IS NOT NULL "
    "ORDER BY m.ROWID ASC "
    "LIMIT {limit};"
)


def parse_rows(stdout: str) -> list[SourceRecord]:
    """Parse the JSON array printed by ``sqlite3 -json``.

    Each element is one row, so message bodies containing newlines or
    ``|`` cannot be mistaken for row boundaries.  No matching rows prints
    nothing at all.
    """
    if not stdout.strip():
        return []
    try:
        rows = json.loads(stdout)
    except ValueError:
        raise ParseError(f"unexpected sqlite3 output: {stdout[:80]!r}") from None
    if not isinstance(rows, list):
        raise ParseError(f"sqlite3 output is not a row list: {stdout[:80]!r}")

    records: list[SourceRecord] = []
    for row in rows:
        if not isinstance(row, dict):
            raise ParseError(f"unexpected sqlite3 row: {str(row)[:80]!r}")
        rowid, sender, text = row.get("rowid"), row.get("sender"), row.get("text")
        if not isinstance(rowid, int) or isinstance(rowid, bool):
            raise ParseError(f"sqlite3 row without integer rowid: {str(row)[:80]!r}")
        records.append(SourceRecord(
            position=rowid,
            sender=sender if isinstance(sender, str) else "",
            text=text if isinstance(text, str) else "",
        ))
    return records


class ChatDbSource(MessageSource):
    """Read incoming messages from chat.db via the sqlite3 CLI."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_bin: str = "sqlite3",
        runner: CommandRunner = run_command,
    ):
        self.db_path = db_path
        self.sqlite_bin = sqlite_bin
        self._run = runner

    async def max_position(self) -> int:
        result = await self._run(self.sqlite_bin, str(self.db_path), MAX_ROWID_QUERY)
        if not result.ok:
            raise TransportError(f"sqlite3 max rowid failed: {result.stderr.strip()}")
        raw = result.stdout.strip()
        if not raw:
            return 0  # MAX() over no rows prints NULL as empty
        try:
            return int(raw)
        except ValueError:
            raise ParseError(f"unexpected max rowid output: {raw[:80]!r}") from None

    async def fetch_since(self, cursor: int, limit: int) -> list[SourceRecord]:
        query = FETCH_QUERY.format(cursor=int(cursor), limit=int(limit))
        result = await self._run(
            self.sqlite_bin, "-json", str(self.db_path), query,
        )
        if not result.ok:
            raise TransportError(f"sqlite3 query failed: {result.stderr.strip()}")
        return parse_rows(result.stdout)


def escape_applescript(text: str) -> str:
    """Escape a value for use inside an AppleScript string literal."""
    return text.replace("\\", "\\\\").replace('"', '\\"')


def build_send_script(message: str, target: str) -> str:
    return (
        'tell application "Messages"\n'
        "    set targetService to 1st account whose service type = iMessage\n"
        f'    set targetBuddy to participant "{escape_applescript(target)}" of targetService\n'
        f'    send "{escape_applescript(message)}" to targetBuddy\n'
        "end tell"
    )


class AppleScriptTransport(MessageTransport):
    """Send iMessages through Messages.app with osascript."""

    def __init__(self, *, osascript_bin: str = "osascript", runner: CommandRunner = run_command):
        self.osascript_bin = osascript_bin
        self._run = runner

    async def deliver(self, message: str, target: str) -> None:
        script = build_send_script(message, target)
        try:
            result = await self._run(self.osascript_bin, "-e", script)
        except OSError as exc:
            raise SendError(f"iMessage send failed: {exc}") from exc
        if not result.ok:
            raise SendError(f"iMessage send failed: {result.stderr.strip()}")


class IMessageChannel(PollingChannel):
    """Local-store polling channel for macOS iMessage."""

    name = "imessage"
    default_poll_interval = config.IMESSAGE_POLL_INTERVAL

    def __init__(
        self,
        allow_list: list[str] | None = None,
        *,
        db_path: str | Path | None = None,
        poll_interval: float | None = None,
        sqlite_bin: str | None = None,
        osascript_bin: str | None = None,
        runner: CommandRunner = run_command,
        name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self.db_path = Path(db_path or config.IMESSAGE_DB).expanduser()
        self.sqlite_bin = sqlite_bin or config.SQLITE_BIN
        super().__init__(
            ChatDbSource(self.db_path, sqlite_bin=self.sqlite_bin, runner=runner),
            AppleScriptTransport(osascript_bin=osascript_bin or config.OSASCRIPT_BIN, runner=runner),
            allow_list,
            poll_interval=poll_interval,
            name=name,
            logger=logger,
        )

    @classmethod
    def from_settings(
        cls, settings: ChannelSettings, logger: logging.Logger | None = None,
    ) -> IMessageChannel:
        options = settings.options
        return cls(
            settings.allow_list,
            db_path=options.get("db_path"),
            poll_interval=settings.poll_interval,
            sqlite_bin=options.get("sqlite_bin"),
            osascript_bin=options.get("osascript_bin"),
            name=settings.name,
            logger=logger,
        )

    async def check_prerequisites(self) -> None:
        if not self.db_path.exists():
            raise ConfigError(
                f"Messages database not found at {self.db_path}. "
                "Ensure Messages.app is set up and Full Disk Access is granted."
            )

    async def health_check(self) -> bool:
        if sys.platform != "darwin":
            return False
        if shutil.which(self.sqlite_bin) is None:
            return False
        return self.db_path.exists()


# Auto-register
register_channel_type("imessage", IMessageChannel)
