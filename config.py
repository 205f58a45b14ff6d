import logging as _logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

load_dotenv(Path.home() / ".courier" / "credentials" / ".env")

_log = _logging.getLogger(__name__)


def _parse_bool(raw: Any, default: bool) -> bool:
    """Read a flag from env text or YAML; only 1/true/yes/on (any case) are true."""
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        return raw != 0
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    return _parse_bool(os.getenv(name), default)


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    """Parse an integer env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float) -> float:
    """Parse a float env var with safe fallback on invalid input."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_list(name: str) -> list[str]:
    """Comma-separated env var → list. Entries are kept verbatim (no strip)
    so allow-list patterns with deliberate spacing survive."""
    raw = os.getenv(name, "")
    if not raw:
        return []
    return [item for item in raw.split(",") if item]


# Identity
ASSISTANT_NAME = os.getenv("ASSISTANT_NAME", "Courier")

# Paths
PROJECT_ROOT = Path(__file__).parent
WORKSPACE = Path(os.getenv("COURIER_WORKSPACE", str(Path.home() / ".courier" / "workspace"))).expanduser()
LOG_DIR = Path(os.getenv("COURIER_LOG_DIR", str(Path.home() / ".courier" / "logs"))).expanduser()
CHANNELS_FILE = Path(os.getenv("COURIER_CHANNELS_FILE", str(WORKSPACE / "channels.yaml"))).expanduser()

# Delivery queue (backpressure point between listen loops and the dispatcher)
DELIVERY_QUEUE_SIZE = _env_int("COURIER_DELIVERY_QUEUE_SIZE", 100, minimum=1)
SHUTDOWN_GRACE_SECONDS = _env_float("COURIER_SHUTDOWN_GRACE_SECONDS", 5.0)

# Polling defaults
DEFAULT_POLL_INTERVAL = _env_float("COURIER_DEFAULT_POLL_INTERVAL", 3.0)
POLL_PAGE_SIZE = _env_int("COURIER_POLL_PAGE_SIZE", 20, minimum=1)

# Gateway (webhook receiver + health endpoint)
WEB_ENABLED = _env_bool("COURIER_WEB_ENABLED", True)
WEB_HOST = os.getenv("COURIER_WEB_HOST", "127.0.0.1")
WEB_PORT = _env_int("COURIER_WEB_PORT", 8080)
GATEWAY_WEBHOOK_TOKEN = os.getenv("COURIER_GATEWAY_WEBHOOK_TOKEN", "")  # webhook auth

# Dispatcher
ECHO_MODE = _env_bool("COURIER_ECHO_MODE", False)  # reply with the inbound text (smoke testing)

# iMessage (macOS Messages database + AppleScript bridge)
IMESSAGE_DB = Path.home() / "Library" / "Messages" / "chat.db"
IMESSAGE_POLL_INTERVAL = _env_float("COURIER_IMESSAGE_POLL_INTERVAL", 3.0)
SQLITE_BIN = os.getenv("COURIER_SQLITE_BIN", "sqlite3")
OSASCRIPT_BIN = os.getenv("COURIER_OSASCRIPT_BIN", "osascript")

# Telegram Bot API
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_API_BASE = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org")
TELEGRAM_POLL_INTERVAL = _env_float("COURIER_TELEGRAM_POLL_INTERVAL", 1.0)
TELEGRAM_LONG_POLL_TIMEOUT = _env_int("COURIER_TELEGRAM_LONG_POLL_TIMEOUT", 25, minimum=0)

# Tools
WEATHER_API_KEY = os.getenv("WEATHER_API_KEY", "")
WEATHER_API_BASE_URL = os.getenv("WEATHER_API_BASE_URL", "https://api.weatherapi.com/v1")


# ---------------------------------------------------------------------------
# Channel settings
# ---------------------------------------------------------------------------

@dataclass
class ChannelSettings:
    """Configuration snapshot for one channel instance."""

    name: str
    type: str
    enabled: bool = True
    allow_list: list[str] = field(default_factory=list)
    poll_interval: float | None = None   # None → adapter default
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "ChannelSettings":
        """Build settings from one YAML mapping.

        Keys other than the known ones are collected into ``options`` so
        adapters can read credentials/paths without a schema change here.
        """
        kind = str(raw.get("type") or raw.get("name") or "").strip().lower()
        if not kind:
            raise ValueError("channel entry needs a 'type' or 'name'")
        name = str(raw.get("name") or kind).strip().lower()

        allow_list = raw.get("allow_list", raw.get("allowed", []))
        if allow_list is None:
            allow_list = []
        if isinstance(allow_list, str):
            allow_list = [allow_list]
        if not isinstance(allow_list, list):
            raise ValueError(f"channel {name}: allow_list must be a list")

        poll_interval = raw.get("poll_interval")
        if poll_interval is not None:
            poll_interval = float(poll_interval)
            if poll_interval <= 0:
                raise ValueError(f"channel {name}: poll_interval must be positive")

        known = {"name", "type", "enabled", "allow_list", "allowed", "poll_interval", "options"}
        options = dict(raw.get("options") or {})
        for key, value in raw.items():
            if key not in known:
                options.setdefault(key, value)

        return cls(
            name=name,
            type=kind,
            enabled=_parse_bool(raw.get("enabled"), True),
            allow_list=[str(item) for item in allow_list],
            poll_interval=poll_interval,
            options=options,
        )


def load_channel_settings(path: Path | None = None) -> list[ChannelSettings]:
    """Load channel definitions from YAML, falling back to env vars.

    Expected file shape::

        channels:
          - type: imessage
            allow_list: ["+15555550100"]
          - type: telegram
            bot_token: "123:abc"
            allow_list: ["*"]
    """
    target = path or CHANNELS_FILE
    if not target.exists():
        return channel_settings_from_env()

    try:
        data = yaml.safe_load(target.read_text()) or {}
    except (yaml.YAMLError, OSError):
        _log.error("Failed to parse channel config: %s", target, exc_info=True)
        return []

    entries = data.get("channels", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        _log.error("Channel config %s: 'channels' must be a list", target)
        return []

    settings: list[ChannelSettings] = []
    for index, raw in enumerate(entries):
        if not isinstance(raw, dict):
            _log.warning("Skipping channel entry #%d in %s: not a mapping", index, target)
            continue
        try:
            settings.append(ChannelSettings.from_dict(raw))
        except (TypeError, ValueError) as exc:
            _log.warning("Skipping channel entry #%d in %s: %s", index, target, exc)
    return settings


def channel_settings_from_env() -> list[ChannelSettings]:
    """Derive channel settings from environment variables only."""
    settings: list[ChannelSettings] = []

    if _env_bool("COURIER_IMESSAGE_ENABLED", False):
        settings.append(ChannelSettings(
            name="imessage",
            type="imessage",
            allow_list=_env_list("COURIER_IMESSAGE_ALLOWED_CONTACTS"),
            poll_interval=IMESSAGE_POLL_INTERVAL,
            options={"db_path": str(IMESSAGE_DB)},
        ))

    if TELEGRAM_BOT_TOKEN:
        settings.append(ChannelSettings(
            name="telegram",
            type="telegram",
            allow_list=_env_list("TELEGRAM_ALLOWED_USERS"),
            poll_interval=TELEGRAM_POLL_INTERVAL,
            options={"bot_token": TELEGRAM_BOT_TOKEN},
        ))

    if _env_bool("COURIER_WEBHOOK_ENABLED", False):
        settings.append(ChannelSettings(
            name="webhook",
            type="webhook",
            allow_list=_env_list("COURIER_WEBHOOK_ALLOWED_SENDERS"),
            options={"reply_url": os.getenv("COURIER_WEBHOOK_REPLY_URL", "")},
        ))

    return settings
