"""Build the channel registry from configuration.

Adapter modules register their class under a type name at import time
(see the ``# Auto-register`` footer in each adapter).  ``build_registry``
then turns ChannelSettings into live instances without knowing any
concrete adapter.
"""

from __future__ import annotations

import logging

from channels.base import Channel, ChannelRegistry, ConfigError
from config import ChannelSettings

log = logging.getLogger(__name__)

CHANNEL_TYPES: dict[str, type[Channel]] = {}


def register_channel_type(kind: str, cls: type[Channel]) -> None:
    """Make ``cls`` constructible from settings with ``type: <kind>``."""
    key = kind.strip().lower()
    if key in CHANNEL_TYPES and CHANNEL_TYPES[key] is not cls:
        log.warning("Overwriting channel type registration: %s", key)
    CHANNEL_TYPES[key] = cls


def build_registry(
    settings_list: list[ChannelSettings],
    logger: logging.Logger | None = None,
) -> ChannelRegistry:
    """Instantiate every enabled channel.

    Unknown types and construction failures are logged and disable only
    the affected channel.
    """
    _log = logger or log
    registry = ChannelRegistry()

    for settings in settings_list:
        if not settings.enabled:
            _log.info("Channel %s is disabled in config", settings.name)
            continue

        cls = CHANNEL_TYPES.get(settings.type)
        if cls is None:
            _log.error(
                "Channel %s has unknown type %r (known: %s)",
                settings.name, settings.type, ", ".join(sorted(CHANNEL_TYPES)),
            )
            continue

        try:
            channel = cls.from_settings(settings, logger=logging.getLogger(f"channels.{settings.name}"))
            registry.register(channel, settings)
        except ConfigError as exc:
            _log.error("Channel %s disabled: %s", settings.name, exc)
            continue

        if not channel.allow_list:
            _log.warning(
                "Channel %s has an empty allow-list; every sender will be ignored",
                settings.name,
            )
        _log.info("Channel %s (%s) configured", settings.name, settings.type)

    return registry
