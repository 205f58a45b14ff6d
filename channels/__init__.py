"""Channel abstraction layer for Courier.

Normalizes inbound messages from iMessage, Telegram and webhooks into
ChannelMessage records, and routes replies back out through the channel
that produced them.
"""

from channels.access import is_allowed
from channels.base import (
    Channel,
    ChannelEntry,
    ChannelError,
    ChannelMessage,
    ChannelRegistry,
    ConfigError,
    ParseError,
    SendError,
    TransportError,
    UnknownChannelError,
)
from channels.factory import CHANNEL_TYPES, build_registry, register_channel_type
from channels.polling import PollCursor, PollingChannel
from channels.scheduler import DeliverySink, IngestionScheduler

# Import adapter modules to trigger type registration
import channels.imessage   # noqa: E402,F401
import channels.telegram   # noqa: E402,F401
import channels.webhook    # noqa: E402,F401

__all__ = [
    "CHANNEL_TYPES",
    "Channel",
    "ChannelEntry",
    "ChannelError",
    "ChannelMessage",
    "ChannelRegistry",
    "ConfigError",
    "DeliverySink",
    "IngestionScheduler",
    "ParseError",
    "PollCursor",
    "PollingChannel",
    "SendError",
    "TransportError",
    "UnknownChannelError",
    "build_registry",
    "is_allowed",
    "register_channel_type",
]
