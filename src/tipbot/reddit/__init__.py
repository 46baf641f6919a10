"""Reddit inbox and messaging."""

from tipbot.reddit.base import (
    InboundMessage,
    InboxSource,
    NotificationSink,
    SendOutcome,
)

__all__ = [
    "InboundMessage",
    "InboxSource",
    "NotificationSink",
    "SendOutcome",
]
