"""Inbox and notification interfaces.

The dispatcher and engines only talk to these interfaces; RedditClient
implements both against the Reddit OAuth API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from tipbot.ledger.models import MessageKind

COMMENT_KIND = "t1"
PRIVATE_MESSAGE_KIND = "t4"


class SendOutcome(str, Enum):
    """Result of sending a reply or private message."""

    SENT = "sent"
    INVALID = "invalid"              # Reddit rejected the request
    RATE_LIMITED = "rate_limited"    # Try again later


@dataclass
class InboundMessage:
    """Unread inbox item."""

    kind: MessageKind
    fullname: str                       # e.g. t4_abc123; idempotency key
    author: str
    body: str
    reddit_id: Optional[str] = None
    parent_id: Optional[str] = None
    subreddit: Optional[str] = None
    context: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_listing(cls, child: dict[str, Any]) -> Optional["InboundMessage"]:
        """Build from a /message/unread listing child.

        Returns None for kinds the bot does not handle.
        """
        kind = child.get("kind")
        data = child.get("data") or {}
        if kind == PRIVATE_MESSAGE_KIND:
            message_kind = MessageKind.DIRECT
        elif kind == COMMENT_KIND:
            message_kind = MessageKind.MENTION
        else:
            return None

        created = data.get("created_utc")
        return cls(
            kind=message_kind,
            fullname=data.get("name") or f"{kind}_{data.get('id')}",
            author=data.get("author") or "",
            body=str(data.get("body") or ""),
            reddit_id=data.get("id"),
            parent_id=data.get("parent_id"),
            subreddit=data.get("subreddit"),
            context=data.get("context"),
            created_at=(
                datetime.fromtimestamp(float(created), tz=timezone.utc)
                if created is not None
                else None
            ),
        )


class InboxSource(ABC):
    """Source of inbound messages and the actions taken on them."""

    @abstractmethod
    async def fetch_unread(self, limit: int = 100) -> list[InboundMessage]:
        """Return unread messages, oldest first."""
        raise NotImplementedError()

    @abstractmethod
    async def acknowledge(self, fullname: str) -> None:
        """Mark a message read so it is not delivered again.

        Raises TransientExternalError on failure.
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_author(self, fullname: str) -> Optional[str]:
        """Author of a comment or post, or None if unknown/deleted."""
        raise NotImplementedError()

    @abstractmethod
    async def award(self, fullname: str) -> None:
        """Gild a comment or post. Raises TransientExternalError on failure."""
        raise NotImplementedError()


class NotificationSink(ABC):
    """Delivers rendered text to users."""

    @abstractmethod
    async def send(self, recipient: str, subject: str, text: str) -> SendOutcome:
        """Send a private message."""
        raise NotImplementedError()

    @abstractmethod
    async def reply(self, fullname: str, text: str) -> SendOutcome:
        """Reply to a message or comment."""
        raise NotImplementedError()
