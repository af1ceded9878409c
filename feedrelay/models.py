"""Data models for the feed relay bot."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime


def new_id() -> str:
    """Return an opaque identifier for a stored entity."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class FeedItem:
    """Represents a single RSS/Atom feed item as returned by the fetcher."""

    guid: str
    title: str | None = None
    summary: str | None = None
    link: str | None = None
    published: datetime | None = None


@dataclass
class ParsedFeed:
    """Result of fetching and parsing a feed document."""

    title: str | None
    link: str | None
    items: list[FeedItem] = field(default_factory=list)


@dataclass
class FeedSource:
    """A polled feed endpoint, shared by every subscription to its URL."""

    url: str
    title: str
    id: str = field(default_factory=new_id)
    last_polled: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Subscription:
    """A chat's binding to a feed source."""

    recipient: str
    feed_id: str
    title: str
    filters: tuple[str, ...] = ()
    just_subscribed: bool = True
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DeliveryRecord:
    """Proof that an item was already sent for a subscription."""

    subscription_id: str
    guid: str
    delivered_at: datetime = field(default_factory=utcnow)


@dataclass
class PollReport:
    """Counters collected during one fetch-diff-deliver cycle."""

    feed_id: str
    items: int = 0
    subscriptions: int = 0
    delivered: int = 0
    duplicates: int = 0
    filtered: int = 0
    backlog_suppressed: int = 0
    failed: int = 0
    unrecorded: int = 0
    discarded: bool = False

    def as_metrics(self) -> dict[str, int | bool | str]:
        return {
            "feed_id": self.feed_id,
            "items": self.items,
            "subscriptions": self.subscriptions,
            "delivered": self.delivered,
            "duplicates": self.duplicates,
            "filtered": self.filtered,
            "backlog_suppressed": self.backlog_suppressed,
            "failed": self.failed,
            "unrecorded": self.unrecorded,
            "discarded": self.discarded,
        }
