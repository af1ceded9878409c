"""Shared test fixtures for feed relay tests."""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from feedrelay.exceptions import DeliveryError, FetchError
from feedrelay.ledger import SQLiteLedger
from feedrelay.models import FeedItem, ParsedFeed
from feedrelay.orchestrator import DeliveryOrchestrator
from feedrelay.registry import FeedRegistry
from feedrelay.repository import SQLiteRepository

SAMPLE_RSS_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>&lt;p&gt;Description of the first article&lt;/p&gt;</description>
      <pubDate>Thu, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <description>Description of the second article</description>
      <pubDate>Thu, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_NOT_A_FEED = b"""<html><body>This is not a feed</body></html>"""


class FakeFetcher:
    """In-memory feed fetcher with per-URL item lists or errors."""

    def __init__(self):
        self.items: dict[str, list[FeedItem]] = {}
        self.errors: dict[str, Exception] = {}
        self.titles: dict[str, str] = {}
        self.calls: list[str] = []

    def fetch(self, url: str) -> list[FeedItem]:
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url not in self.items:
            raise FetchError(f"Unknown feed {url}")
        return list(self.items[url])

    def fetch_feed(self, url: str) -> ParsedFeed:
        return ParsedFeed(
            title=self.titles.get(url, "Fake Feed"),
            link="https://example.com",
            items=self.fetch(url),
        )


class FakeMessenger:
    """Records notifications; chats listed in ``failing`` raise DeliveryError."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.replies: list[tuple[str, str, dict]] = []
        self.failing: set[str] = set()
        self._lock = threading.Lock()

    def notify(self, chat_id: str, text: str) -> None:
        if chat_id in self.failing:
            raise DeliveryError(f"chat {chat_id} unreachable")
        with self._lock:
            self.sent.append((chat_id, text))

    def send_message(self, chat_id, text, keyboard=None, remove_keyboard=False):
        with self._lock:
            self.replies.append(
                (chat_id, text, {"keyboard": keyboard, "remove_keyboard": remove_keyboard})
            )

    def sent_to(self, chat_id: str) -> list[str]:
        return [text for target, text in self.sent if target == chat_id]

    def last_reply(self, chat_id: str) -> str:
        return [text for target, text, _ in self.replies if target == chat_id][-1]


def make_item(guid: str, title: str | None = None, minutes: int = 0, **kwargs) -> FeedItem:
    """Build a feed item published ``minutes`` after a fixed base time."""
    base = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    return FeedItem(
        guid=guid,
        title=title if title is not None else f"Item {guid}",
        summary=kwargs.get("summary"),
        link=kwargs.get("link", f"https://example.com/{guid}"),
        published=base + timedelta(minutes=minutes),
    )


@pytest.fixture
def tmp_db_path(tmp_path):
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "feedrelay.db")


@pytest.fixture
def repository(tmp_db_path):
    repo = SQLiteRepository(tmp_db_path)
    repo.connect()
    yield repo
    repo.close()


@pytest.fixture
def ledger(repository):
    return SQLiteLedger(repository)


@pytest.fixture
def registry(repository, ledger):
    return FeedRegistry(repository, ledger)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def orchestrator(registry, ledger, messenger):
    return DeliveryOrchestrator(registry, ledger, messenger)


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_not_a_feed():
    return SAMPLE_NOT_A_FEED
