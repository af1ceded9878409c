"""RSS/Atom feed fetching for the feed relay bot."""

import hashlib
from datetime import datetime
from urllib.parse import urlparse

import feedparser
import requests
from dateutil import parser as date_parser

from .exceptions import FetchError
from .logging_config import create_execution_logger
from .models import FeedItem, ParsedFeed


def fallback_guid(link: str | None, title: str | None) -> str:
    """Derive a stable identifier for an entry that carries no id or guid.

    The SHA256 hex digest of the link and the title, so the same entry keeps
    the same identifier across polls.
    """
    hash_input = f"{link or ''}\n{title or ''}"
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


class FeedFetcher:
    """Downloads RSS/Atom feeds and normalizes their entries."""

    def __init__(self, timeout: int = 30, execution_id: str | None = None):
        """Initialize FeedFetcher with configuration.

        Args:
            timeout: HTTP request timeout in seconds
            execution_id: Execution ID for logging context
        """
        self.timeout = timeout
        self.logger = create_execution_logger("feed_fetcher", execution_id)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "feedrelay/1.0 (RSS to Telegram)"})

    def fetch(self, url: str) -> list[FeedItem]:
        """Return the current items of a feed.

        Raises:
            FetchError: If the feed cannot be downloaded or parsed
        """
        return self.fetch_feed(url).items

    def fetch_feed(self, url: str) -> ParsedFeed:
        """Fetch and parse a single RSS/Atom feed.

        Args:
            url: URL of the RSS/Atom feed

        Returns:
            ParsedFeed with the feed title, site link and items

        Raises:
            FetchError: If the URL is invalid, unreachable, or not a feed
        """
        parsed_url = urlparse(url)
        if parsed_url.scheme not in ("http", "https") or not parsed_url.netloc:
            raise FetchError(f"Invalid feed URL: {url}")

        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.warning(
                f"Failed to download feed {url}: {e}", feed_url=url, error=str(e)
            )
            raise FetchError(f"Could not download {url}: {e}") from e

        feed = feedparser.parse(response.content)

        if not feed.entries and not feed.feed.get("title"):
            raise FetchError(f"URL does not point to a valid RSS or Atom feed: {url}")

        if feed.bozo and hasattr(feed, "bozo_exception"):
            self.logger.warning(
                f"Feed parsing warning for {url}: {feed.bozo_exception}",
                feed_url=url,
                bozo_exception=str(feed.bozo_exception),
            )

        items = []
        for entry in feed.entries:
            try:
                items.append(self.normalize_item(entry))
            except Exception as e:
                self.logger.warning(
                    f"Failed to normalize entry from {url}: {e}",
                    feed_url=url,
                    error=str(e),
                )
                continue

        self.logger.log_feed_processing(url, len(items))
        return ParsedFeed(
            title=feed.feed.get("title"),
            link=feed.feed.get("link"),
            items=items,
        )

    def normalize_item(self, raw_item) -> FeedItem:
        """Normalize a raw feedparser entry into a FeedItem.

        Args:
            raw_item: Raw feed entry from feedparser

        Returns:
            Normalized FeedItem object
        """
        title = getattr(raw_item, "title", None) or None
        link = getattr(raw_item, "link", None) or None

        summary = None
        if getattr(raw_item, "summary", None):
            summary = raw_item.summary
        elif getattr(raw_item, "description", None):
            summary = raw_item.description
        elif getattr(raw_item, "content", None):
            # Atom feeds carry a list of content blocks
            if isinstance(raw_item.content, list):
                summary = raw_item.content[0].get("value") or None
            else:
                summary = str(raw_item.content)

        guid = getattr(raw_item, "id", None) or getattr(raw_item, "guid", None)
        if not guid:
            guid = fallback_guid(link, title)

        return FeedItem(
            guid=str(guid),
            title=title,
            summary=summary,
            link=link,
            published=self._parse_published(raw_item),
        )

    def _parse_published(self, raw_item) -> datetime | None:
        for field in ("published", "updated"):
            value = getattr(raw_item, field, None)
            if not value or not isinstance(value, str):
                continue
            try:
                published = date_parser.parse(value)
            except (ValueError, TypeError, OverflowError):
                continue
            if published.tzinfo is None:
                published = published.replace(
                    tzinfo=datetime.now().astimezone().tzinfo
                )
            return published
        return None
