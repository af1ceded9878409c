"""Unit tests for feed fetching and entry normalization."""

from datetime import UTC, datetime
from unittest.mock import Mock, patch

import pytest
import requests

from feedrelay.exceptions import FetchError
from feedrelay.models import FeedItem
from feedrelay.rss import FeedFetcher, fallback_guid

FEED_URL = "https://example.com/feed.xml"


def mock_response(content: bytes) -> Mock:
    response = Mock()
    response.content = content
    response.raise_for_status.return_value = None
    return response


class TestFeedFetcherUnit:
    """Unit tests for specific RSS/Atom feed formats."""

    def test_rss_2_0_entry(self):
        """RSS 2.0 entries keep their guid, summary and publication date."""
        fetcher = FeedFetcher()

        mock_entry = Mock()
        mock_entry.title = "AWS Announces New Service"
        mock_entry.link = "https://aws.amazon.com/blogs/aws/new-service/"
        mock_entry.summary = "<p>AWS has announced a new service for developers.</p>"
        mock_entry.published = "Mon, 01 Jan 2024 10:00:00 GMT"
        mock_entry.guid = "https://aws.amazon.com/blogs/aws/new-service/"

        # Set attributes that might not exist in RSS 2.0 to None
        mock_entry.id = None
        mock_entry.description = None
        mock_entry.content = None

        result = fetcher.normalize_item(mock_entry)

        assert isinstance(result, FeedItem)
        assert result.title == "AWS Announces New Service"
        assert result.link == "https://aws.amazon.com/blogs/aws/new-service/"
        assert result.summary == "<p>AWS has announced a new service for developers.</p>"
        assert result.guid == "https://aws.amazon.com/blogs/aws/new-service/"
        assert result.published == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)

    def test_atom_1_0_entry(self):
        """Atom entries use their id and the first content block."""
        fetcher = FeedFetcher()

        mock_entry = Mock()
        mock_entry.title = "Security Best Practices Update"
        mock_entry.link = "https://aws.amazon.com/blogs/security/best-practices-update/"
        mock_entry.id = "tag:aws.amazon.com,2024:/blogs/security/best-practices-update"
        mock_entry.published = "2024-01-01T10:00:00Z"

        # Atom feeds use content instead of summary
        mock_content = Mock()
        mock_content.get.return_value = "<div><h2>Important Update</h2></div>"
        mock_entry.content = [mock_content]

        mock_entry.summary = None
        mock_entry.description = None
        mock_entry.guid = None

        result = fetcher.normalize_item(mock_entry)

        assert result.guid == "tag:aws.amazon.com,2024:/blogs/security/best-practices-update"
        assert result.summary == "<div><h2>Important Update</h2></div>"
        assert isinstance(result.published, datetime)

    def test_entry_with_missing_fields(self):
        """Entries without id or guid get a hash of link and title."""
        fetcher = FeedFetcher()

        mock_entry = Mock()
        mock_entry.title = "Minimal Entry"
        mock_entry.link = "https://example.com/minimal"
        mock_entry.summary = None
        mock_entry.description = None
        mock_entry.content = None
        mock_entry.published = None
        mock_entry.updated = None
        mock_entry.id = None
        mock_entry.guid = None

        result = fetcher.normalize_item(mock_entry)

        assert result.summary is None
        assert result.published is None
        assert result.guid == fallback_guid("https://example.com/minimal", "Minimal Entry")

    def test_fallback_guid_is_stable(self):
        first = fallback_guid("https://example.com/a", "Title")

        assert first == fallback_guid("https://example.com/a", "Title")
        assert first != fallback_guid("https://example.com/a", "Other title")
        assert len(first) == 64
        assert fallback_guid(None, None) == fallback_guid("", "")

    def test_fetch_feed_parses_document(self, sample_rss_xml):
        fetcher = FeedFetcher(timeout=10)

        with patch.object(fetcher.session, "get") as mock_get:
            mock_get.return_value = mock_response(sample_rss_xml)
            parsed = fetcher.fetch_feed(FEED_URL)

        mock_get.assert_called_once_with(FEED_URL, timeout=10)
        assert parsed.title == "Test Feed"
        assert parsed.link == "https://example.com"
        assert len(parsed.items) == 2

        first, second = parsed.items
        assert first.guid == "article-1"
        assert "Description of the first article" in first.summary
        assert first.published == datetime(2026, 2, 13, 10, 0, tzinfo=UTC)
        assert second.guid == fallback_guid(
            "https://example.com/article-2", "Second Article"
        )

    def test_fetch_returns_items(self, sample_rss_xml):
        fetcher = FeedFetcher()

        with patch.object(fetcher.session, "get") as mock_get:
            mock_get.return_value = mock_response(sample_rss_xml)
            items = fetcher.fetch(FEED_URL)

        assert [item.title for item in items] == ["First Article", "Second Article"]

    @pytest.mark.parametrize(
        "url", ["ftp://example.com/feed.xml", "example.com/feed.xml", "https://", ""]
    )
    def test_invalid_url_is_rejected(self, url):
        fetcher = FeedFetcher()

        with patch.object(fetcher.session, "get") as mock_get:
            with pytest.raises(FetchError):
                fetcher.fetch_feed(url)

        mock_get.assert_not_called()

    def test_network_error_raises_fetch_error(self):
        fetcher = FeedFetcher()

        with patch.object(fetcher.session, "get") as mock_get:
            mock_get.side_effect = requests.ConnectionError("refused")
            with pytest.raises(FetchError):
                fetcher.fetch(FEED_URL)

    def test_http_error_raises_fetch_error(self):
        fetcher = FeedFetcher()
        response = mock_response(b"")
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")

        with patch.object(fetcher.session, "get", return_value=response):
            with pytest.raises(FetchError):
                fetcher.fetch(FEED_URL)

    def test_non_feed_document_raises_fetch_error(self, sample_not_a_feed):
        fetcher = FeedFetcher()

        with patch.object(fetcher.session, "get") as mock_get:
            mock_get.return_value = mock_response(sample_not_a_feed)
            with pytest.raises(FetchError):
                fetcher.fetch_feed(FEED_URL)
