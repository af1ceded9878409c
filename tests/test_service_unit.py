"""Unit tests for the feed service."""

import pytest
from conftest import make_item

from feedrelay.exceptions import DuplicateSubscription, FetchError, NotFound
from feedrelay.service import FeedService

FEED_URL = "https://example.com/feed.xml"


@pytest.fixture
def service(registry, fetcher):
    return FeedService(registry, fetcher)


class TestFeedServiceUnit:
    """Unit tests for FeedService."""

    def test_probe_returns_parsed_feed(self, service, fetcher):
        fetcher.items[FEED_URL] = [make_item("g1")]
        fetcher.titles[FEED_URL] = "Example News"

        parsed = service.probe(FEED_URL)

        assert parsed.title == "Example News"
        assert [item.guid for item in parsed.items] == ["g1"]

    def test_probe_propagates_fetch_error(self, service):
        with pytest.raises(FetchError):
            service.probe("https://unknown.example.com/rss")

    def test_subscribe_shares_feed_source(self, service, registry):
        first = service.subscribe("1", FEED_URL, feed_title="Example")
        second = service.subscribe("2", f"  {FEED_URL} ", display_title="Mine")

        assert first.feed_id == second.feed_id
        assert first.title == "Example"
        assert second.title == "Mine"
        assert len(registry.list_feed_sources()) == 1

    def test_subscribe_twice_is_rejected(self, service):
        service.subscribe("1", FEED_URL)
        with pytest.raises(DuplicateSubscription):
            service.subscribe("1", FEED_URL)

    def test_subscribe_normalizes_filters(self, service):
        subscription = service.subscribe("1", FEED_URL, filters="Weather, storm ,weather")
        assert subscription.filters == ("weather", "storm")

    def test_unsubscribe_removes_unused_feed(self, service, registry):
        subscription = service.subscribe("1", FEED_URL)

        removed = service.unsubscribe("1", subscription.id)

        assert removed.id == subscription.id
        assert registry.list_feed_sources() == []

    def test_unsubscribe_requires_ownership(self, service):
        subscription = service.subscribe("1", FEED_URL)
        with pytest.raises(NotFound):
            service.unsubscribe("2", subscription.id)
        with pytest.raises(NotFound):
            service.unsubscribe("1", "missing")

    def test_unsubscribe_all(self, service, registry):
        service.subscribe("1", FEED_URL)
        service.subscribe("1", "https://other.example.com/rss")
        service.subscribe("2", FEED_URL)

        assert service.unsubscribe_all("1") == 2
        assert service.list_subscriptions("1") == []
        assert [feed.url for feed in registry.list_feed_sources()] == [FEED_URL]

    def test_is_subscribed(self, service):
        service.subscribe("1", FEED_URL)

        assert service.is_subscribed("1", FEED_URL)
        assert not service.is_subscribed("2", FEED_URL)
        assert not service.is_subscribed("1", "https://other.example.com/rss")

    def test_find_subscription_by_url_or_title(self, service):
        subscription = service.subscribe("1", FEED_URL, display_title="Morning news")

        assert service.find_subscription("1", FEED_URL).id == subscription.id
        assert service.find_subscription("1", "Morning news").id == subscription.id
        assert service.find_subscription("2", "Morning news") is None

    def test_set_filters(self, service):
        subscription = service.subscribe("1", FEED_URL)

        updated = service.set_filters("1", subscription.id, ["Sports"])
        assert updated.filters == ("sports",)

        cleared = service.set_filters("1", subscription.id, None)
        assert cleared.filters == ()
