"""Entry points used by the conversational layer."""

from collections.abc import Iterable

from .exceptions import NotFound
from .logging_config import create_execution_logger
from .models import ParsedFeed, Subscription
from .registry import FeedRegistry


class FeedService:
    """Subscribe, unsubscribe and list operations on behalf of a chat."""

    def __init__(self, registry: FeedRegistry, fetcher, execution_id: str | None = None):
        self.registry = registry
        self.fetcher = fetcher
        self.logger = create_execution_logger("service", execution_id)

    def probe(self, url: str) -> ParsedFeed:
        """Fetch a candidate feed to check it before subscribing.

        Raises:
            FetchError: If the URL is not a reachable feed
        """
        return self.fetcher.fetch_feed(url)

    def subscribe(
        self,
        recipient: str,
        url: str,
        display_title: str | None = None,
        filters: Iterable[str] | str | None = None,
        feed_title: str | None = None,
    ) -> Subscription:
        """Subscribe a chat to a feed URL, registering the feed if new.

        Raises:
            DuplicateSubscription: If the chat already follows the URL
        """
        return self.registry.subscribe(
            recipient,
            url.strip(),
            title=display_title,
            filters=filters,
            feed_title=feed_title,
        )

    def unsubscribe(self, recipient: str, subscription_id: str) -> Subscription:
        """Remove one of the chat's subscriptions.

        Raises:
            NotFound: If the subscription does not belong to the chat
        """
        subscription = self.registry.get_subscription(subscription_id)
        if subscription is None or subscription.recipient != str(recipient):
            raise NotFound(f"No subscription {subscription_id}")
        self.registry.remove_subscription(recipient, subscription.feed_id)
        return subscription

    def unsubscribe_all(self, recipient: str) -> int:
        return self.registry.remove_all_subscriptions(recipient)

    def list_subscriptions(self, recipient: str) -> list[Subscription]:
        return self.registry.list_subscriptions(recipient)

    def find_subscription(self, recipient: str, url_or_title: str) -> Subscription | None:
        return self.registry.find_subscription(recipient, url_or_title)

    def is_subscribed(self, recipient: str, url: str) -> bool:
        feed = self.registry.get_feed_by_url(url.strip())
        if feed is None:
            return False
        return any(
            subscription.feed_id == feed.id
            for subscription in self.registry.list_subscriptions(recipient)
        )

    def set_filters(
        self, recipient: str, subscription_id: str, filters: Iterable[str] | str | None
    ) -> Subscription:
        return self.registry.update_filters(recipient, subscription_id, filters)
