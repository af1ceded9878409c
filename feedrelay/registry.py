"""Feed registry: feed sources and the chats subscribed to them."""

import sqlite3
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from .exceptions import DuplicateSubscription, NotFound, StorageError
from .filters import normalize_filters
from .ledger import DeliveryLedger
from .logging_config import create_execution_logger
from .models import FeedSource, Subscription
from .repository import SQLiteRepository

FeedListener = Callable[[FeedSource], None]


class FeedRegistry:
    """Thread-safe registry of feed sources and subscriptions.

    Compound mutations (subscribe, unsubscribe with feed garbage collection,
    ledger commits made by the orchestrator) are serialized on ``lock``.
    Listeners registered with :meth:`on_feed_added` and
    :meth:`on_feed_removed` are invoked after the lock is released.
    """

    def __init__(
        self,
        repository: SQLiteRepository,
        ledger: DeliveryLedger,
        execution_id: str | None = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.lock = threading.RLock()
        self.logger = create_execution_logger("registry", execution_id)
        self._added_listeners: list[FeedListener] = []
        self._removed_listeners: list[FeedListener] = []

    def on_feed_added(self, listener: FeedListener) -> None:
        self._added_listeners.append(listener)

    def on_feed_removed(self, listener: FeedListener) -> None:
        self._removed_listeners.append(listener)

    # --- Feed sources ---

    def register_feed(self, url: str, title: str | None = None) -> FeedSource:
        """Return the source for ``url``, creating it on first use."""
        with self.lock:
            feed = self.repository.get_feed_by_url(url)
            if feed:
                return feed
            feed = self.repository.add_feed(FeedSource(url=url, title=title or url))

        self.logger.info(
            f"Registered feed {feed.title}", feed_id=feed.id, feed_url=feed.url
        )
        self._notify(self._added_listeners, feed)
        return feed

    def get_feed_source(self, feed_id: str) -> FeedSource | None:
        return self.repository.get_feed(feed_id)

    def get_feed_by_url(self, url: str) -> FeedSource | None:
        return self.repository.get_feed_by_url(url)

    def list_feed_sources(self) -> list[FeedSource]:
        return self.repository.list_feeds()

    def complete_poll(
        self, feed_id: str, polled_at: datetime, subscription_ids: Iterable[str]
    ) -> bool:
        """Commit the bookkeeping of a finished poll cycle.

        Sets the feed's ``last_polled`` and clears the just-subscribed marker
        of the given subscriptions. Returns False when the feed was removed
        while the cycle was running.
        """
        with self.lock:
            if self.repository.get_feed(feed_id) is None:
                return False
            self.repository.clear_just_subscribed(list(subscription_ids))
            self.repository.update_feed_last_polled(feed_id, polled_at)
            return True

    # --- Subscriptions ---

    def subscribe(
        self,
        recipient: str,
        url: str,
        title: str | None = None,
        filters: Iterable[str] | str | None = None,
        feed_title: str | None = None,
    ) -> Subscription:
        """Subscribe a chat to a feed URL, registering the source on first use.

        Feed creation and subscription insert happen under one lock hold. If
        the insert fails, a source created by this call is deleted again, and
        feed-added listeners only learn about sources that kept a subscriber.

        Raises:
            DuplicateSubscription: If the chat already follows the feed.
            StorageError: If the subscription could not be stored.
        """
        recipient = str(recipient)
        with self.lock:
            feed = self.repository.get_feed_by_url(url)
            created = feed is None
            if created:
                feed = self.repository.add_feed(
                    FeedSource(url=url, title=feed_title or url)
                )
            try:
                subscription = self._insert_subscription(recipient, feed, title, filters)
            except Exception:
                if created:
                    self.repository.delete_feed(feed.id)
                raise

        if created:
            self.logger.info(
                f"Registered feed {feed.title}", feed_id=feed.id, feed_url=feed.url
            )
            self._notify(self._added_listeners, feed)
        return subscription

    def add_subscription(
        self,
        recipient: str,
        feed_id: str,
        title: str | None = None,
        filters: Iterable[str] | str | None = None,
    ) -> Subscription:
        """Subscribe a chat to a registered feed source.

        Raises:
            DuplicateSubscription: If the chat already follows the feed.
            NotFound: If the feed source does not exist.
        """
        recipient = str(recipient)
        with self.lock:
            feed = self.repository.get_feed(feed_id)
            if feed is None:
                raise NotFound(f"Feed {feed_id} does not exist")
            return self._insert_subscription(recipient, feed, title, filters)

    def remove_subscription(self, recipient: str, feed_id: str) -> None:
        """Unsubscribe a chat from a feed source.

        The subscription's delivery records are purged, and the feed source is
        deleted once nobody references it anymore.

        Raises:
            NotFound: If the chat does not follow the feed.
        """
        recipient = str(recipient)
        with self.lock:
            subscription = self.repository.get_subscription_for_feed(
                recipient, feed_id
            )
            if subscription is None:
                raise NotFound(f"No subscription to feed {feed_id}")
            removed_feed = self._delete_subscription(subscription)

        if removed_feed:
            self._notify(self._removed_listeners, removed_feed)

    def remove_all_subscriptions(self, recipient: str) -> int:
        """Unsubscribe a chat from every feed. Returns the count removed."""
        recipient = str(recipient)
        removed_feeds = []
        with self.lock:
            subscriptions = self.repository.list_subscriptions(recipient)
            for subscription in subscriptions:
                removed_feed = self._delete_subscription(subscription)
                if removed_feed:
                    removed_feeds.append(removed_feed)

        for feed in removed_feeds:
            self._notify(self._removed_listeners, feed)
        return len(subscriptions)

    def list_subscriptions(self, recipient: str) -> list[Subscription]:
        return self.repository.list_subscriptions(str(recipient))

    def find_subscription(
        self, recipient: str, url_or_title: str
    ) -> Subscription | None:
        return self.repository.find_subscription(str(recipient), url_or_title)

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self.repository.get_subscription(subscription_id)

    def subscriptions_for_feed(self, feed_id: str) -> list[Subscription]:
        return self.repository.list_subscriptions_for_feed(feed_id)

    def update_filters(
        self,
        recipient: str,
        subscription_id: str,
        filters: Iterable[str] | str | None,
    ) -> Subscription:
        """Replace a subscription's keyword filters.

        Raises:
            NotFound: If the subscription does not belong to the chat.
        """
        with self.lock:
            subscription = self.repository.get_subscription(subscription_id)
            if subscription is None or subscription.recipient != str(recipient):
                raise NotFound(f"No subscription {subscription_id}")
            subscription.filters = normalize_filters(filters)
            self.repository.update_subscription_filters(
                subscription.id, subscription.filters
            )
        return subscription

    # --- Internals ---

    def _insert_subscription(
        self,
        recipient: str,
        feed: FeedSource,
        title: str | None,
        filters: Iterable[str] | str | None,
    ) -> Subscription:
        """Store a new subscription. Must be called with ``lock`` held."""
        if self.repository.get_subscription_for_feed(recipient, feed.id):
            raise DuplicateSubscription(f"Already subscribed to {feed.url}")

        subscription = Subscription(
            recipient=recipient,
            feed_id=feed.id,
            title=title or feed.title,
            filters=normalize_filters(filters),
        )
        try:
            self.repository.add_subscription(subscription)
        except sqlite3.IntegrityError as e:
            raise DuplicateSubscription(f"Already subscribed to {feed.url}") from e

        self.logger.info(
            f"Chat subscribed to {subscription.title}",
            chat_id=recipient,
            feed_id=feed.id,
            subscription_id=subscription.id,
        )
        return subscription

    def _delete_subscription(self, subscription: Subscription) -> FeedSource | None:
        """Delete a subscription and collect its feed if unused.

        Must be called with ``lock`` held. Returns the deleted feed source, if
        any.
        """
        self.repository.delete_subscription(subscription.id)
        try:
            self.ledger.purge(subscription.id)
        except StorageError as e:
            # Orphaned records are keyed by a retired subscription id
            self.logger.warning(
                f"Could not purge delivery records: {e}",
                subscription_id=subscription.id,
                error=str(e),
            )

        self.logger.info(
            f"Chat unsubscribed from {subscription.title}",
            chat_id=subscription.recipient,
            feed_id=subscription.feed_id,
            subscription_id=subscription.id,
        )

        if self.repository.count_subscriptions_for_feed(subscription.feed_id):
            return None

        feed = self.repository.get_feed(subscription.feed_id)
        if feed is None:
            return None
        self.repository.delete_feed(feed.id)
        self.logger.info(
            f"Removed unused feed {feed.title}", feed_id=feed.id, feed_url=feed.url
        )
        return feed

    def _notify(self, listeners: list[FeedListener], feed: FeedSource) -> None:
        for listener in listeners:
            try:
                listener(feed)
            except Exception as e:
                self.logger.error(
                    f"Feed listener failed: {e}", feed_id=feed.id, error=str(e)
                )
