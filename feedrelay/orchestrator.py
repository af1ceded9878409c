"""Delivery orchestrator: turns a fetched item set into chat notifications."""

import asyncio
from datetime import datetime
from enum import Enum

from .exceptions import DeliveryError, StorageError
from .filters import matches
from .ledger import DeliveryLedger
from .logging_config import create_execution_logger
from .models import FeedItem, PollReport, Subscription, utcnow
from .registry import FeedRegistry
from .telegram import render_message


class CommitResult(Enum):
    """Outcome of recording a dispatched item."""

    RECORDED = "recorded"
    UNRECORDED = "unrecorded"
    REMOVED = "removed"


def chronological(items: list[FeedItem]) -> list[FeedItem]:
    """Order items oldest first; undated items keep their feed position last."""
    dated = [item for item in items if item.published is not None]
    undated = [item for item in items if item.published is None]
    dated.sort(key=lambda item: item.published)
    return dated + undated


class DeliveryOrchestrator:
    """Dedupes, filters and dispatches one feed's items to its subscribers.

    Ledger and registry calls may block (DynamoDB round trips, contention on
    the registry lock), so they run in worker threads and never on the event
    loop.
    """

    def __init__(
        self,
        registry: FeedRegistry,
        ledger: DeliveryLedger,
        messenger,
        execution_id: str | None = None,
    ):
        self.registry = registry
        self.ledger = ledger
        self.messenger = messenger
        self.logger = create_execution_logger("orchestrator", execution_id)

    async def deliver(
        self,
        feed_id: str,
        items: list[FeedItem],
        polled_at: datetime | None = None,
    ) -> PollReport:
        """
        Deliver a feed's freshly fetched items to every subscriber.

        Subscriptions created since the previous poll receive nothing: the
        items currently in the feed are recorded as seen to establish their
        watermark. Items already received, and items rejected by the
        subscription's filters, are skipped. A delivery record is written only
        after the messenger accepted the message, so failed dispatches are
        retried on the next cycle.

        Args:
            feed_id: Feed source the items were fetched from
            items: Current item list of the feed
            polled_at: Poll timestamp to commit, defaults to now

        Returns:
            PollReport with the cycle's counters
        """
        report = PollReport(feed_id=feed_id, items=len(items))

        feed = await asyncio.to_thread(self.registry.get_feed_source, feed_id)
        if feed is None:
            report.discarded = True
            self.logger.info("Feed removed before delivery, discarding", feed_id=feed_id)
            return report

        subscriptions = await asyncio.to_thread(
            self.registry.subscriptions_for_feed, feed_id
        )
        report.subscriptions = len(subscriptions)
        ordered = chronological(items)
        first_polls = []

        for subscription in subscriptions:
            if subscription.just_subscribed:
                seeded = await asyncio.to_thread(
                    self._seed_watermark, subscription.id, ordered
                )
                if seeded:
                    first_polls.append(subscription.id)
                report.backlog_suppressed += len(ordered)
                continue

            pending = await asyncio.to_thread(
                self._pending_items, subscription, ordered, report
            )
            for item in pending:
                text = render_message(item, subscription.title)
                try:
                    await asyncio.to_thread(
                        self.messenger.notify, subscription.recipient, text
                    )
                except DeliveryError as e:
                    report.failed += 1
                    self.logger.warning(
                        f"Delivery failed: {e}",
                        chat_id=subscription.recipient,
                        subscription_id=subscription.id,
                        item_guid=item.guid,
                        error=str(e),
                    )
                    continue

                result = await asyncio.to_thread(
                    self._commit_delivery, subscription.id, item
                )
                if result is CommitResult.REMOVED:
                    break
                if result is CommitResult.UNRECORDED:
                    report.unrecorded += 1
                    continue
                report.delivered += 1

        committed = await asyncio.to_thread(
            self.registry.complete_poll, feed_id, polled_at or utcnow(), first_polls
        )
        if not committed:
            report.discarded = True
            self.logger.info("Feed removed during delivery", feed_id=feed_id)
        return report

    def _pending_items(
        self,
        subscription: Subscription,
        items: list[FeedItem],
        report: PollReport,
    ) -> list[FeedItem]:
        """Items the subscription has not received yet and whose filters match."""
        pending = []
        for item in items:
            if self.ledger.has_delivered(subscription.id, item.guid):
                report.duplicates += 1
            elif not matches(subscription.filters, item):
                report.filtered += 1
            else:
                pending.append(item)
        return pending

    def _seed_watermark(self, subscription_id: str, items: list[FeedItem]) -> bool:
        """Record a new subscription's backlog as seen without sending it.

        Returns False if the backlog could not be stored; the subscription
        then stays just-subscribed and the watermark is retried next cycle.
        """
        with self.registry.lock:
            if self.registry.get_subscription(subscription_id) is None:
                return False
            try:
                for item in items:
                    self.ledger.record_delivery(subscription_id, item.guid)
            except StorageError as e:
                self.logger.error(
                    f"Could not record backlog: {e}",
                    subscription_id=subscription_id,
                    error=str(e),
                )
                return False

        self.logger.info(
            f"Watermark set, {len(items)} backlog items suppressed",
            subscription_id=subscription_id,
        )
        return True

    def _commit_delivery(self, subscription_id: str, item: FeedItem) -> CommitResult:
        """Record a dispatched item.

        REMOVED means the subscription disappeared meanwhile, which ends
        delivery for it in this cycle. UNRECORDED items are sent again on the
        next cycle.
        """
        with self.registry.lock:
            if self.registry.get_subscription(subscription_id) is None:
                self.logger.info(
                    "Subscription removed during delivery",
                    subscription_id=subscription_id,
                )
                return CommitResult.REMOVED
            try:
                self.ledger.record_delivery(subscription_id, item.guid)
            except StorageError as e:
                self.logger.error(
                    f"Could not record delivery: {e}",
                    subscription_id=subscription_id,
                    item_guid=item.guid,
                    error=str(e),
                )
                return CommitResult.UNRECORDED

        self.logger.log_item_processing(
            item.title, "delivered", subscription_id=subscription_id, item_guid=item.guid
        )
        return CommitResult.RECORDED
