"""Unit tests for the delivery orchestrator."""

import asyncio
import time
from unittest.mock import Mock

from conftest import make_item

from feedrelay.exceptions import StorageError
from feedrelay.orchestrator import DeliveryOrchestrator, chronological

FEED_URL = "https://example.com/feed.xml"


def deliver(orchestrator, feed_id, items):
    return asyncio.run(orchestrator.deliver(feed_id, items))


class TestDeliveryOrchestratorUnit:
    """Unit tests for DeliveryOrchestrator.deliver."""

    def test_first_poll_only_sets_watermark(self, registry, orchestrator, messenger):
        """Chat 42 sees nothing from the first poll and exactly g3 afterwards."""
        feed = registry.register_feed(FEED_URL, "Example")
        subscription = registry.add_subscription("42", feed.id, title="Example")

        first = deliver(orchestrator, feed.id, [make_item("g1"), make_item("g2")])

        assert messenger.sent == []
        assert first.backlog_suppressed == 2
        assert registry.get_subscription(subscription.id).just_subscribed is False
        assert registry.get_feed_source(feed.id).last_polled is not None

        second = deliver(
            orchestrator,
            feed.id,
            [make_item("g1"), make_item("g2"), make_item("g3", title="Third")],
        )

        assert second.delivered == 1
        assert messenger.sent_to("42") == [
            "Third\n\nNo description\n\nhttps://example.com/g3 (Example)"
        ]

    def test_items_are_never_delivered_twice(self, registry, orchestrator, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        registry.add_subscription("42", feed.id)
        deliver(orchestrator, feed.id, [])

        items = [make_item("g1"), make_item("g2")]
        for _ in range(5):
            deliver(orchestrator, feed.id, items)

        assert len(messenger.sent_to("42")) == 2

    def test_filtered_items_leave_no_record(self, registry, ledger, orchestrator, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        subscription = registry.add_subscription("42", feed.id, filters=["weather"])
        deliver(orchestrator, feed.id, [])

        report = deliver(
            orchestrator,
            feed.id,
            [
                make_item("g4", title="Weather alert"),
                make_item("g5", title="Sports news", link="https://example.com/s"),
            ],
        )

        assert report.delivered == 1
        assert report.filtered == 1
        assert len(messenger.sent_to("42")) == 1
        assert messenger.sent_to("42")[0].startswith("Weather alert")
        assert ledger.has_delivered(subscription.id, "g4")
        assert not ledger.has_delivered(subscription.id, "g5")

    def test_filter_change_matches_earlier_item(self, registry, orchestrator, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        subscription = registry.add_subscription("42", feed.id, filters=["weather"])
        deliver(orchestrator, feed.id, [])
        items = [make_item("g5", title="Sports news", link="https://example.com/s")]

        deliver(orchestrator, feed.id, items)
        assert messenger.sent == []

        registry.update_filters("42", subscription.id, ["sports"])
        deliver(orchestrator, feed.id, items)
        assert len(messenger.sent_to("42")) == 1

    def test_failed_dispatch_is_isolated_and_retried(
        self, registry, ledger, orchestrator, messenger
    ):
        feed = registry.register_feed(FEED_URL, "Example")
        one = registry.add_subscription("1", feed.id)
        two = registry.add_subscription("2", feed.id)
        deliver(orchestrator, feed.id, [])
        messenger.failing.add("1")

        report = deliver(orchestrator, feed.id, [make_item("g1")])

        assert report.failed == 1
        assert report.delivered == 1
        assert len(messenger.sent_to("2")) == 1
        assert not ledger.has_delivered(one.id, "g1")
        assert ledger.has_delivered(two.id, "g1")

        messenger.failing.clear()
        deliver(orchestrator, feed.id, [make_item("g1")])

        assert len(messenger.sent_to("1")) == 1
        assert len(messenger.sent_to("2")) == 1

    def test_new_subscriber_on_existing_feed_gets_no_backlog(
        self, registry, orchestrator, messenger
    ):
        feed = registry.register_feed(FEED_URL, "Example")
        registry.add_subscription("1", feed.id)
        deliver(orchestrator, feed.id, [make_item("g1")])
        deliver(orchestrator, feed.id, [make_item("g1"), make_item("g2")])

        registry.add_subscription("2", feed.id)
        deliver(orchestrator, feed.id, [make_item("g1"), make_item("g2")])
        deliver(orchestrator, feed.id, [make_item("g1"), make_item("g2"), make_item("g3")])

        assert [text.split("\n")[0] for text in messenger.sent_to("1")] == [
            "Item g2",
            "Item g3",
        ]
        assert [text.split("\n")[0] for text in messenger.sent_to("2")] == ["Item g3"]

    def test_items_are_delivered_oldest_first(self, registry, orchestrator, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        registry.add_subscription("42", feed.id)
        deliver(orchestrator, feed.id, [])

        deliver(
            orchestrator,
            feed.id,
            [make_item("new", minutes=10), make_item("old", minutes=1)],
        )

        assert [text.split("\n")[0] for text in messenger.sent_to("42")] == [
            "Item old",
            "Item new",
        ]

    def test_removed_feed_discards_results(self, registry, orchestrator, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        registry.add_subscription("42", feed.id)
        registry.remove_subscription("42", feed.id)

        report = deliver(orchestrator, feed.id, [make_item("g1")])

        assert report.discarded is True
        assert messenger.sent == []

    def test_unsubscribe_during_dispatch_skips_record(self, registry, ledger, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        subscription = registry.add_subscription("42", feed.id)
        registry.complete_poll(feed.id, feed.created_at, [subscription.id])
        registry.add_subscription("43", feed.id)

        def notify_then_unsubscribe(chat_id, text):
            messenger.notify(chat_id, text)
            if chat_id == "42":
                registry.remove_subscription("42", feed.id)

        racing = Mock()
        racing.notify.side_effect = notify_then_unsubscribe
        orchestrator = DeliveryOrchestrator(registry, ledger, racing)

        deliver(orchestrator, feed.id, [make_item("g1"), make_item("g2", minutes=1)])

        assert len(messenger.sent_to("42")) == 1
        assert not ledger.has_delivered(subscription.id, "g1")

    def test_storage_failure_keeps_item_pending(self, registry, ledger, messenger):
        feed = registry.register_feed(FEED_URL, "Example")
        subscription = registry.add_subscription("42", feed.id)
        registry.complete_poll(feed.id, feed.created_at, [subscription.id])

        failing_ledger = Mock(wraps=ledger)
        failing_ledger.record_delivery.side_effect = StorageError("disk full")
        orchestrator = DeliveryOrchestrator(registry, failing_ledger, messenger)

        deliver(orchestrator, feed.id, [make_item("g1")])
        deliver(orchestrator, feed.id, [make_item("g1")])
        report = deliver(orchestrator, feed.id, [make_item("g1")])

        # Without a record the item is sent again rather than lost
        assert len(messenger.sent_to("42")) == 3
        assert report.delivered == 0
        assert report.unrecorded == 1
        assert report.as_metrics()["unrecorded"] == 1

    def test_slow_ledger_does_not_stall_other_feeds(self, registry, ledger, messenger):
        """A feed whose ledger lookups block leaves the event loop free."""
        slow_feed = registry.register_feed(FEED_URL, "Slow")
        fast_feed = registry.register_feed("https://other.example.com/rss", "Fast")
        slow = registry.add_subscription("1", slow_feed.id)
        fast = registry.add_subscription("2", fast_feed.id)
        registry.complete_poll(slow_feed.id, slow_feed.created_at, [slow.id])
        registry.complete_poll(fast_feed.id, fast_feed.created_at, [fast.id])

        def has_delivered(subscription_id, guid):
            if subscription_id == slow.id:
                time.sleep(0.2)
            return ledger.has_delivered(subscription_id, guid)

        slow_ledger = Mock(wraps=ledger)
        slow_ledger.has_delivered.side_effect = has_delivered
        orchestrator = DeliveryOrchestrator(registry, slow_ledger, messenger)

        async def run_both():
            loop = asyncio.get_running_loop()
            started = loop.time()
            finished = {}

            async def timed(name, feed_id, items):
                await orchestrator.deliver(feed_id, items)
                finished[name] = loop.time() - started

            await asyncio.gather(
                timed("slow", slow_feed.id, [make_item(f"s{i}", minutes=i) for i in range(4)]),
                timed("fast", fast_feed.id, [make_item("f1")]),
            )
            return finished

        finished = asyncio.run(run_both())

        assert finished["slow"] >= 0.8
        assert finished["fast"] < 0.4
        assert len(messenger.sent_to("1")) == 4
        assert len(messenger.sent_to("2")) == 1

    def test_chronological_keeps_undated_items_last(self):
        undated = make_item("u")
        undated.published = None
        ordered = chronological([undated, make_item("b", minutes=2), make_item("a")])
        assert [item.guid for item in ordered] == ["a", "b", "u"]
