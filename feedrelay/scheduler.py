"""Poll scheduler: one independent polling task per feed source."""

import asyncio
from datetime import datetime

from .exceptions import FetchError
from .logging_config import create_execution_logger
from .models import FeedSource, PollReport, utcnow
from .orchestrator import DeliveryOrchestrator
from .registry import FeedRegistry

DEFAULT_POLL_INTERVAL = 60
DEFAULT_FETCH_TIMEOUT = 30


class PollScheduler:
    """Drives fetch-diff-deliver cycles for every registered feed source.

    Each feed source gets its own asyncio task, so a slow or failing feed
    never delays the others. Tasks are keyed by feed source id and cancelled
    when the source is removed from the registry.
    """

    def __init__(
        self,
        registry: FeedRegistry,
        fetcher,
        orchestrator: DeliveryOrchestrator,
        interval: int = DEFAULT_POLL_INTERVAL,
        fetch_timeout: int = DEFAULT_FETCH_TIMEOUT,
        execution_id: str | None = None,
    ):
        self.registry = registry
        self.fetcher = fetcher
        self.orchestrator = orchestrator
        self.interval = interval
        self.fetch_timeout = fetch_timeout
        self.logger = create_execution_logger("scheduler", execution_id)
        self._tasks: dict[str, asyncio.Task] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

        registry.on_feed_added(lambda feed: self.register(feed.id))
        registry.on_feed_removed(lambda feed: self.deregister(feed.id))

    @property
    def active_feeds(self) -> set[str]:
        return set(self._tasks)

    async def start(self) -> None:
        """Start polling every feed source known to the registry."""
        self._loop = asyncio.get_running_loop()
        feeds = self.registry.list_feed_sources()
        for feed in feeds:
            self._start_task(feed.id)
        self.logger.info(
            f"Scheduler started with {len(feeds)} feeds", interval=self.interval
        )

    async def stop(self) -> None:
        """Cancel every polling task and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("Scheduler stopped")

    def register(self, feed_id: str) -> None:
        """Start polling a feed source. Safe to call from any thread."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._start_task, feed_id)

    def deregister(self, feed_id: str) -> None:
        """Stop polling a feed source. Safe to call from any thread."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._cancel_task, feed_id)

    def seconds_until_due(self, feed: FeedSource, now: datetime | None = None) -> float:
        """Seconds until the feed is eligible for its next poll."""
        if feed.last_polled is None:
            return 0.0
        elapsed = ((now or utcnow()) - feed.last_polled).total_seconds()
        return max(0.0, self.interval - elapsed)

    async def poll_feed(self, feed_id: str) -> PollReport | None:
        """
        Run one fetch-diff-deliver cycle for a feed source.

        Failures are logged and leave ``last_polled`` untouched, so the feed
        is retried on its next cycle.

        Returns:
            PollReport, or None if the feed is unknown or the cycle failed
        """
        feed = self.registry.get_feed_source(feed_id)
        if feed is None:
            return None

        cycle_logger = create_execution_logger("poll_cycle")
        cycle_logger.log_execution_start(feed_id=feed.id, feed_url=feed.url)

        try:
            items = await asyncio.wait_for(
                asyncio.to_thread(self.fetcher.fetch, feed.url),
                timeout=self.fetch_timeout,
            )
        except TimeoutError:
            cycle_logger.warning(
                f"Fetching {feed.url} timed out after {self.fetch_timeout}s",
                feed_id=feed.id,
                feed_url=feed.url,
            )
            cycle_logger.log_execution_end(success=False, feed_id=feed.id)
            return None
        except FetchError as e:
            cycle_logger.warning(
                f"Fetching {feed.url} failed: {e}",
                feed_id=feed.id,
                feed_url=feed.url,
                error=str(e),
            )
            cycle_logger.log_execution_end(success=False, feed_id=feed.id)
            return None

        report = await self.orchestrator.deliver(feed.id, items, polled_at=utcnow())
        cycle_logger.log_metrics(report.as_metrics())
        cycle_logger.log_execution_end(success=True, feed_id=feed.id)
        return report

    async def _run_feed(self, feed_id: str) -> None:
        while True:
            feed = self.registry.get_feed_source(feed_id)
            if feed is None:
                self._tasks.pop(feed_id, None)
                return

            delay = self.seconds_until_due(feed)
            if delay > 0:
                await asyncio.sleep(delay)

            try:
                report = await self.poll_feed(feed_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception(
                    f"Unexpected error polling feed: {e}", feed_id=feed_id, error=str(e)
                )
                report = None

            if report is None:
                # Failed cycles keep last_polled, so wait a full interval
                await asyncio.sleep(self.interval)

    def _start_task(self, feed_id: str) -> None:
        task = self._tasks.get(feed_id)
        if task is not None and not task.done():
            return
        self._tasks[feed_id] = asyncio.get_running_loop().create_task(
            self._run_feed(feed_id), name=f"poll-{feed_id}"
        )
        self.logger.info("Polling registered", feed_id=feed_id)

    def _cancel_task(self, feed_id: str) -> None:
        task = self._tasks.pop(feed_id, None)
        if task is not None:
            task.cancel()
            self.logger.info("Polling deregistered", feed_id=feed_id)
