"""Application wiring for the feed relay bot."""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime

from .bot import BotRunner
from .config import Config
from .conversation import ConversationManager
from .credentials import resolve_bot_token
from .ledger import DeliveryLedger, DynamoDBLedger, SQLiteLedger
from .logging_config import create_execution_logger
from .orchestrator import DeliveryOrchestrator
from .registry import FeedRegistry
from .repository import SQLiteRepository
from .rss import FeedFetcher
from .scheduler import PollScheduler
from .service import FeedService
from .telegram import TelegramMessenger


@dataclass
class Application:
    """Every long-lived component of a running bot."""

    repository: SQLiteRepository
    ledger: DeliveryLedger
    registry: FeedRegistry
    fetcher: FeedFetcher
    messenger: TelegramMessenger
    orchestrator: DeliveryOrchestrator
    scheduler: PollScheduler
    service: FeedService
    conversation: ConversationManager
    bot: BotRunner


def build_ledger(
    config: Config, repository: SQLiteRepository, execution_id: str | None = None
) -> DeliveryLedger:
    storage = config.get_storage_config()
    if storage.ledger_backend == "dynamodb":
        return DynamoDBLedger(
            table_name=storage.dynamodb_table,
            aws_region=storage.aws_region,
            ttl_days=storage.ledger_ttl_days,
            execution_id=execution_id,
        )
    return SQLiteLedger(repository)


def build_application(config: Config, execution_id: str | None = None) -> Application:
    """
    Create and connect every component.

    Args:
        config: Loaded configuration
        execution_id: Execution ID for logging context

    Returns:
        Application with a connected repository

    Raises:
        ValueError: If the bot token is missing
    """
    bot_token = resolve_bot_token(config, execution_id)
    storage = config.get_storage_config()
    schedule = config.get_scheduler_config()

    repository = SQLiteRepository(storage.database_path)
    repository.connect()

    ledger = build_ledger(config, repository, execution_id)
    registry = FeedRegistry(repository, ledger, execution_id=execution_id)
    fetcher = FeedFetcher(timeout=schedule.fetch_timeout, execution_id=execution_id)
    messenger = TelegramMessenger(
        config.get_telegram_config(bot_token), execution_id=execution_id
    )
    orchestrator = DeliveryOrchestrator(
        registry, ledger, messenger, execution_id=execution_id
    )
    scheduler = PollScheduler(
        registry,
        fetcher,
        orchestrator,
        interval=schedule.poll_interval,
        fetch_timeout=schedule.fetch_timeout,
        execution_id=execution_id,
    )
    service = FeedService(registry, fetcher, execution_id=execution_id)
    conversation = ConversationManager(
        service, messenger, poll_interval=schedule.poll_interval, execution_id=execution_id
    )
    bot = BotRunner(messenger, conversation, execution_id=execution_id)

    return Application(
        repository=repository,
        ledger=ledger,
        registry=registry,
        fetcher=fetcher,
        messenger=messenger,
        orchestrator=orchestrator,
        scheduler=scheduler,
        service=service,
        conversation=conversation,
        bot=bot,
    )


async def run(config: Config) -> None:
    """Run the scheduler and the bot update loop until cancelled."""
    execution_id = f"run_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)
    main_logger.log_execution_start()

    app = build_application(config, execution_id)
    try:
        await app.scheduler.start()
        await app.bot.run()
    except asyncio.CancelledError:
        main_logger.info("Shutdown requested")
        raise
    finally:
        await app.scheduler.stop()
        app.repository.close()
        main_logger.log_execution_end(success=True)
