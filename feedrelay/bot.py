"""Telegram update loop feeding the conversation state machine."""

import asyncio

from .conversation import ConversationManager
from .exceptions import DeliveryError
from .logging_config import create_execution_logger


class BotRunner:
    """Long-polls Telegram for updates and dispatches text messages."""

    def __init__(
        self,
        messenger,
        conversation: ConversationManager,
        poll_timeout: int = 30,
        retry_delay: float = 5.0,
        execution_id: str | None = None,
    ):
        self.messenger = messenger
        self.conversation = conversation
        self.poll_timeout = poll_timeout
        self.retry_delay = retry_delay
        self.offset: int | None = None
        self.logger = create_execution_logger("bot", execution_id)

    async def run(self) -> None:
        """Process updates until cancelled."""
        self.logger.info("Bot update loop started")
        while True:
            await self.poll_once()

    async def poll_once(self) -> int:
        """Fetch and handle one batch of updates. Returns the batch size."""
        try:
            updates = await asyncio.to_thread(
                self.messenger.get_updates, self.offset, self.poll_timeout
            )
        except DeliveryError as e:
            self.logger.warning(f"Fetching updates failed: {e}", error=str(e))
            await asyncio.sleep(self.retry_delay)
            return 0

        for update in updates:
            self.offset = update["update_id"] + 1
            await self.handle_update(update)
        return len(updates)

    async def handle_update(self, update: dict) -> None:
        message = update.get("message") or {}
        text = message.get("text")
        chat = message.get("chat") or {}
        if not text or "id" not in chat:
            return

        chat_id = str(chat["id"])
        try:
            await self.conversation.handle_message(
                chat_id, text, first_name=chat.get("first_name")
            )
        except Exception as e:
            self.logger.exception(
                f"Failed to handle message: {e}", chat_id=chat_id, error=str(e)
            )
