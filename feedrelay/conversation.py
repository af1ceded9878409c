"""Conversational wizard: a finite state machine per chat."""

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .exceptions import DeliveryError, DuplicateSubscription, FetchError, NotFound
from .filters import normalize_filters
from .logging_config import create_execution_logger
from .service import FeedService

YES = "Yes"
NO = "No"
CANCEL = "Cancel"
KEEP_NAME = "Keep name"
CHANGE_NAME = "Change name"
NO_FILTER = "No filter"

CONFIRM_KEYBOARD = [[YES, NO], [CANCEL]]
NAME_KEYBOARD = [[KEEP_NAME, CHANGE_NAME], [CANCEL]]
FILTER_KEYBOARD = [[NO_FILTER], [CANCEL]]

ADD_FEED = "addfeed"
REMOVE_FEED = "remfeed"
STOP = "stop"
FILTER = "filter"

BUSY_MESSAGE = (
    "You are still in another process. Send /cancel to abort it first."
)
NO_FEEDS_MESSAGE = "You have not subscribed to any feeds yet."


@dataclass
class Conversation:
    """Where a chat currently is inside a multi-step flow."""

    flow: str
    step: str
    feed_url: str | None = None
    feed_title: str | None = None
    display_title: str | None = None
    subscription_id: str | None = None


Handler = Callable[[str, str, Conversation], Awaitable[None]]


class ConversationManager:
    """Routes chat messages through the add/remove/stop/filter wizards.

    State lives in a map keyed by chat id; each ``(flow, step)`` pair maps to
    one handler in the transition table.
    """

    def __init__(
        self,
        service: FeedService,
        messenger,
        poll_interval: int = 60,
        execution_id: str | None = None,
    ):
        self.service = service
        self.messenger = messenger
        self.poll_interval = poll_interval
        self.logger = create_execution_logger("conversation", execution_id)
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()

        self._commands: dict[str, Callable[[str, str | None], Awaitable[None]]] = {
            "/start": self._start,
            "/help": self._start,
            "/addfeed": self._begin_add,
            "/remfeed": self._begin_remove,
            "/feeds": self._list_feeds,
            "/stop": self._begin_stop,
            "/filter": self._begin_filter,
        }
        self._transitions: dict[tuple[str, str], Handler] = {
            (ADD_FEED, "url"): self._on_url,
            (ADD_FEED, "confirm"): self._on_add_confirm,
            (ADD_FEED, "name"): self._on_name_choice,
            (ADD_FEED, "custom_name"): self._on_custom_name,
            (ADD_FEED, "filters"): self._on_add_filters,
            (REMOVE_FEED, "choose"): self._on_remove_choice,
            (REMOVE_FEED, "confirm"): self._on_remove_confirm,
            (STOP, "confirm"): self._on_stop_confirm,
            (FILTER, "choose"): self._on_filter_choice,
            (FILTER, "keywords"): self._on_filter_keywords,
        }

    def state_of(self, chat_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(str(chat_id))

    async def handle_message(
        self, chat_id: str, text: str, first_name: str | None = None
    ) -> None:
        """Process one incoming text message from a chat."""
        chat_id = str(chat_id)
        text = text.strip()
        command = text.split()[0].split("@")[0].lower() if text else ""

        if command == "/cancel" or text == CANCEL:
            await self._cancel(chat_id)
            return

        handler = self._commands.get(command)
        if handler is not None:
            await handler(chat_id, first_name)
            return

        conversation = self.state_of(chat_id)
        if conversation is None:
            return
        transition = self._transitions[(conversation.flow, conversation.step)]
        await transition(chat_id, text, conversation)

    # --- Commands ---

    async def _start(self, chat_id: str, first_name: str | None) -> None:
        await self._reply(
            chat_id,
            f"Hello {first_name or 'there'},\n"
            "to add a feed send /addfeed, to remove one /remfeed, "
            "to list your feeds /feeds, to set keyword filters /filter "
            "and to remove all feeds /stop.",
        )

    async def _begin_add(self, chat_id: str, first_name: str | None) -> None:
        if not await self._begin(chat_id, Conversation(ADD_FEED, "url")):
            return
        await self._reply(chat_id, "All right. Now send me the URL of the RSS feed.")

    async def _begin_remove(self, chat_id: str, first_name: str | None) -> None:
        if self.state_of(chat_id):
            await self._reply(chat_id, BUSY_MESSAGE)
            return
        subscriptions = self.service.list_subscriptions(chat_id)
        if not subscriptions:
            await self._reply(chat_id, NO_FEEDS_MESSAGE)
            return
        await self._begin(chat_id, Conversation(REMOVE_FEED, "choose"))
        await self._reply(
            chat_id,
            "Please choose the feed you want to remove.",
            keyboard=[[s.title] for s in subscriptions] + [[CANCEL]],
        )

    async def _list_feeds(self, chat_id: str, first_name: str | None) -> None:
        if self.state_of(chat_id):
            await self._reply(chat_id, BUSY_MESSAGE)
            return
        subscriptions = self.service.list_subscriptions(chat_id)
        if not subscriptions:
            await self._reply(chat_id, NO_FEEDS_MESSAGE)
            return
        lines = []
        for subscription in subscriptions:
            line = subscription.title
            if subscription.filters:
                line += f" [{', '.join(subscription.filters)}]"
            lines.append(line)
        await self._reply(
            chat_id, "You are subscribed to these feeds:\n\n" + "\n".join(lines)
        )

    async def _begin_stop(self, chat_id: str, first_name: str | None) -> None:
        if self.state_of(chat_id):
            await self._reply(chat_id, BUSY_MESSAGE)
            return
        subscriptions = self.service.list_subscriptions(chat_id)
        if not subscriptions:
            await self._reply(chat_id, NO_FEEDS_MESSAGE)
            return
        await self._begin(chat_id, Conversation(STOP, "confirm"))
        await self._reply(
            chat_id,
            f"You are about to remove {len(subscriptions)} feeds. Do you want to continue?",
            keyboard=CONFIRM_KEYBOARD,
        )

    async def _begin_filter(self, chat_id: str, first_name: str | None) -> None:
        if self.state_of(chat_id):
            await self._reply(chat_id, BUSY_MESSAGE)
            return
        subscriptions = self.service.list_subscriptions(chat_id)
        if not subscriptions:
            await self._reply(chat_id, NO_FEEDS_MESSAGE)
            return
        await self._begin(chat_id, Conversation(FILTER, "choose"))
        await self._reply(
            chat_id,
            "Which feed do you want to filter?",
            keyboard=[[s.title] for s in subscriptions] + [[CANCEL]],
        )

    async def _cancel(self, chat_id: str) -> None:
        with self._lock:
            conversation = self._conversations.pop(chat_id, None)
        if conversation:
            await self._reply(
                chat_id, "The current process was cancelled.", remove_keyboard=True
            )
        else:
            await self._reply(chat_id, "There is nothing to cancel.")

    # --- /addfeed ---

    async def _on_url(self, chat_id: str, text: str, conversation: Conversation) -> None:
        if self.service.is_subscribed(chat_id, text):
            await self._reply(
                chat_id,
                "You are already subscribed to this feed. "
                "Send another URL or /cancel to abort.",
            )
            return

        await self._reply(chat_id, "Checking the URL, one moment...")
        try:
            parsed = await asyncio.to_thread(self.service.probe, text)
        except FetchError as e:
            self.logger.info(f"Rejected feed URL: {e}", chat_id=chat_id, feed_url=text)
            await self._reply(
                chat_id,
                "That does not look like a valid feed URL. "
                "Please try again or send /cancel to abort.",
            )
            return

        conversation.feed_url = text
        conversation.feed_title = parsed.title or text
        conversation.step = "confirm"
        await self._reply(
            chat_id,
            f"I found a feed named {conversation.feed_title} ({parsed.link or text}).\n\n"
            "Do you want to add this feed?",
            keyboard=CONFIRM_KEYBOARD,
        )

    async def _on_add_confirm(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        if text == YES:
            conversation.step = "name"
            await self._reply(
                chat_id,
                f"Do you want to keep the name {conversation.feed_title} or change it?",
                keyboard=NAME_KEYBOARD,
            )
        elif text == NO:
            conversation.step = "url"
            await self._reply(
                chat_id, "All right. Send me another URL or /cancel to abort."
            )
        else:
            await self._invalid(chat_id, YES, NO, CANCEL)

    async def _on_name_choice(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        if text == KEEP_NAME:
            conversation.display_title = conversation.feed_title
            await self._ask_filters(chat_id, conversation)
        elif text == CHANGE_NAME:
            conversation.step = "custom_name"
            await self._reply(
                chat_id,
                f"Please send me another name for {conversation.feed_title}.",
                remove_keyboard=True,
            )
        else:
            await self._invalid(chat_id, KEEP_NAME, CHANGE_NAME, CANCEL)

    async def _on_custom_name(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        if not text:
            await self._reply(
                chat_id,
                f'Please send me a name, "{KEEP_NAME}" or /cancel to abort.',
            )
            return
        conversation.display_title = (
            conversation.feed_title if text == KEEP_NAME else text
        )
        await self._ask_filters(chat_id, conversation)

    async def _ask_filters(self, chat_id: str, conversation: Conversation) -> None:
        conversation.step = "filters"
        await self._reply(
            chat_id,
            "Send me keywords separated by commas to only receive matching items, "
            f'or "{NO_FILTER}" to receive everything.',
            keyboard=FILTER_KEYBOARD,
        )

    async def _on_add_filters(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        filters = self._parse_filters(text)
        if filters is None:
            await self._invalid(chat_id, NO_FILTER, CANCEL)
            return

        self._end(chat_id)
        try:
            subscription = await asyncio.to_thread(
                self.service.subscribe,
                chat_id,
                conversation.feed_url,
                display_title=conversation.display_title,
                filters=filters,
                feed_title=conversation.feed_title,
            )
        except DuplicateSubscription:
            await self._reply(
                chat_id,
                "You are already subscribed to this feed.",
                remove_keyboard=True,
            )
            return

        await self._reply(
            chat_id,
            f"I added {subscription.title}. From now on you will be notified about "
            f"new items automatically. Feeds are checked every {self.poll_interval} seconds.",
            remove_keyboard=True,
        )

    # --- /remfeed ---

    async def _on_remove_choice(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        subscription = self.service.find_subscription(chat_id, text)
        if subscription is None:
            await self._reply(
                chat_id,
                "Unknown feed. Please choose one of your feeds or send /cancel to abort.",
            )
            return
        conversation.subscription_id = subscription.id
        conversation.display_title = subscription.title
        conversation.step = "confirm"
        await self._reply(
            chat_id,
            f"Do you really want to remove the feed {subscription.title}?",
            keyboard=CONFIRM_KEYBOARD,
        )

    async def _on_remove_confirm(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        if text == YES:
            self._end(chat_id)
            try:
                await asyncio.to_thread(
                    self.service.unsubscribe, chat_id, conversation.subscription_id
                )
            except NotFound:
                await self._reply(
                    chat_id, "This feed was already removed.", remove_keyboard=True
                )
                return
            await self._reply(
                chat_id, f"I removed {conversation.display_title}.", remove_keyboard=True
            )
        elif text == NO:
            self._end(chat_id)
            await self._reply(
                chat_id, "All right. I cancelled the process.", remove_keyboard=True
            )
        else:
            await self._invalid(chat_id, YES, NO, CANCEL)

    # --- /stop ---

    async def _on_stop_confirm(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        if text == YES:
            self._end(chat_id)
            await asyncio.to_thread(self.service.unsubscribe_all, chat_id)
            await self._reply(chat_id, "I removed all feeds.", remove_keyboard=True)
        elif text == NO:
            self._end(chat_id)
            await self._reply(
                chat_id, "All right. I cancelled the process.", remove_keyboard=True
            )
        else:
            await self._invalid(chat_id, YES, NO, CANCEL)

    # --- /filter ---

    async def _on_filter_choice(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        subscription = self.service.find_subscription(chat_id, text)
        if subscription is None:
            await self._reply(
                chat_id,
                "Unknown feed. Please choose one of your feeds or send /cancel to abort.",
            )
            return
        conversation.subscription_id = subscription.id
        conversation.display_title = subscription.title
        conversation.step = "keywords"
        current = ", ".join(subscription.filters) or "none"
        await self._reply(
            chat_id,
            f"Current keywords for {subscription.title}: {current}.\n"
            "Send me the new keywords separated by commas, "
            f'or "{NO_FILTER}" to receive everything.',
            keyboard=FILTER_KEYBOARD,
        )

    async def _on_filter_keywords(
        self, chat_id: str, text: str, conversation: Conversation
    ) -> None:
        filters = self._parse_filters(text)
        if filters is None:
            await self._invalid(chat_id, NO_FILTER, CANCEL)
            return

        self._end(chat_id)
        try:
            subscription = await asyncio.to_thread(
                self.service.set_filters, chat_id, conversation.subscription_id, filters
            )
        except NotFound:
            await self._reply(
                chat_id, "This feed was already removed.", remove_keyboard=True
            )
            return

        summary = ", ".join(subscription.filters) or "none"
        await self._reply(
            chat_id,
            f"Keywords for {subscription.title} updated: {summary}.",
            remove_keyboard=True,
        )

    # --- Helpers ---

    async def _begin(self, chat_id: str, conversation: Conversation) -> bool:
        with self._lock:
            if chat_id not in self._conversations:
                self._conversations[chat_id] = conversation
                return True
            active = self._conversations[chat_id]

        if active.flow == conversation.flow:
            await self._reply(
                chat_id,
                "You are already doing this. Send /cancel to abort the current process.",
            )
        else:
            await self._reply(chat_id, BUSY_MESSAGE)
        return False

    def _end(self, chat_id: str) -> None:
        with self._lock:
            self._conversations.pop(chat_id, None)

    def _parse_filters(self, text: str) -> tuple[str, ...] | None:
        """Return () for NO_FILTER, the keywords, or None if there are none."""
        if text == NO_FILTER:
            return ()
        return normalize_filters(text) or None

    async def _invalid(self, chat_id: str, *choices: str) -> None:
        allowed = ", ".join(f'"{choice}"' for choice in choices)
        await self._reply(chat_id, f"Invalid input. Allowed are {allowed} and /cancel.")

    async def _reply(
        self,
        chat_id: str,
        text: str,
        keyboard: list[list[str]] | None = None,
        remove_keyboard: bool = False,
    ) -> None:
        try:
            await asyncio.to_thread(
                self.messenger.send_message,
                chat_id,
                text,
                keyboard=keyboard,
                remove_keyboard=remove_keyboard,
            )
        except DeliveryError as e:
            self.logger.warning(f"Reply failed: {e}", chat_id=chat_id, error=str(e))
