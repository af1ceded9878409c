"""Telegram messenger for the feed relay bot."""

import json
import time
import urllib.error
import urllib.request
from typing import Any

from .config import TelegramConfig
from .exceptions import DeliveryError
from .filters import strip_markup
from .logging_config import create_execution_logger
from .models import FeedItem

NO_TITLE = "No title"
NO_DESCRIPTION = "No description"
NO_LINK = "No link"

# Telegram counts message length in UTF-16 code units
MAX_MESSAGE_LENGTH = 4096
MAX_TITLE_LENGTH = 512
ELLIPSIS = "\u2026"


def _utf16_length(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to at most ``limit`` UTF-16 code units, ending in an ellipsis."""
    if _utf16_length(text) <= limit:
        return text
    if limit < 1:
        return ""
    kept = text.encode("utf-16-le")[: (limit - 1) * 2]
    # A split surrogate pair is dropped by the decoder
    return kept.decode("utf-16-le", errors="ignore") + ELLIPSIS


def render_message(item: FeedItem, subscription_title: str) -> str:
    """
    Render a feed item as chat text.

    The layout is the item title, its plain-text description and its link
    followed by the subscription's display title, separated by blank lines.
    Long descriptions are shortened so the message fits Telegram's limit
    while the link line stays intact.

    Args:
        item: The feed item to render
        subscription_title: Display title chosen for the subscription

    Returns:
        Message text
    """
    title = item.title or NO_TITLE
    description = strip_markup(item.summary) or NO_DESCRIPTION
    link = item.link or NO_LINK

    title = truncate(title, MAX_TITLE_LENGTH)
    tail = f"{link} ({subscription_title})"
    budget = MAX_MESSAGE_LENGTH - _utf16_length(title) - _utf16_length(tail) - 4
    description = truncate(description, budget)
    return f"{title}\n\n{description}\n\n{tail}"


class TelegramMessenger:
    """Sends messages to Telegram chats and receives bot updates."""

    def __init__(self, config: TelegramConfig, execution_id: str | None = None):
        """Initialize Telegram messenger with configuration."""
        self.config = config
        self.logger = create_execution_logger("telegram_messenger", execution_id)
        self.base_url = f"https://api.telegram.org/bot{config.bot_token}"

        self.logger.info(
            "TelegramMessenger initialized",
            parse_mode=config.parse_mode,
            retry_attempts=config.retry_attempts,
        )

    def notify(self, chat_id: str, text: str) -> None:
        """
        Deliver a feed notification to a chat.

        Args:
            chat_id: Target chat identifier
            text: Rendered message text

        Raises:
            DeliveryError: If the message could not be delivered
        """
        self.send_message(chat_id, text)
        self.logger.debug("Notification delivered", chat_id=chat_id)

    def send_message(
        self,
        chat_id: str,
        text: str,
        keyboard: list[list[str]] | None = None,
        remove_keyboard: bool = False,
    ) -> None:
        """
        Send a text message, optionally with a one-time reply keyboard.

        Args:
            chat_id: Target chat identifier
            text: Message text
            keyboard: Rows of button labels
            remove_keyboard: Hide a previously shown keyboard

        Raises:
            DeliveryError: If the message could not be delivered
        """
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": False,
        }
        if self.config.parse_mode:
            data["parse_mode"] = self.config.parse_mode
        if keyboard:
            data["reply_markup"] = {
                "keyboard": [[{"text": label} for label in row] for row in keyboard],
                "one_time_keyboard": True,
                "resize_keyboard": True,
            }
        elif remove_keyboard:
            data["reply_markup"] = {"remove_keyboard": True}

        self._call("sendMessage", data)

    def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict]:
        """
        Long-poll the Bot API for incoming updates.

        Args:
            offset: Identifier of the first update to return
            timeout: Long-polling timeout in seconds

        Returns:
            List of update objects

        Raises:
            DeliveryError: If the Bot API cannot be reached
        """
        data: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            data["offset"] = offset
        result = self._call("getUpdates", data, http_timeout=timeout + 10, retry=False)
        return result or []

    def handle_rate_limit(self, retry_count: int) -> None:
        """
        Handle rate limiting with exponential backoff.

        Args:
            retry_count: Current retry attempt number
        """
        backoff_time = self.config.backoff_factor**retry_count
        self.logger.warning(
            f"Rate limited, waiting {backoff_time} seconds before retry {retry_count + 1}",
            retry_count=retry_count,
            backoff_time=backoff_time,
        )
        time.sleep(backoff_time)

    def _call(
        self,
        method: str,
        data: dict[str, Any],
        http_timeout: int | None = None,
        retry: bool = True,
    ) -> Any:
        """
        Call a Bot API method with retry on rate limiting.

        Args:
            method: Bot API method name
            data: JSON payload
            http_timeout: Socket timeout, defaults to the configured timeout
            retry: Retry rate-limited calls

        Returns:
            The ``result`` field of the API response

        Raises:
            DeliveryError: If the call fails
        """
        url = f"{self.base_url}/{method}"
        json_data = json.dumps(data).encode("utf-8")
        attempts = self.config.retry_attempts if retry else 1

        for attempt in range(attempts):
            req = urllib.request.Request(
                url,
                data=json_data,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "feedrelay/1.0",
                },
            )
            try:
                with urllib.request.urlopen(
                    req, timeout=http_timeout or self.config.timeout
                ) as response:
                    body = json.loads(response.read().decode("utf-8"))
            except urllib.error.HTTPError as e:
                if e.code == 429 and attempt < attempts - 1:
                    self.logger.warning(
                        f"Rate limited by Telegram API (attempt {attempt + 1})",
                        attempt=attempt + 1,
                        http_code=e.code,
                    )
                    self.handle_rate_limit(attempt)
                    continue
                self.logger.error(
                    f"HTTP error calling {method}: {e.code} - {e.reason}",
                    http_code=e.code,
                    http_reason=str(e.reason),
                )
                raise DeliveryError(f"Telegram {method} failed: HTTP {e.code}") from e
            except urllib.error.URLError as e:
                self.logger.error(
                    f"URL error calling {method}: {e.reason}", error=str(e.reason)
                )
                raise DeliveryError(f"Telegram {method} failed: {e.reason}") from e
            except (OSError, ValueError) as e:
                self.logger.error(f"Error calling {method}: {e}", error=str(e))
                raise DeliveryError(f"Telegram {method} failed: {e}") from e

            if not body.get("ok"):
                description = body.get("description", "unknown error")
                self.logger.error(
                    f"Telegram API rejected {method}: {description}",
                    error=description,
                )
                raise DeliveryError(f"Telegram {method} rejected: {description}")

            return body.get("result")

        raise DeliveryError(f"Telegram {method} failed: max retry attempts reached")
