# bothost/transport/adapters.py
from __future__ import annotations

from bothost.core.domain import InboundCommand
from bothost.infra.logging_config import get_logger

logger = get_logger(__name__)


class TelegramAdapter:
    """
    Adapter for Telegram Bot API updates.

    Telegram sends JSON Updates with structure:
    {
      "update_id": 123456,
      "message": {
        "message_id": 42,
        "from": {"id": 123, "first_name": "User", "username": "user", ...},
        "chat": {"id": 123, "type": "private", ...},
        "date": 1234567890,
        "text": "/echo hello world",
        ...
      }
    }

    Only text messages starting with ``/`` become commands.
    """

    def __init__(self, bot_username: str | None = None):
        self.bot_username = bot_username

    def adapt_update(self, update: dict, bot_id: str) -> InboundCommand | None:
        """
        Convert a Telegram Update dict to an InboundCommand.
        Returns None for anything that is not a command addressed to this bot.
        """
        # Only handle regular messages (not edited, channel posts, etc.)
        message = update.get("message")
        if not message:
            logger.debug(f"Telegram update: no 'message' field, ignoring (keys={list(update.keys())})")
            return None

        text = message.get("text") or ""
        if not text.startswith("/"):
            return None

        chat = message.get("chat", {})
        chat_id = str(chat.get("id", ""))
        if not chat_id:
            logger.warning("Telegram message: missing chat.id, ignoring")
            return None

        parts = text.split()
        command, _, mention = parts[0][1:].partition("@")
        if not command:
            return None

        # "/start@OtherBot" in a group is addressed to another bot
        if mention and self.bot_username and mention.lower() != self.bot_username.lower():
            logger.debug(f"Telegram command for @{mention}, not for @{self.bot_username}, ignoring")
            return None

        sender = message.get("from", {})
        user_id = sender.get("id")

        return InboundCommand(
            bot_id=bot_id,
            command=command,
            chat_id=chat_id,
            message_id=str(message.get("message_id", "")),
            text=text,
            args=parts[1:],
            chat_type=chat.get("type"),
            user_id=str(user_id) if user_id is not None else None,
            first_name=sender.get("first_name"),
            last_name=sender.get("last_name"),
            username=sender.get("username"),
            date=message.get("date"),
        )
