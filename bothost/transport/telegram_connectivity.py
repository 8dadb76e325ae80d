# bothost/transport/telegram_connectivity.py
"""
Telegram implementation of the connectivity adapter.

Opening a session:
1. ``getMe``         – the token still works (a revoked token fails here)
2. ``deleteWebhook`` – polling and webhooks are mutually exclusive
3. ``setMyCommands`` – best effort, publishes the command menu
4. start a ``TelegramPoller`` feeding the bound command callbacks
"""
from __future__ import annotations

from typing import Any, Mapping

from bothost.config import settings
from bothost.core.domain import CommandContext, InboundCommand
from bothost.core.errors import InvalidCredentialError, SessionOpenError
from bothost.core.ports import BotSession, CommandCallback, ConnectivityAdapter
from bothost.infra.logging_config import get_logger, LogContext
from bothost.transport.adapters import TelegramAdapter
from bothost.transport.telegram_polling import TelegramPoller
from bothost.transport.telegram_sender import (
    TelegramSendError,
    delete_webhook,
    get_me,
    send_text_message,
    set_my_commands,
)

logger = get_logger(__name__)


class TelegramBotSession(BotSession):
    """One running bot: a poller plus the command callbacks bound at start."""

    def __init__(
        self,
        bot_id: str,
        token: str,
        commands: Mapping[str, CommandCallback],
        *,
        username: str | None = None,
        bot_name: str = "",
        poll_timeout: int | None = None,
    ):
        self.bot_id = bot_id
        self.username = username
        self.bot_name = bot_name
        self._token = token
        self._commands = dict(commands)
        self._adapter = TelegramAdapter(bot_username=username)
        self._poller = TelegramPoller(bot_id, token, self.handle_update, poll_timeout=poll_timeout)

    @property
    def commands(self) -> list[str]:
        return sorted(self._commands)

    def start(self) -> None:
        self._poller.start()

    async def close(self, grace_seconds: float) -> None:
        await self._poller.stop(grace_seconds)

    async def handle_update(self, update: dict) -> None:
        """Route one update to its command callback (unknown commands are ignored)."""
        message = self._adapter.adapt_update(update, self.bot_id)
        if message is None:
            return

        callback = self._commands.get(message.command)
        if callback is None:
            logger.debug(f"No handler for /{message.command}, ignoring", extra={"bot_id": self.bot_id})
            return

        log_ctx = LogContext(logger, bot_id=self.bot_id, chat_id=message.chat_id, command=message.command)
        log_ctx.info(f"Command received from {message.sender_name or 'unknown sender'}")

        ctx = CommandContext(
            message,
            self._sender_for(message),
            bot_name=self.bot_name,
            max_reply_chars=settings.max_reply_chars,
        )
        await callback(ctx)

    def _sender_for(self, message: InboundCommand):
        # Quote the command in group chats so replies are attributable
        reply_to = message.message_id if message.chat_type not in (None, "private") else None

        async def send(text: str) -> None:
            await send_text_message(message.chat_id, text, self._token, reply_to_message_id=reply_to)

        return send


class TelegramConnectivity(ConnectivityAdapter):
    """Connectivity adapter backed by the Telegram Bot API (long polling)."""

    def __init__(self, poll_timeout: int | None = None):
        self.poll_timeout = poll_timeout

    async def verify_credential(self, credential: str) -> dict[str, Any]:
        try:
            me = await get_me(credential)
        except TelegramSendError as exc:
            raise InvalidCredentialError("Invalid Telegram token.") from exc
        if not me.get("is_bot", True):
            raise InvalidCredentialError("Token does not belong to a bot")
        return me

    async def open_session(
        self,
        bot_id: str,
        credential: str,
        commands: Mapping[str, CommandCallback],
        *,
        bot_name: str = "",
    ) -> TelegramBotSession:
        try:
            me = await get_me(credential)
            await delete_webhook(credential)
        except TelegramSendError as exc:
            raise SessionOpenError(f"Telegram session could not be opened: {exc.description}") from exc

        try:
            await set_my_commands(credential, sorted(commands))
        except TelegramSendError as exc:
            logger.warning(f"Could not publish command menu: {exc}", extra={"bot_id": bot_id})

        session = TelegramBotSession(
            bot_id,
            credential,
            commands,
            username=me.get("username"),
            bot_name=bot_name,
            poll_timeout=self.poll_timeout,
        )
        session.start()
        return session
