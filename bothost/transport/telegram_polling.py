# bothost/transport/telegram_polling.py
"""
Telegram Bot API long-polling loop, one per running bot.

Usage:
    poller = TelegramPoller(bot_id, token, handle_update)
    poller.start()
    # ... on stop:
    await poller.stop(grace_seconds=5)
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from bothost.config import settings
from bothost.transport.telegram_sender import get_updates, TelegramSendError
from bothost.infra.logging_config import get_logger

logger = get_logger(__name__)

UpdateHandler = Callable[[dict], Awaitable[None]]


def _log_task_exception(task: asyncio.Task) -> None:
    """Callback: log unhandled exceptions from fire-and-forget tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class TelegramPoller:
    """
    Long-polling loop for receiving Telegram updates.

    Calls getUpdates with a long-poll timeout and hands each update to
    ``handle_update`` in its own task, in arrival order, so a slow handler
    never holds up the loop.

    Error handling:
    - On API errors: exponential backoff (1s → 2s → 4s → ... → 30s max)
    - On handler errors: logged by the task callback, the loop continues
    - On stop: the poll task and in-flight handler tasks are cancelled;
      anything still running after the grace period is abandoned
    """

    def __init__(
        self,
        bot_id: str,
        token: str,
        handle_update: UpdateHandler,
        poll_timeout: int | None = None,
    ):
        self.bot_id = bot_id
        self.poll_timeout = poll_timeout or settings.telegram_poll_timeout
        self._token = token
        self._handle_update = handle_update
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._offset: int | None = None
        self._running = False
        self._backoff = 1  # seconds, doubles on error, max 30

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            logger.warning(f"Telegram poller for bot {self.bot_id} already running")
            return

        self._running = True
        self._task = asyncio.create_task(
            self._poll_loop(),
            name=f"tg_poller_{self.bot_id}",
        )
        self._task.add_done_callback(_log_task_exception)
        logger.info(
            f"Telegram poller started (timeout={self.poll_timeout}s)",
            extra={"bot_id": self.bot_id},
        )

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Cancel the loop and in-flight handlers, waiting at most ``grace_seconds``."""
        self._running = False
        tasks = [t for t in (self._task, *self._inflight) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=max(grace_seconds, 0))
            if pending:
                logger.warning(
                    f"Telegram poller: {len(pending)} task(s) still running after "
                    f"{grace_seconds:g}s grace period, abandoning them",
                    extra={"bot_id": self.bot_id},
                )

        self._task = None
        self._inflight.clear()
        logger.info("Telegram poller stopped", extra={"bot_id": self.bot_id})

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            try:
                updates = await get_updates(
                    self._token,
                    offset=self._offset,
                    timeout=self.poll_timeout,
                )

                # Reset backoff on successful poll
                self._backoff = 1

                for update in updates:
                    # Advance offset to acknowledge this update
                    update_id = update.get("update_id", 0)
                    self._offset = update_id + 1
                    self._spawn(update, update_id)

            except TelegramSendError as e:
                if not self._running:
                    break
                if e.is_auth_error:
                    logger.error(
                        f"Telegram polling: token rejected ({e.description}), backing off {self._backoff}s",
                        extra={"bot_id": self.bot_id},
                    )
                else:
                    logger.error(
                        f"Telegram polling error: {e}, backing off {self._backoff}s",
                        extra={"bot_id": self.bot_id},
                    )
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, 30)

            except asyncio.CancelledError:
                break

            except Exception as e:
                if not self._running:
                    break
                logger.error(
                    f"Telegram polling unexpected error: {e}",
                    exc_info=True,
                    extra={"bot_id": self.bot_id},
                )
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, 30)

    def _spawn(self, update: dict, update_id: int) -> None:
        task = asyncio.create_task(
            self._handle_update(update),
            name=f"tg_update_{self.bot_id}_{update_id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        task.add_done_callback(_log_task_exception)
