# bothost/core/dispatcher.py
"""
Command dispatcher.

Turns a bot's command table into the callbacks a session invokes.  Every
callback is an error boundary: whatever the handler does, the session
keeps running and other commands keep working.

Built-ins:
- ``start`` falls back to ``settings.default_start_greeting`` when the
  table has no ``start`` entry.
- ``ping`` is always bound and cannot be overridden.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping

from bothost.config import settings
from bothost.core.actions import compile_logic
from bothost.core.domain import BotRecord, CommandContext
from bothost.core.errors import InvalidCommandError
from bothost.core.ports import CommandCallback
from bothost.infra.logging_config import get_logger, LogContext
from bothost.infra.metrics import AppMetrics

logger = get_logger(__name__)

START_COMMAND = "start"
PING_COMMAND = "ping"


async def ping_handler(ctx: CommandContext) -> None:
    """Reply, then report how long that reply took."""
    started = time.monotonic()
    await ctx.reply("🏓 Pong!")
    elapsed_ms = max(0, int((time.monotonic() - started) * 1000))
    await ctx.reply(f"Latency: {elapsed_ms} ms")


async def default_start_handler(ctx: CommandContext) -> None:
    await ctx.reply(settings.default_start_greeting)


class CommandDispatcher:
    """
    Binds command tables to error-contained callbacks.

    Stateless apart from settings: safe to share between bots.
    """

    def __init__(self, handler_timeout: float | None = None):
        self.handler_timeout = handler_timeout or settings.handler_timeout_seconds

    def bind(self, record: BotRecord, commands: Mapping[str, Any]) -> dict[str, CommandCallback]:
        """
        Compile a snapshot of ``commands`` into callbacks keyed by command name.

        The snapshot is taken now: later edits to the table need a restart
        to become visible.
        """
        bound: dict[str, CommandCallback] = {}

        for name, logic in dict(commands).items():
            if name == PING_COMMAND:
                continue
            try:
                action = compile_logic(logic)
            except InvalidCommandError as exc:
                # Stored logic is validated on write; this only happens with
                # hand-edited snapshot files.
                logger.error(
                    f"Skipping /{name} for bot {record.id}: {exc}",
                    extra={"bot_id": record.id, "command": name},
                )
                continue
            bound[name] = self._wrap(record.id, name, action.run)

        if START_COMMAND not in bound:
            bound[START_COMMAND] = self._wrap(record.id, START_COMMAND, default_start_handler)
        bound[PING_COMMAND] = self._wrap(record.id, PING_COMMAND, ping_handler)

        return bound

    def _wrap(self, bot_id: str, name: str, handler: CommandCallback) -> CommandCallback:
        timeout = self.handler_timeout

        async def dispatch(ctx: CommandContext) -> None:
            log_ctx = LogContext(logger, bot_id=bot_id, chat_id=ctx.chat_id, command=name)
            AppMetrics.command_dispatched(bot_id, name)
            try:
                with AppMetrics.track_handler_time(bot_id, name):
                    await asyncio.wait_for(handler(ctx), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                AppMetrics.handler_error(bot_id, name)
                message = str(exc) or exc.__class__.__name__
                if isinstance(exc, asyncio.TimeoutError):
                    message = f"timed out after {timeout:g}s"
                log_ctx.error(f"Command handler failed: {exc.__class__.__name__}: {message}", exc_info=True)
                try:
                    await ctx.reply(f"⚠️ Error in /{name}: {message}")
                except Exception as reply_exc:
                    log_ctx.warning(f"Could not deliver error reply: {reply_exc}")

        dispatch.__name__ = f"dispatch_{name}"
        return dispatch
