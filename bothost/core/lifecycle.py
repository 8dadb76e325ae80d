# bothost/core/lifecycle.py
"""
Per-bot lifecycle state machine: stopped <-> running.

The controller is the only code that attaches or detaches sessions, so it
alone guarantees at most one live session per bot id.  It mutates the
record it is handed; persisting the result is the registry's job.
"""
from __future__ import annotations

import asyncio
from typing import Any, Mapping

from bothost.config import settings
from bothost.core.dispatcher import CommandDispatcher
from bothost.core.domain import BotRecord, BotStatus
from bothost.core.errors import SessionOpenError
from bothost.core.ports import ConnectivityAdapter
from bothost.infra.logging_config import get_logger, LogContext
from bothost.infra.metrics import AppMetrics

logger = get_logger(__name__)


class LifecycleController:

    def __init__(
        self,
        connectivity: ConnectivityAdapter,
        dispatcher: CommandDispatcher | None = None,
        *,
        stop_grace_seconds: float | None = None,
    ):
        self.connectivity = connectivity
        self.dispatcher = dispatcher or CommandDispatcher()
        self.stop_grace_seconds = (
            stop_grace_seconds
            if stop_grace_seconds is not None
            else settings.session_stop_grace_seconds
        )

    async def start(self, record: BotRecord, commands: Mapping[str, Any]) -> bool:
        """
        Open a session for ``record`` bound to a snapshot of ``commands``.

        Returns False (no-op) if the bot already has a live session.

        Raises:
            SessionOpenError: the session could not be opened; the record
                is left stopped.
        """
        if record.is_live:
            logger.debug(f"Bot {record.id} already running, start ignored")
            return False

        log_ctx = LogContext(logger, bot_id=record.id)
        callbacks = self.dispatcher.bind(record, commands)

        try:
            session = await self.connectivity.open_session(
                record.id,
                record.credential,
                callbacks,
                bot_name=record.display_name,
            )
        except Exception as exc:
            record.session = None
            record.status = BotStatus.STOPPED
            AppMetrics.session_failed(record.id)
            log_ctx.error(f"Could not start bot '{record.display_name}': {exc}")
            if isinstance(exc, SessionOpenError):
                raise
            raise SessionOpenError(str(exc) or exc.__class__.__name__) from exc

        record.session = session
        record.status = BotStatus.RUNNING
        username = getattr(session, "username", None)
        if username:
            record.username = username
        AppMetrics.session_started(record.id)
        log_ctx.info(f"🚀 Bot '{record.display_name}' is now running ({len(callbacks)} commands)")
        return True

    async def stop(self, record: BotRecord) -> bool:
        """
        Close the bot's session.  Returns False (no-op) if already stopped.

        Never raises for a session that fails to close: the handle is
        discarded regardless.
        """
        if not record.is_live and record.status == BotStatus.STOPPED:
            return False

        await self._close_session(record)
        record.status = BotStatus.STOPPED
        AppMetrics.session_stopped(record.id)
        logger.info(f"🛑 Bot '{record.display_name}' has been stopped", extra={"bot_id": record.id})
        return True

    async def restart(self, record: BotRecord, commands: Mapping[str, Any]) -> bool:
        """Stop then start, so the current table is what the next event sees."""
        await self.stop(record)
        return await self.start(record, commands)

    async def detach(self, record: BotRecord) -> None:
        """Close the session for process shutdown, keeping ``status`` as is."""
        if record.is_live:
            await self._close_session(record)

    async def _close_session(self, record: BotRecord) -> None:
        session, record.session = record.session, None
        if session is None:
            return
        grace = self.stop_grace_seconds
        try:
            # Small margin over the session's own grace period.
            await asyncio.wait_for(session.close(grace), timeout=grace + 1.0)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                f"Session for bot {record.id} did not close cleanly, discarding it: "
                f"{exc.__class__.__name__}: {exc}",
                extra={"bot_id": record.id},
            )
