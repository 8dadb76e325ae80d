# bothost/core/registry.py
"""
Bot registry: the single owner of bot records and command tables.

Every mutating operation runs under one ``asyncio.Lock`` and ends with a
whole-snapshot save, so the store only ever has one writer.  Failed saves
are logged; the in-memory state stays authoritative for this process.

Usage at startup::

    registry = BotRegistry(TelegramConnectivity(), JsonFileSnapshotStore.from_settings())
    await registry.load()       # restores bots persisted as running
    ...
    await registry.shutdown()   # closes sessions, keeps persisted statuses
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any

from bothost.config import settings
from bothost.core.actions import compile_logic, normalize_command_name
from bothost.core.dispatcher import START_COMMAND
from bothost.core.domain import BotRecord, BotStatus, BotSummary
from bothost.core.errors import (
    BotNotFoundError,
    CommandNotFoundError,
    InvalidCredentialError,
    PersistenceError,
    SessionOpenError,
)
from bothost.core.lifecycle import LifecycleController
from bothost.core.ports import ConnectivityAdapter, SnapshotStore
from bothost.infra.logging_config import get_logger
from bothost.infra.metrics import AppMetrics

logger = get_logger(__name__)


def new_bot_id() -> str:
    return f"bot_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class StartResult:
    """Outcome of a start/stop/toggle: where the bot ended up and why."""
    status: BotStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BotRegistry:

    def __init__(
        self,
        connectivity: ConnectivityAdapter,
        store: SnapshotStore,
        controller: LifecycleController | None = None,
        *,
        credential_check_timeout: float | None = None,
    ):
        self.connectivity = connectivity
        self.store = store
        self.controller = controller or LifecycleController(connectivity)
        self.credential_check_timeout = (
            credential_check_timeout or settings.credential_check_timeout_seconds
        )
        self._bots: dict[str, BotRecord] = {}
        self._commands: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self) -> list[BotSummary]:
        return [
            BotSummary(id=r.id, name=r.display_name, status=r.status, username=r.username)
            for r in list(self._bots.values())
        ]

    def get(self, bot_id: str) -> BotRecord:
        record = self._bots.get(bot_id)
        if record is None:
            raise BotNotFoundError(bot_id)
        return record

    def status(self, bot_id: str) -> BotStatus:
        return self.get(bot_id).status

    def get_commands(self, bot_id: str) -> dict[str, Any]:
        """Copy of the bot's command table; empty for unknown bots."""
        return dict(self._commands.get(bot_id, {}))

    # ------------------------------------------------------------------
    # Bots
    # ------------------------------------------------------------------

    async def create(self, credential: str, display_name: str = "") -> str:
        """
        Register a new (stopped) bot after a live credential check.

        Raises:
            InvalidCredentialError: rejected, unreachable or timed out.
        """
        credential = (credential or "").strip()
        if not credential:
            raise InvalidCredentialError("Credential is required")

        try:
            me = await asyncio.wait_for(
                self.connectivity.verify_credential(credential),
                timeout=self.credential_check_timeout,
            )
        except InvalidCredentialError:
            raise
        except asyncio.TimeoutError as exc:
            raise InvalidCredentialError("Credential check timed out") from exc
        except Exception as exc:
            raise InvalidCredentialError(f"Credential check failed: {exc}") from exc

        username = (me or {}).get("username")
        async with self._lock:
            bot_id = new_bot_id()
            while bot_id in self._bots:
                bot_id = new_bot_id()
            name = (display_name or "").strip() or username or bot_id
            self._bots[bot_id] = BotRecord(
                id=bot_id,
                credential=credential,
                display_name=name,
                username=username,
            )
            self._commands[bot_id] = {START_COMMAND: settings.default_start_greeting}
            self._persist()

        logger.info(f"Bot '{name}' created", extra={"bot_id": bot_id})
        return bot_id

    async def delete(self, bot_id: str) -> None:
        async with self._lock:
            record = self.get(bot_id)
            await self.controller.stop(record)
            del self._bots[bot_id]
            self._commands.pop(bot_id, None)
            self._persist()
        AppMetrics.forget_bot(bot_id)
        logger.info(f"Bot '{record.display_name}' deleted", extra={"bot_id": bot_id})

    async def start(self, bot_id: str) -> StartResult:
        async with self._lock:
            return await self._start_locked(self.get(bot_id))

    async def stop(self, bot_id: str) -> StartResult:
        async with self._lock:
            record = self.get(bot_id)
            if await self.controller.stop(record):
                self._persist()
            return StartResult(record.status)

    async def toggle(self, bot_id: str) -> StartResult:
        async with self._lock:
            record = self.get(bot_id)
            if record.status == BotStatus.RUNNING:
                await self.controller.stop(record)
                self._persist()
                return StartResult(record.status)
            return await self._start_locked(record)

    async def _start_locked(self, record: BotRecord) -> StartResult:
        try:
            started = await self.controller.start(record, self._commands.get(record.id, {}))
        except SessionOpenError as exc:
            self._persist()
            return StartResult(record.status, str(exc))
        if started:
            self._persist()
        return StartResult(record.status)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def set_command(self, bot_id: str, name: str, logic: Any) -> str:
        """
        Insert or overwrite a command; restarts the bot if it is running.

        Returns the normalized command name.

        Raises:
            BotNotFoundError: unknown bot.
            InvalidCommandError: empty/invalid name or logic.
        """
        async with self._lock:
            self.get(bot_id)
            command = normalize_command_name(name)
            compile_logic(logic)
            self._commands.setdefault(bot_id, {})[command] = logic
            await self._apply_table_change(bot_id)
            self._persist()
        return command

    async def remove_command(self, bot_id: str, name: str) -> str:
        async with self._lock:
            self.get(bot_id)
            command = (name or "").strip().lstrip("/")
            table = self._commands.get(bot_id, {})
            if command not in table:
                raise CommandNotFoundError(bot_id, command)
            del table[command]
            await self._apply_table_change(bot_id)
            self._persist()
        AppMetrics.forget_command(bot_id, command)
        return command

    async def _apply_table_change(self, bot_id: str) -> None:
        record = self._bots[bot_id]
        if record.status != BotStatus.RUNNING:
            return
        logger.info(f"Restarting bot '{record.display_name}' to apply command changes", extra={"bot_id": bot_id})
        try:
            await self.controller.restart(record, self._commands.get(bot_id, {}))
        except SessionOpenError as exc:
            logger.error(f"Restart after command change failed: {exc}", extra={"bot_id": bot_id})

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def load(self, restore: bool = True) -> int:
        """
        Read the snapshot into memory (once, at process start).

        Returns the number of bots loaded.
        """
        bots_doc, commands_doc = self.store.load()

        async with self._lock:
            self._bots.clear()
            self._commands.clear()
            for bot_id, entry in bots_doc.items():
                credential = entry.get("credential") or entry.get("token")
                if not credential:
                    logger.warning(f"Snapshot entry {bot_id} has no credential, skipping")
                    continue
                self._bots[bot_id] = BotRecord(
                    id=bot_id,
                    credential=str(credential),
                    display_name=str(entry.get("name") or bot_id),
                    status=BotStatus.parse(entry.get("status")),
                )
                self._commands[bot_id] = dict(commands_doc.get(bot_id) or {})

        if restore:
            await self.restore()
        return len(self._bots)

    async def restore(self) -> int:
        """
        Start every bot whose persisted status is running.  Returns how many came up.

        Sessions are opened concurrently, so one unreachable bot does not
        delay the others.  Bots that fail to open are left stopped and the
        snapshot is saved once at the end.
        """
        async with self._lock:
            pending = [r for r in self._bots.values() if r.status == BotStatus.RUNNING and not r.is_live]
            if not pending:
                return 0

            results = await asyncio.gather(
                *(self.controller.start(r, self._commands.get(r.id, {})) for r in pending),
                return_exceptions=True,
            )
            started = 0
            for record, result in zip(pending, results):
                if isinstance(result, SessionOpenError):
                    continue
                if isinstance(result, BaseException):
                    raise result
                if record.is_live:
                    started += 1
            self._persist()

        logger.info(f"Restored {started}/{len(pending)} running bot(s)")
        return started

    async def shutdown(self) -> None:
        """Close every live session without persisting status changes."""
        async with self._lock:
            for record in self._bots.values():
                await self.controller.detach(record)
        logger.info("All bot sessions closed")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        bots = {bot_id: r.to_snapshot() for bot_id, r in self._bots.items()}
        commands = {bot_id: dict(self._commands.get(bot_id, {})) for bot_id in self._bots}
        try:
            self.store.save(bots, commands)
        except PersistenceError as exc:
            logger.error(f"⚠️ {exc} (state kept in memory, will be lost on restart)")
