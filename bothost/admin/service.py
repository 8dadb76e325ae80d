# bothost/admin/service.py
"""
Admin Application Service: the single orchestration point for all
bot-management operations.

Responsibilities:
    1. Validate requests (via Pydantic models)
    2. Call the bot registry (which persists and reconciles sessions)
    3. Emit audit events
    4. Map supervisor errors to ``AdminError`` subtypes
    5. Return DTOs, **never** credentials

The transport layer (http_app.py routes) is a thin adapter:
    parse request → call service → map AdminError → return JSON.
"""
from __future__ import annotations

import asyncio

from bothost.admin.errors import ValidationError, NotFoundError
from bothost.admin.models import (
    BotInfo,
    CommandTable,
    CreateBotRequest,
    OkResponse,
    SetCommandRequest,
)
from bothost.core.errors import (
    InvalidCommandError,
    InvalidCredentialError,
    NotFoundError as SupervisorNotFoundError,
)
from bothost.core.registry import BotRegistry, StartResult
from bothost.infra.audit_log import audit_event
from bothost.infra.logging_config import get_logger

logger = get_logger(__name__)


def build_default_registry() -> BotRegistry:
    """Registry wired to Telegram and the JSON snapshot files from settings."""
    from bothost.infra.snapshot_store import JsonFileSnapshotStore
    from bothost.transport.telegram_connectivity import TelegramConnectivity

    return BotRegistry(TelegramConnectivity(), JsonFileSnapshotStore.from_settings())


class AdminApplicationService:
    """
    Orchestrates all admin-facing bot operations.
    """

    def __init__(self, registry: BotRegistry | None = None) -> None:
        self._registry = registry
        self._restore_task: asyncio.Task | None = None

    @property
    def registry(self) -> BotRegistry:
        if self._registry is None:
            self._registry = build_default_registry()
        return self._registry

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> int:
        """
        Load the snapshot and restart bots persisted as running.

        The restart runs in a background task so the API serves requests
        while sessions are opening.
        """
        count = await self.registry.load(restore=False)
        logger.info(f"Bot registry loaded: {count} bot(s)")
        self._restore_task = asyncio.create_task(self._restore(), name="restore_bots")
        return count

    async def _restore(self) -> None:
        try:
            await self.registry.restore()
        except Exception as e:
            logger.error(f"Restoring running bots failed: {e}", exc_info=True)

    async def shutdown(self) -> None:
        if self._restore_task is not None and not self._restore_task.done():
            self._restore_task.cancel()
            try:
                await self._restore_task
            except asyncio.CancelledError:
                pass
        self._restore_task = None
        await self.registry.shutdown()

    # ------------------------------------------------------------------
    # Bots
    # ------------------------------------------------------------------

    async def list_bots(self) -> list[BotInfo]:
        return [
            BotInfo(id=s.id, name=s.name, status=s.status.value, username=s.username)
            for s in self.registry.list()
        ]

    async def get_bot(self, bot_id: str) -> BotInfo:
        try:
            record = self.registry.get(bot_id)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))
        return BotInfo(
            id=record.id,
            name=record.display_name,
            status=record.status.value,
            username=record.username,
        )

    async def create_bot(self, req: CreateBotRequest) -> OkResponse:
        """
        Verify the credential against the platform and register a stopped bot.

        Emits audit event on success.
        """
        try:
            bot_id = await self.registry.create(req.credential, req.name)
        except InvalidCredentialError as exc:
            audit_event("bot.create_rejected", detail=str(exc))
            raise ValidationError(str(exc))

        audit_event("bot.create", bot_id=bot_id, detail=f"name={req.name or '-'}")
        return OkResponse(bot_id=bot_id, status="stopped")

    async def delete_bot(self, bot_id: str) -> OkResponse:
        try:
            await self.registry.delete(bot_id)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))

        audit_event("bot.delete", bot_id=bot_id)
        return OkResponse(bot_id=bot_id)

    async def start_bot(self, bot_id: str) -> OkResponse:
        try:
            result = await self.registry.start(bot_id)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))
        return self._lifecycle_response("bot.start", bot_id, result)

    async def stop_bot(self, bot_id: str) -> OkResponse:
        try:
            result = await self.registry.stop(bot_id)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))
        return self._lifecycle_response("bot.stop", bot_id, result)

    async def toggle_bot(self, bot_id: str) -> OkResponse:
        try:
            result = await self.registry.toggle(bot_id)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))
        return self._lifecycle_response("bot.toggle", bot_id, result)

    @staticmethod
    def _lifecycle_response(action: str, bot_id: str, result: StartResult) -> OkResponse:
        audit_event(
            action,
            bot_id=bot_id,
            detail=f"status={result.status.value}" + (f" error={result.error}" if result.error else ""),
        )
        return OkResponse(
            ok=result.ok,
            bot_id=bot_id,
            status=result.status.value,
            detail=result.error,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def list_commands(self, bot_id: str) -> CommandTable:
        """Command table for ``bot_id`` (empty for unknown bots, not an error)."""
        return CommandTable(bot_id=bot_id, commands=self.registry.get_commands(bot_id))

    async def set_command(self, bot_id: str, name: str, req: SetCommandRequest) -> OkResponse:
        """
        Insert or overwrite a command.  A running bot is restarted so the
        new logic handles the next invocation.
        """
        try:
            command = await self.registry.set_command(bot_id, name, req.logic)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))
        except InvalidCommandError as exc:
            raise ValidationError(str(exc))

        status = self.registry.status(bot_id)
        audit_event("command.set", bot_id=bot_id, command=command, detail=f"status={status.value}")
        return OkResponse(bot_id=bot_id, command=command, status=status.value)

    async def remove_command(self, bot_id: str, name: str) -> OkResponse:
        try:
            command = await self.registry.remove_command(bot_id, name)
        except SupervisorNotFoundError as exc:
            raise NotFoundError(str(exc))

        status = self.registry.status(bot_id)
        audit_event("command.remove", bot_id=bot_id, command=command)
        return OkResponse(bot_id=bot_id, command=command, status=status.value)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_svc: AdminApplicationService | None = None


def get_admin_service() -> AdminApplicationService:
    """Get the global AdminApplicationService singleton."""
    global _svc
    if _svc is None:
        _svc = AdminApplicationService()
    return _svc


def set_admin_service(svc: AdminApplicationService | None) -> None:
    """Replace the singleton (tests inject a service with fake connectivity)."""
    global _svc
    _svc = svc


def reset_admin_service() -> None:
    """Reset the singleton (for testing)."""
    set_admin_service(None)
