# bothost/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from bothost.core.ports import BotSession


# ============================================================================
# BOT LIFECYCLE
# ============================================================================

class BotStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"

    @classmethod
    def parse(cls, raw: Any) -> "BotStatus":
        """Parse a persisted status, accepting the legacy ``RUN``/``STOP`` spelling."""
        value = str(raw or "").strip().lower()
        if value in ("running", "run"):
            return cls.RUNNING
        return cls.STOPPED


@dataclass
class BotRecord:
    """
    One configured bot.

    ``session`` and ``username`` are transient: they are never written to
    the snapshot.  ``status == RUNNING`` with ``session is None`` only
    exists between snapshot load and the startup restore.
    """
    id: str
    credential: str
    display_name: str
    status: BotStatus = BotStatus.STOPPED
    session: Optional["BotSession"] = field(default=None, repr=False, compare=False)
    username: Optional[str] = field(default=None, compare=False)

    @property
    def is_live(self) -> bool:
        return self.session is not None

    def to_snapshot(self) -> dict:
        return {
            "credential": self.credential,
            "name": self.display_name,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class BotSummary:
    """Read-only view of a bot for listings (no credential, no session)."""
    id: str
    name: str
    status: BotStatus
    username: Optional[str] = None


# ============================================================================
# INBOUND COMMANDS
# ============================================================================

@dataclass
class InboundCommand:
    """
    Normalized inbound command invocation from a chat.

    ``command`` has no leading slash and no ``@BotName`` suffix.
    """
    bot_id: str
    command: str
    chat_id: str
    message_id: str
    text: str = ""
    args: list[str] = field(default_factory=list)
    chat_type: Optional[str] = None
    user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    date: Optional[int] = None

    @property
    def args_text(self) -> str:
        return " ".join(self.args)

    @property
    def sender_name(self) -> str:
        """Display name: "Ivan Petrov", falling back to "@username"."""
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        if name:
            return name
        if self.username:
            return f"@{self.username}"
        return ""


SendText = Callable[[str], Awaitable[Any]]


class CommandContext:
    """
    The only capability a command handler gets: reply to the originating
    chat and read message metadata.
    """

    def __init__(
        self,
        message: InboundCommand,
        send: SendText,
        *,
        bot_name: str = "",
        max_reply_chars: int = 4096,
    ):
        self.message = message
        self.bot_name = bot_name
        self._send = send
        self._max_reply_chars = max_reply_chars

    @property
    def bot_id(self) -> str:
        return self.message.bot_id

    @property
    def command(self) -> str:
        return self.message.command

    @property
    def chat_id(self) -> str:
        return self.message.chat_id

    @property
    def max_reply_chars(self) -> int:
        return self._max_reply_chars

    @property
    def metadata(self) -> dict[str, Any]:
        """Message metadata exposed to templates and webhook actions."""
        m = self.message
        return {
            "bot_id": m.bot_id,
            "bot_name": self.bot_name,
            "command": m.command,
            "text": m.text,
            "args": list(m.args),
            "args_text": m.args_text,
            "chat_id": m.chat_id,
            "chat_type": m.chat_type,
            "message_id": m.message_id,
            "user_id": m.user_id,
            "first_name": m.first_name,
            "last_name": m.last_name,
            "username": m.username,
            "sender_name": m.sender_name,
            "date": m.date,
        }

    async def reply(self, text: str) -> None:
        """Send ``text`` to the originating chat (empty replies are skipped)."""
        if not text or not text.strip():
            return
        if len(text) > self._max_reply_chars:
            text = text[: self._max_reply_chars - 1] + "…"
        await self._send(text)
