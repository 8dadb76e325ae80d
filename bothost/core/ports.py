# bothost/core/ports.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Mapping, Protocol

from bothost.core.domain import CommandContext


CommandCallback = Callable[[CommandContext], Awaitable[None]]


# ============================================================================
# CONNECTIVITY ADAPTER
# ============================================================================

class BotSession(ABC):
    """A live connection for one running bot."""

    @abstractmethod
    async def close(self, grace_seconds: float) -> None:
        """
        Stop receiving events and release the connection.

        Must return within roughly ``grace_seconds``; anything still
        running after that is abandoned.
        """


class ConnectivityAdapter(ABC):
    """Opens sessions against the messaging platform."""

    @abstractmethod
    async def verify_credential(self, credential: str) -> dict[str, Any]:
        """
        Live "who am I" round-trip.

        Returns the platform's description of the bot.
        Raises InvalidCredentialError if the platform rejects the credential.
        """

    @abstractmethod
    async def open_session(
        self,
        bot_id: str,
        credential: str,
        commands: Mapping[str, CommandCallback],
        *,
        bot_name: str = "",
    ) -> BotSession:
        """
        Connect and start delivering inbound commands to ``commands``.

        Commands absent from the mapping are ignored by the session.
        Raises SessionOpenError if the session cannot be established.
        """


# ============================================================================
# SNAPSHOT STORE
# ============================================================================

class SnapshotStore(Protocol):
    def load(self) -> tuple[dict[str, dict], dict[str, dict]]:
        """Return ``(bots, commands)``; missing or malformed documents load as empty."""
        ...

    def save(self, bots: dict[str, dict], commands: dict[str, dict]) -> None:
        """Replace both documents.  Raises PersistenceError on failure."""
        ...
