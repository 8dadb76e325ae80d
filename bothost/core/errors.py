# bothost/core/errors.py
"""
Supervisor error taxonomy.

Caller-facing (raised out of ``BotRegistry`` operations):
    InvalidCredentialError, BotNotFoundError, CommandNotFoundError,
    InvalidCommandError

Contained (logged, never crash a session or the process):
    SessionOpenError      – bot stays stopped, start reports the failure
    HandlerExecutionError – reported to the originating conversation
    PersistenceError      – in-memory state stays authoritative
"""
from __future__ import annotations


class SupervisorError(Exception):
    """Base class for all supervisor errors."""


class InvalidCredentialError(SupervisorError):
    """Credential rejected by the messaging platform (or the check timed out)."""


class NotFoundError(SupervisorError):
    """Unknown bot or command."""


class BotNotFoundError(NotFoundError):
    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        super().__init__(f"Bot '{bot_id}' not found")


class CommandNotFoundError(NotFoundError):
    def __init__(self, bot_id: str, command: str):
        self.bot_id = bot_id
        self.command = command
        super().__init__(f"Command '/{command}' not found for bot '{bot_id}'")


class InvalidCommandError(SupervisorError):
    """Empty/invalid command name or handler logic that does not compile."""


class SessionOpenError(SupervisorError):
    """Connectivity adapter could not establish a session."""


class HandlerExecutionError(SupervisorError):
    """Command handler logic failed while running."""


class PersistenceError(SupervisorError):
    """Snapshot could not be read or written."""
