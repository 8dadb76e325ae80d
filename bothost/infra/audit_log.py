# bothost/infra/audit_log.py
"""
Audit logging for management operations.

Records bot and command management actions to a dedicated audit logger
(separate from the application log) with structured context.

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

# Dedicated audit logger, configurable independently of the app logger.
_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    bot_id: str | None = None,
    command: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "bot.create", "command.set")
        bot_id: Bot affected (if applicable)
        command: Command name affected (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "bot_id": bot_id or "",
        "audit_command": command or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} bot={bot_id or '-'} command={command or '-'} {detail}",
        extra=record,
    )
