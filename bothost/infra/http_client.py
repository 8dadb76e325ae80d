# bothost/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **telegram** – Bot API calls, including long polls
  (no total timeout, connect=5 s, unbounded pool since every running bot
  holds one connection open; callers set per-request timeouts)
- **webhook**  – outbound calls made by ``webhook`` command actions
  (total=30 s, connect=5 s, pool limit=20)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from bothost.infra.logging_config import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Internal state
# ---------------------------------------------------------------------------

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_telegram_session() -> aiohttp.ClientSession:
    """Session for Telegram Bot API calls (one long poll per running bot)."""
    return _get_or_create(
        "telegram",
        aiohttp.ClientTimeout(total=None, connect=5),
        limit=0,
    )


def get_webhook_session() -> aiohttp.ClientSession:
    """Session for ``webhook`` command actions."""
    return _get_or_create(
        "webhook",
        aiohttp.ClientTimeout(total=30, connect=5),
        limit=20,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
