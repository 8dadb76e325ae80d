# bothost/transport/telegram_sender.py
"""
Telegram Bot API client calls.

Every call takes the bot token explicitly: one process talks to the API
on behalf of many bots.

Error classification (TelegramSendError.retryable):
- Token invalid (401)          → NOT retryable (needs a new token)
- Forbidden / bad request      → NOT retryable
- Conflict (409, other poller) → retryable  (backoff then retry)
- Rate limiting (429)          → retryable  (backoff then retry)
- Network / timeout            → retryable  (transient)
- Unknown server error         → retryable  (optimistic)

HTTP session lifecycle:
- Uses the shared telegram session from bothost.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio

import aiohttp

from bothost.config import settings
from bothost.infra.http_client import get_telegram_session
from bothost.infra.logging_config import get_logger, mask_chat_id
from bothost.infra.metrics import inc_counter

logger = get_logger(__name__)

DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=25, connect=5)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bot_url(method: str, token: str) -> str:
    """Build Telegram Bot API URL."""
    return f"{settings.telegram_api_base}/bot{token}/{method}"


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class TelegramSendError(Exception):
    """Error calling the Telegram Bot API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Telegram-specific error code from the response body.
        retryable:  Whether the caller should schedule a retry.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        self.description = message
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 404) or self.error_code in (401, 404)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def get_me(token: str) -> dict:
    """
    Return the bot's own User object (the credential check).

    Raises:
        TelegramSendError: ``is_auth_error`` is True for a bad token
    """
    body = await _call(token, "getMe", {})
    return body.get("result") or {}


async def send_text_message(
    chat_id: str,
    text: str,
    token: str,
    reply_to_message_id: str | None = None,
) -> dict:
    """
    Send a plain-text message via Telegram Bot API.

    Args:
        chat_id: Telegram chat ID (numeric string)
        text: Message text body
        token: Bot token
        reply_to_message_id: Quote this message in the reply

    Returns:
        Telegram API response dict

    Raises:
        TelegramSendError: On API errors (check .retryable before scheduling retry)
    """
    payload: dict = {
        "chat_id": chat_id,
        "text": text,
    }
    if reply_to_message_id:
        payload["reply_parameters"] = {
            "message_id": int(reply_to_message_id),
            "allow_sending_without_reply": True,
        }

    try:
        body = await _call(token, "sendMessage", payload)
    except TelegramSendError:
        inc_counter("telegram_outbound_failed")
        raise

    result = body.get("result", {})
    msg_id = result.get("message_id", "unknown") if isinstance(result, dict) else "ok"
    logger.debug(f"Telegram message sent: to={mask_chat_id(chat_id)}, msg_id={msg_id}")
    inc_counter("telegram_outbound_sent")
    return body


async def delete_webhook(token: str) -> dict:
    """Remove webhook so polling can work."""
    return await _call(token, "deleteWebhook", {})


async def set_my_commands(token: str, commands: list[str]) -> dict:
    """
    Publish the command menu shown by Telegram clients.

    Telegram only accepts lowercase names here; names it would reject are
    left out of the menu (they still work when typed).
    """
    menu = [
        {"command": name, "description": f"/{name}"}
        for name in commands
        if name == name.lower()
    ][:100]
    return await _call(token, "setMyCommands", {"commands": menu})


async def get_updates(
    token: str,
    offset: int | None = None,
    timeout: int = 30,
) -> list[dict]:
    """
    Long-poll for message updates via getUpdates.

    Args:
        token: Bot token
        offset: Identifier of the first update to be returned
        timeout: Long-polling timeout in seconds

    Returns:
        List of Update dicts
    """
    payload: dict = {"timeout": timeout, "allowed_updates": ["message"]}
    if offset is not None:
        payload["offset"] = offset

    body = await _call(
        token,
        "getUpdates",
        payload,
        timeout=aiohttp.ClientTimeout(total=timeout + 10, connect=5),
    )
    return body.get("result", [])


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except Exception:
        logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
        return None


async def _call(
    token: str,
    method: str,
    payload: dict,
    *,
    timeout: aiohttp.ClientTimeout = DEFAULT_TIMEOUT,
) -> dict:
    """
    Execute a Telegram Bot API request with error classification.
    """
    url = _bot_url(method, token)
    try:
        session = get_telegram_session()
        async with session.post(url, json=payload, timeout=timeout) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                return body

            # --- Error path ------------------------------------------------
            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")

            # -- Auth failure: token invalid (DO NOT retry) --------
            if resp.status in (401, 404) or error_code in (401, 404):
                logger.warning(f"Telegram API {method}: token rejected: {error_desc}")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # -- Forbidden / bad request (DO NOT retry) --
            if resp.status in (400, 403):
                logger.warning(f"Telegram API {method}: {error_desc}")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # -- Rate limit / conflicting poller: retry with backoff --------------
            if resp.status in (409, 429):
                logger.warning(f"Telegram API {method}: status={resp.status}, {error_desc}")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

            # -- Anything else: optimistic retry ----------------------------
            logger.error(f"Telegram API {method} error: status={resp.status}, code={error_code}, msg={error_desc}")
            raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

    except TelegramSendError:
        raise
    except asyncio.TimeoutError as exc:
        raise TelegramSendError(0, None, f"{method} timed out", retryable=True) from exc
    except aiohttp.ClientError as exc:
        logger.error(f"Telegram API {method} connection error: {exc}")
        raise TelegramSendError(0, None, str(exc), retryable=True) from exc
