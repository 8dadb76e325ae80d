# bothost/infra/logging_config.py
"""
Logging for the supervisor.

Two output formats: JSON lines in production, coloured single lines in
development.  Both formats:

* lift the supervisor context fields (bot, chat, command, request) out of
  ``extra=`` into the output,
* mask chat ids,
* redact Telegram bot tokens from messages and tracebacks.  Tokens end up
  in Bot API URLs (``/bot<token>/getMe``), so any aiohttp error can carry
  one.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone


_CONTEXT_FIELDS = ("bot_id", "chat_id", "command", "request_id")
_HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")

# <numeric bot id>:<secret>, as issued by BotFather
_TOKEN_RE = re.compile(r"(?<![0-9])([0-9]{5,}):[A-Za-z0-9_-]{20,}")


def redact_credentials(text: str) -> str:
    """Replace the secret half of every bot token in ``text`` with ``***``."""
    return _TOKEN_RE.sub(r"\1:***", text)


def mask_chat_id(chat_id: str) -> str:
    """Shorten a chat id for logs: ``123456789`` → ``1234***``."""
    return chat_id[:4] + "***" if len(chat_id) > 4 else chat_id


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_credentials(record.getMessage()),
        }

        for name in _CONTEXT_FIELDS + _HTTP_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            entry[name] = mask_chat_id(str(value)) if name == "chat_id" else value

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.module}.{record.funcName}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = redact_credentials(self.formatException(record.exc_info))

        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        tags = []
        if getattr(record, "request_id", None):
            tags.append(f"req={str(record.request_id)[:8]}")
        if getattr(record, "bot_id", None):
            tags.append(f"bot={record.bot_id}")
        if getattr(record, "chat_id", None):
            tags.append(f"chat={mask_chat_id(str(record.chat_id))}")
        if getattr(record, "command", None):
            tags.append(f"cmd=/{record.command}")
        context = f" [{' '.join(tags)}]" if tags else ""

        line = (
            f"{color}[{_timestamp(record):%Y-%m-%d %H:%M:%S}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {redact_credentials(record.getMessage())}"
        )
        if record.exc_info:
            line = f"{line}\n{redact_credentials(self.formatException(record.exc_info))}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure application logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: If True, use JSON format (for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())
    root_logger.addHandler(handler)

    # uvicorn's access log duplicates RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps supervisor context onto every record.

        log_ctx = LogContext(logger, bot_id=record.id, command="echo")
        log_ctx.info("dispatched")
    """

    def __init__(
            self,
            logger: logging.Logger,
            bot_id: str | None = None,
            chat_id: str | None = None,
            command: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            k: v for k, v in {
                "bot_id": bot_id,
                "chat_id": chat_id,
                "command": command,
                "request_id": request_id,
            }.items() if v is not None
        }

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = {**kwargs.pop("extra", {}), **self.context}
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)
