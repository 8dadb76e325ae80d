# bothost/core/actions.py
"""
Command handler logic.

Operators do not upload code.  A command's logic is either a template
string (rendered and sent as a reply) or a declarative action:

    "Hi {{ first_name }}!"
    {"action": "reply",   "text": "You said: {{ args_text }}"}
    {"action": "lookup",  "key": "{{ args[0] }}",
                          "table": {"red": "#f00", "green": "#0f0"},
                          "default": "Unknown colour"}
    {"action": "webhook", "url": "https://example.com/hook",
                          "reply": "{{ response.text }}", "timeout": 5}

Templates run in a Jinja2 sandbox and only see the message metadata of
``CommandContext.metadata`` (plus ``response`` for webhook replies).
Logic is compiled when it is set, so syntax errors are rejected before
anything is stored.

Rendering happens in a worker thread, so a slow template never stalls the
event loop.  The sandbox also bounds the work a template can ask for:
``range()`` size, total loop iterations per render, sequence repetition
and exponent size.  Output stops being collected once it exceeds the
reply limit.
"""
from __future__ import annotations

import asyncio
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Iterator, Optional
from urllib.parse import urlparse

import aiohttp
from jinja2 import StrictUndefined, Template, TemplateError, UndefinedError, nodes
from jinja2.sandbox import SandboxedEnvironment, SecurityError

from bothost.config import settings
from bothost.core.domain import CommandContext
from bothost.core.errors import HandlerExecutionError, InvalidCommandError
from bothost.infra.http_client import get_webhook_session
from bothost.infra.logging_config import get_logger

logger = get_logger(__name__)

# Telegram accepts 1-32 chars; names are matched case-sensitively.
COMMAND_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,32}$")

# Template work limits
MAX_RANGE = 1000
MAX_LOOP_ITERATIONS = 100_000
MAX_SEQUENCE_LENGTH = 100_000
MAX_EXPONENT = 128
MAX_INT_BITS = 100_000

LOOP_GUARD_FILTER = "_loop_guard"

_render_state = threading.local()


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------

class RenderBudget:
    """Loop iterations left for one render.  ``cancel()`` stops it at the next iteration."""

    def __init__(self, iterations: int = MAX_LOOP_ITERATIONS):
        self.remaining = iterations
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def tick(self) -> None:
        if self._cancelled.is_set():
            raise SecurityError("rendering was cancelled")
        self.remaining -= 1
        if self.remaining < 0:
            raise SecurityError(f"template exceeded {MAX_LOOP_ITERATIONS} loop iterations")


def _loop_guard(iterable: Iterable[Any]) -> Iterator[Any]:
    budget: Optional[RenderBudget] = getattr(_render_state, "budget", None)
    for item in iterable:
        if budget is not None:
            budget.tick()
        yield item


def _bounded_range(*args: int) -> range:
    rng = range(*args)
    if len(rng) > MAX_RANGE:
        raise SecurityError(f"range() is limited to {MAX_RANGE} items")
    return rng


def _check_repeat(seq: Any, times: Any) -> None:
    if isinstance(seq, (str, list, tuple)) and isinstance(times, int):
        if len(seq) * times > MAX_SEQUENCE_LENGTH:
            raise SecurityError(f"sequence repetition is limited to {MAX_SEQUENCE_LENGTH} items")


class BoundedSandbox(SandboxedEnvironment):
    """``SandboxedEnvironment`` with limits on CPU- and memory-heavy operations."""

    intercepted_binops = frozenset(["*", "**"])

    def __init__(self, **options: Any):
        super().__init__(**options)
        self.globals["range"] = _bounded_range
        self.filters[LOOP_GUARD_FILTER] = _loop_guard

    def call_binop(self, context, operator, left, right):
        if operator == "*":
            _check_repeat(left, right)
            _check_repeat(right, left)
        elif operator == "**" and isinstance(right, (int, float)):
            if abs(right) > MAX_EXPONENT:
                raise SecurityError(f"exponent is limited to {MAX_EXPONENT}")
            if isinstance(left, int) and abs(left).bit_length() * abs(right) > MAX_INT_BITS:
                raise SecurityError("result of ** is too large")
        return super().call_binop(context, operator, left, right)


_env = BoundedSandbox(undefined=StrictUndefined, autoescape=False)


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

def normalize_command_name(name: Any) -> str:
    """Strip whitespace and leading ``/`` and validate the result."""
    if not isinstance(name, str):
        raise InvalidCommandError("Command name is required")
    normalized = name.strip().lstrip("/")
    if not normalized:
        raise InvalidCommandError("Command name is required")
    if not COMMAND_NAME_RE.match(normalized):
        raise InvalidCommandError(
            f"Invalid command name '{normalized}': use 1-32 letters, digits or underscores"
        )
    return normalized


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def _compile_template(source: Any, field_name: str) -> Template:
    if not isinstance(source, str):
        raise InvalidCommandError(f"'{field_name}' must be a string template")
    try:
        ast = _env.parse(source)
    except TemplateError as exc:
        raise InvalidCommandError(f"Invalid template in '{field_name}': {exc}") from exc

    # Every {% for %} iterates through the loop guard so the render budget applies.
    for loop in list(ast.find_all(nodes.For)):
        if loop.recursive:
            raise InvalidCommandError(f"Invalid template in '{field_name}': recursive loops are not allowed")
        loop.iter = nodes.Filter(loop.iter, LOOP_GUARD_FILTER, [], [], None, None, lineno=loop.lineno)
    ast.set_environment(_env)

    try:
        return _env.from_string(ast)
    except TemplateError as exc:
        raise InvalidCommandError(f"Invalid template in '{field_name}': {exc}") from exc


def _render_sync(
    template: Template,
    variables: dict[str, Any],
    budget: RenderBudget,
    limit: Optional[int] = None,
) -> str:
    _render_state.budget = budget
    stream = template.generate(**variables)
    try:
        parts: list[str] = []
        size = 0
        for chunk in stream:
            parts.append(chunk)
            size += len(chunk)
            if limit is not None and size > limit:
                break
        return "".join(parts)
    finally:
        stream.close()
        _render_state.budget = None


async def _render(template: Template, variables: dict[str, Any], *, limit: Optional[int] = None) -> str:
    """
    Render ``template`` in a worker thread.

    Output beyond ``limit`` characters is not collected.  Cancelling the
    caller (e.g. on handler timeout) stops the render at its next loop step.
    """
    budget = RenderBudget()
    try:
        return await asyncio.to_thread(_render_sync, template, variables, budget, limit)
    except asyncio.CancelledError:
        budget.cancel()
        raise
    except TemplateError as exc:
        raise HandlerExecutionError(f"template error: {exc}") from exc


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class CommandAction(ABC):
    """Compiled handler logic for one command."""

    kind: str = ""

    @abstractmethod
    async def run(self, ctx: CommandContext) -> None:
        ...


class ReplyAction(CommandAction):
    kind = "reply"

    def __init__(self, text: Template):
        self.text = text

    async def run(self, ctx: CommandContext) -> None:
        await ctx.reply(await _render(self.text, ctx.metadata, limit=ctx.max_reply_chars))


class LookupAction(CommandAction):
    kind = "lookup"

    def __init__(
        self,
        key: Template,
        table: dict[str, Template],
        default: Template | None = None,
    ):
        self.key = key
        self.table = table
        self.default = default

    async def run(self, ctx: CommandContext) -> None:
        variables = ctx.metadata
        # A missing argument is a miss, not an error.
        try:
            key = (await _render(self.key, variables)).strip()
        except HandlerExecutionError as exc:
            if not isinstance(exc.__cause__, UndefinedError):
                raise
            key = ""

        template = self.table.get(key, self.default)
        if template is None:
            logger.debug(f"Lookup miss for key={key!r} in /{ctx.command}")
            return
        await ctx.reply(await _render(template, {**variables, "key": key}, limit=ctx.max_reply_chars))


class WebhookAction(CommandAction):
    kind = "webhook"

    def __init__(self, url: str, reply: Template | None = None, timeout: float | None = None):
        self.url = url
        self.reply = reply
        self.timeout = timeout or settings.webhook_action_timeout_seconds

    async def run(self, ctx: CommandContext) -> None:
        variables = ctx.metadata
        session = get_webhook_session()
        try:
            async with session.post(
                self.url,
                json=variables,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    raise HandlerExecutionError(f"webhook returned HTTP {resp.status}")
                text = await resp.text()
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
        except aiohttp.ClientError as exc:
            raise HandlerExecutionError(f"webhook call failed: {exc}") from exc

        if self.reply is not None:
            response = {"status": resp.status, "text": text, "json": body}
            await ctx.reply(
                await _render(self.reply, {**variables, "response": response}, limit=ctx.max_reply_chars)
            )


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def compile_logic(logic: Any) -> CommandAction:
    """
    Validate stored handler logic and turn it into a runnable action.

    Raises:
        InvalidCommandError: unknown action, missing fields or template syntax errors.
    """
    if isinstance(logic, str):
        return ReplyAction(_compile_template(logic, "logic"))

    if not isinstance(logic, dict):
        raise InvalidCommandError("Command logic must be a template string or an action object")

    kind = logic.get("action", "reply")

    if kind == "reply":
        return ReplyAction(_compile_template(logic.get("text"), "text"))

    if kind == "lookup":
        table = logic.get("table")
        if not isinstance(table, dict) or not table:
            raise InvalidCommandError("'table' must be a non-empty object")
        default = logic.get("default")
        return LookupAction(
            key=_compile_template(logic.get("key", "{{ args[0] }}"), "key"),
            table={str(k): _compile_template(v, f"table.{k}") for k, v in table.items()},
            default=_compile_template(default, "default") if default is not None else None,
        )

    if kind == "webhook":
        url = logic.get("url")
        parsed = urlparse(url) if isinstance(url, str) else None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidCommandError("'url' must be an absolute http(s) URL")
        timeout = logic.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise InvalidCommandError("'timeout' must be a positive number of seconds")
        reply = logic.get("reply")
        return WebhookAction(
            url=url,
            reply=_compile_template(reply, "reply") if reply is not None else None,
            timeout=float(timeout) if timeout is not None else None,
        )

    raise InvalidCommandError(f"Unknown action '{kind}'")
