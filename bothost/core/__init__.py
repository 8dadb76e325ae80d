# bothost/core/__init__.py
"""
Bot supervisor core -- platform-agnostic.

This package contains the domain models, the connectivity/store ports,
the command action model, the dispatcher, the lifecycle controller and
the registry that owns them.

Canonical imports:
    from bothost.core import BotRegistry, LifecycleController
    from bothost.core.domain import BotRecord, BotStatus, CommandContext
    from bothost.core.ports import ConnectivityAdapter, BotSession
"""
from bothost.core.domain import (  # noqa: F401
    BotStatus,
    BotRecord,
    BotSummary,
    InboundCommand,
    CommandContext,
)
from bothost.core.dispatcher import CommandDispatcher  # noqa: F401
from bothost.core.lifecycle import LifecycleController  # noqa: F401
from bothost.core.registry import BotRegistry, StartResult  # noqa: F401
