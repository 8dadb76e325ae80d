# bothost/admin/models.py
"""
Pydantic request/response models for the management API.

These live *outside* the transport layer so the service can
validate payloads without depending on FastAPI.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateBotRequest(BaseModel):
    """Register a new bot."""

    credential: str = Field(..., min_length=1, description="Telegram bot token from @BotFather")
    name: str = Field(default="", max_length=256, description="Human-readable name")

    @field_validator("credential")
    @classmethod
    def credential_must_not_be_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("credential must not be blank")
        return v


class SetCommandRequest(BaseModel):
    """Insert or overwrite one command's handler logic."""

    logic: str | dict[str, Any] = Field(
        ...,
        description="Reply template string, or an action object (reply / lookup / webhook)",
    )


class SaveCommandRequest(SetCommandRequest):
    """Same as ``SetCommandRequest`` with the command name in the body."""

    name: str = Field(default="", description="Command name, leading '/' optional")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class BotInfo(BaseModel):
    """Bot listing entry (never includes the credential)."""

    id: str
    name: str
    status: str
    username: str | None = None


class CommandTable(BaseModel):
    bot_id: str
    commands: dict[str, Any] = Field(default_factory=dict)


class OkResponse(BaseModel):
    """Generic success response."""

    ok: bool = True
    bot_id: str | None = None
    status: str | None = None
    command: str | None = None
    detail: str | None = None
