"""Value types shared by the registry, cache and transport.

`SessionSummary` and `ChatMessage` are pydantic models because they are the
durable shapes written to the cache; the rest are plain frozen dataclasses.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "assistant", "thought", "tool", "system"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AgentModeOption:
    id: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class ModesInfo:
    """Modes advertised for one session (ACP `SessionModeState`)."""

    available: tuple[AgentModeOption, ...] = ()
    current_mode_id: str | None = None


@dataclass(frozen=True)
class AgentProfile:
    """Agent identity and capabilities reported by the handshake."""

    name: str
    title: str | None = None
    version: str | None = None
    capabilities: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.title or self.name


@dataclass(frozen=True)
class ImageAttachment:
    """Opaque binary attachment carried alongside a prompt."""

    data: str
    mime_type: str = "image/png"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class MessageChunk:
    """Incremental stream fragment delivered for one session."""

    role: MessageRole
    text: str
    message_id: str | None = None


class SessionSummary(BaseModel):
    """List entry for a session, local placeholder or server-confirmed."""

    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(..., min_length=1)
    title: str = ""
    cwd: str | None = None
    updated_at: datetime | None = None
    is_pending: bool = False


class ChatMessage(BaseModel):
    """One buffered conversation message."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: MessageRole
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    images: list[str] = Field(default_factory=list, description="Attachment ids sent with the message.")
    is_complete: bool = True
