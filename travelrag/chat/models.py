import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Message(BaseModel):
    """
    A message in a conversation.

    Attributes:
        id: Assigned on creation; stable across later updates.
        conversation_id: The owning conversation.
        role: Who produced the message.
        content: The message text.
        model_used: Model identifier reported by the generation provider.
        token_count: Output tokens reported by the generation provider.
        metadata: Structured details, e.g. the technical error behind an
            apology message.
        created_at: Creation time.
    """

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    role: Role
    content: str = ""
    model_used: str | None = None
    token_count: int | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime.datetime = Field(default_factory=_now)


class HistoryEntry(BaseModel):
    """A prior turn passed to the generation provider."""

    role: Role
    content: str


class Conversation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    title: str | None = None
    is_active: bool = True
    created_at: datetime.datetime = Field(default_factory=_now)
