"""Conversation and message models for chat history persistence."""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_TITLE = "New Conversation"
ROLES = ("system", "user", "assistant")
STATUSES = ("active", "archived")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Conversation(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str = Field(default=DEFAULT_TITLE)
    title_customized: bool = Field(default=False)
    conversation_type: str = Field(default="GENERAL")
    status: str = Field(default="active", index=True)  # active | archived
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)


class ChatMessage(SQLModel, table=True):
    # position orders messages; timestamps can collide
    __table_args__ = (UniqueConstraint("conversation_id", "position"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    conversation_id: str = Field(foreign_key="conversation.id", index=True)
    position: int
    role: str  # "user" | "assistant" | "system"
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    message_metadata: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
