"""REST API for conversation history management."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from streamchat.api.deps import get_store
from streamchat.core.config import settings
from streamchat.core.errors import InvalidRequestError
from streamchat.models.conversation import ChatMessage, Conversation
from streamchat.services.store import ConversationStore

router = APIRouter()
logger = logging.getLogger(__name__)


class ConversationCreate(BaseModel):
    title: str | None = None
    conversation_type: str | None = None


class ConversationUpdate(BaseModel):
    title: str | None = None
    status: str | None = None


class MessageCreate(BaseModel):
    role: str
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageUpdate(BaseModel):
    content: str = Field(min_length=1)


class Feedback(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    helpful: bool | None = None
    comment: str | None = Field(default=None, max_length=2000)


def conversation_dict(conv: Conversation, message_count: int | None = None) -> dict[str, Any]:
    data = {
        "id": conv.id,
        "title": conv.title,
        "conversation_type": conv.conversation_type,
        "status": conv.status,
        "created_at": conv.created_at.isoformat(),
        "updated_at": conv.updated_at.isoformat(),
    }
    if message_count is not None:
        data["message_count"] = message_count
    return data


def _check_length(content: str) -> None:
    if len(content) > settings.max_stored_message_length:
        raise InvalidRequestError(
            f"Message is too long ({len(content)} > {settings.max_stored_message_length} characters)"
        )


def message_dict(msg: ChatMessage) -> dict[str, Any]:
    return {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "created_at": msg.created_at.isoformat(),
        "metadata": msg.message_metadata or {},
    }


@router.get("/")
async def list_conversations(
    limit: int = Query(20, ge=0, le=100),
    offset: int = Query(0, ge=0),
    status: str | None = None,
    store: ConversationStore = Depends(get_store),
):
    items, total = store.list_conversations(limit=limit, offset=offset, status=status)
    return {
        "conversations": [conversation_dict(c, store.count_messages(c.id)) for c in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("/", status_code=201)
async def create_conversation(body: ConversationCreate, store: ConversationStore = Depends(get_store)):
    conv = store.create_conversation(title=body.title, conversation_type=body.conversation_type)
    return conversation_dict(conv, 0)


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    conv = store.get_conversation(conversation_id)
    messages = store.get_messages(conversation_id)
    return {
        **conversation_dict(conv, len(messages)),
        "messages": [message_dict(m) for m in messages],
    }


@router.patch("/{conversation_id}")
async def update_conversation(
    conversation_id: str, body: ConversationUpdate, store: ConversationStore = Depends(get_store)
):
    conv = store.update_conversation(conversation_id, title=body.title, status=body.status)
    return conversation_dict(conv)


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    store.delete_conversation(conversation_id)
    return {"status": "deleted"}


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=0, le=500),
    offset: int = Query(0, ge=0),
    store: ConversationStore = Depends(get_store),
):
    items, total = store.list_messages(conversation_id, limit=limit, offset=offset)
    return {
        "messages": [message_dict(m) for m in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("/{conversation_id}/messages", status_code=201)
async def add_message(
    conversation_id: str, body: MessageCreate, store: ConversationStore = Depends(get_store)
):
    _check_length(body.content)
    msg = store.append_message(conversation_id, body.role, body.content, metadata=body.metadata)
    return message_dict(msg)


@router.patch("/{conversation_id}/messages/{message_id}")
async def edit_message(
    conversation_id: str,
    message_id: str,
    body: MessageUpdate,
    store: ConversationStore = Depends(get_store),
):
    _check_length(body.content)
    msg = store.edit_message(conversation_id, message_id, body.content)
    return message_dict(msg)


@router.delete("/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: str, message_id: str, store: ConversationStore = Depends(get_store)
):
    store.delete_message(conversation_id, message_id)
    return {"status": "deleted"}


@router.post("/{conversation_id}/messages/{message_id}/feedback")
async def add_feedback(
    conversation_id: str,
    message_id: str,
    body: Feedback,
    store: ConversationStore = Depends(get_store),
):
    msg = store.add_feedback(
        conversation_id, message_id, rating=body.rating, helpful=body.helpful, comment=body.comment
    )
    logger.debug(f"Feedback recorded on message {message_id}")
    return message_dict(msg)
