"""Conversation Store - owns conversations and their ordered message history."""

import logging
import threading
import weakref
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, func, select

from streamchat.core.errors import InvalidRequestError, NotFoundError
from streamchat.core.prompts import normalize_conversation_type
from streamchat.models.conversation import (
    DEFAULT_TITLE,
    ROLES,
    STATUSES,
    ChatMessage,
    Conversation,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


def derive_title(text: str, max_length: int = 40) -> str:
    """Placeholder title from the first user message: its first ``max_length`` characters."""
    text = " ".join(text.split())
    if not text:
        return DEFAULT_TITLE
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class ConversationStore:
    """CRUD over conversations and messages with per-conversation append ordering.

    Appends, edits and deletes on one conversation are serialized by a lock
    owned by that conversation, so concurrent turns on the same conversation
    can never interleave message positions. Different conversations do not
    contend with each other.
    """

    def __init__(self, engine: Engine, title_max_length: int = 40):
        self._engine = engine
        self._title_max_length = title_max_length
        # A lock lives only while some caller holds it
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock

    @staticmethod
    def _require_conversation(session: Session, conversation_id: str) -> Conversation:
        conv = session.get(Conversation, conversation_id)
        if not conv:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conv

    @staticmethod
    def _require_message(session: Session, conversation_id: str, message_id: str) -> ChatMessage:
        msg = session.get(ChatMessage, message_id)
        if not msg or msg.conversation_id != conversation_id:
            raise NotFoundError(f"Message {message_id} not found in conversation {conversation_id}")
        return msg

    # --- Conversations ---

    def create_conversation(
        self, title: str | None = None, conversation_type: str | None = None
    ) -> Conversation:
        title = (title or "").strip()
        conv = Conversation(
            title=title or DEFAULT_TITLE,
            title_customized=bool(title),
            conversation_type=normalize_conversation_type(conversation_type),
        )
        with self._session() as session:
            session.add(conv)
            session.commit()
            session.refresh(conv)
        logger.debug(f"Created conversation {conv.id} ({conv.conversation_type})")
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._session() as session:
            return self._require_conversation(session, conversation_id)

    def list_conversations(
        self, limit: int = 20, offset: int = 0, status: str | None = None
    ) -> tuple[list[Conversation], int]:
        """Most recently active first; equal timestamps are ordered by id."""
        if limit < 0 or offset < 0:
            raise InvalidRequestError("limit and offset must be non-negative")

        query = select(Conversation)
        count_query = select(func.count()).select_from(Conversation)
        if status:
            query = query.where(Conversation.status == status)
            count_query = count_query.where(Conversation.status == status)

        with self._session() as session:
            items = session.exec(
                query.order_by(Conversation.updated_at.desc(), Conversation.id)  # type: ignore
                .offset(offset)
                .limit(limit)
            ).all()
            total = session.exec(count_query).one()
        return list(items), total

    def update_conversation(
        self, conversation_id: str, title: str | None = None, status: str | None = None
    ) -> Conversation:
        if title is not None and not title.strip():
            raise InvalidRequestError("Title cannot be empty")
        if status is not None and status not in STATUSES:
            raise InvalidRequestError(f"Unknown status: {status}")

        with self._lock_for(conversation_id), self._session() as session:
            conv = self._require_conversation(session, conversation_id)
            if title is not None:
                conv.title = title.strip()
                conv.title_customized = True
            if status is not None:
                conv.status = status
            conv.updated_at = utcnow()
            session.add(conv)
            session.commit()
            session.refresh(conv)
        return conv

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock_for(conversation_id), self._session() as session:
            conv = self._require_conversation(session, conversation_id)

            # Delete messages first
            messages = session.exec(
                select(ChatMessage).where(ChatMessage.conversation_id == conversation_id)
            ).all()
            for msg in messages:
                session.delete(msg)

            session.delete(conv)
            session.commit()

        logger.debug(f"Deleted conversation {conversation_id}")

    # --- Messages ---

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> ChatMessage:
        if role not in ROLES:
            raise InvalidRequestError(f"Unknown role: {role}")

        with self._lock_for(conversation_id), self._session() as session:
            conv = self._require_conversation(session, conversation_id)
            last_position = session.exec(
                select(func.max(ChatMessage.position)).where(
                    ChatMessage.conversation_id == conversation_id
                )
            ).one()

            now = utcnow()
            message = ChatMessage(
                id=message_id or new_id(),
                conversation_id=conversation_id,
                position=0 if last_position is None else last_position + 1,
                role=role,
                content=content,
                created_at=now,
                message_metadata=dict(metadata or {}),
            )
            conv.updated_at = now
            if role == "user" and not conv.title_customized and conv.title == DEFAULT_TITLE:
                conv.title = derive_title(content, self._title_max_length)

            session.add(message)
            session.add(conv)
            session.commit()
            session.refresh(message)

        logger.debug(f"Appended {role} message {message.id} to {conversation_id} at {message.position}")
        return message

    def get_messages(self, conversation_id: str) -> list[ChatMessage]:
        """Full history in insertion order."""
        with self._session() as session:
            self._require_conversation(session, conversation_id)
            return list(
                session.exec(
                    select(ChatMessage)
                    .where(ChatMessage.conversation_id == conversation_id)
                    .order_by(ChatMessage.position)  # type: ignore
                ).all()
            )

    def count_messages(self, conversation_id: str) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count())
                .select_from(ChatMessage)
                .where(ChatMessage.conversation_id == conversation_id)
            ).one()

    def list_messages(
        self, conversation_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[list[ChatMessage], int]:
        if limit < 0 or offset < 0:
            raise InvalidRequestError("limit and offset must be non-negative")

        with self._session() as session:
            self._require_conversation(session, conversation_id)
            items = session.exec(
                select(ChatMessage)
                .where(ChatMessage.conversation_id == conversation_id)
                .order_by(ChatMessage.position)  # type: ignore
                .offset(offset)
                .limit(limit)
            ).all()
        return list(items), self.count_messages(conversation_id)

    def edit_message(self, conversation_id: str, message_id: str, new_content: str) -> ChatMessage:
        with self._lock_for(conversation_id), self._session() as session:
            conv = self._require_conversation(session, conversation_id)
            msg = self._require_message(session, conversation_id, message_id)
            msg.content = new_content
            conv.updated_at = utcnow()
            session.add(msg)
            session.add(conv)
            session.commit()
            session.refresh(msg)
        return msg

    def delete_message(self, conversation_id: str, message_id: str) -> None:
        with self._lock_for(conversation_id), self._session() as session:
            conv = self._require_conversation(session, conversation_id)
            msg = self._require_message(session, conversation_id, message_id)
            session.delete(msg)
            conv.updated_at = utcnow()
            session.add(conv)
            session.commit()
        logger.debug(f"Deleted message {message_id} from {conversation_id}")

    def add_feedback(
        self,
        conversation_id: str,
        message_id: str,
        rating: int | None = None,
        helpful: bool | None = None,
        comment: str | None = None,
    ) -> ChatMessage:
        """Record user feedback on a message inside its metadata."""
        with self._lock_for(conversation_id), self._session() as session:
            self._require_conversation(session, conversation_id)
            msg = self._require_message(session, conversation_id, message_id)
            metadata = dict(msg.message_metadata or {})
            metadata["feedback"] = {
                "rating": rating,
                "helpful": helpful,
                "comment": comment,
                "timestamp": utcnow().isoformat(),
            }
            # Reassign so the JSON column is flagged dirty
            msg.message_metadata = metadata
            session.add(msg)
            session.commit()
            session.refresh(msg)
        return msg
