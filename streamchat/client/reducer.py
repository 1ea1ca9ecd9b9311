"""Client Stream Reducer - the client's view of one conversation while answers stream in."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from streamchat.core.errors import InvalidRequestError, TurnInProgressError
from streamchat.models.conversation import new_id

logger = logging.getLogger(__name__)


@dataclass
class ClientMessage:
    id: str
    role: str
    content: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def incomplete(self) -> bool:
        return bool(self.metadata.get("incomplete"))


class ClientStreamReducer:
    """Message list plus the id of the assistant placeholder currently streaming.

    Events that name any other message id are ignored, so late or
    duplicated frames from an earlier turn cannot corrupt the history.
    """

    def __init__(self, conversation_id: str | None = None, messages: list[ClientMessage] | None = None):
        self.conversation_id = conversation_id
        self.messages: list[ClientMessage] = list(messages or [])
        self.streaming_message_id: str | None = None
        self.cancel_requested = False

    @property
    def is_streaming(self) -> bool:
        return self.streaming_message_id is not None

    def find(self, message_id: str) -> ClientMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def _is_current(self, message_id: str) -> bool:
        if message_id != self.streaming_message_id:
            logger.debug(f"Ignoring event for {message_id}; streaming {self.streaming_message_id}")
            return False
        return True

    def begin_turn(
        self,
        conversation_id: str | None,
        user_text: str,
        message_id: str | None = None,
        user_message_id: str | None = None,
    ) -> str:
        """Show the user's message and an empty assistant placeholder. Returns the placeholder id."""
        if self.streaming_message_id is not None:
            raise TurnInProgressError(
                f"A response is still streaming in conversation {self.conversation_id}"
            )
        if not user_text.strip():
            raise InvalidRequestError("Message cannot be empty")

        if conversation_id:
            self.conversation_id = conversation_id
        placeholder = ClientMessage(id=message_id or new_id(), role="assistant")
        self.messages.append(ClientMessage(id=user_message_id or new_id(), role="user", content=user_text))
        self.messages.append(placeholder)
        self.streaming_message_id = placeholder.id
        self.cancel_requested = False
        return placeholder.id

    def acknowledge_turn(
        self,
        local_id: str,
        turn_id: str,
        user_message_id: str | None = None,
        conversation_id: str | None = None,
    ) -> None:
        """Adopt the ids the server assigned to an optimistic turn."""
        if not self._is_current(local_id):
            return
        placeholder = self.find(local_id)
        if placeholder is None:
            return
        index = self.messages.index(placeholder)
        if user_message_id and index > 0 and self.messages[index - 1].role == "user":
            self.messages[index - 1].id = user_message_id
        placeholder.id = turn_id
        self.streaming_message_id = turn_id
        if conversation_id:
            self.conversation_id = conversation_id

    def apply_fragment(self, message_id: str, fragment: str) -> None:
        if not self._is_current(message_id):
            return
        placeholder = self.find(message_id)
        if placeholder is not None:
            placeholder.content += fragment

    def complete_turn(self, message_id: str, final_metadata: dict[str, Any] | None = None) -> None:
        if not self._is_current(message_id):
            return
        message = self.find(message_id)
        self.streaming_message_id = None
        self.cancel_requested = False
        if message is None:
            return
        if not message.content:
            # Nothing was generated and nothing was saved
            self.messages.remove(message)
            return
        if final_metadata:
            message.metadata.update(final_metadata)

    def fail_turn(self, message_id: str, reason: str) -> None:
        """Keep a partial answer with an error note; drop an empty placeholder."""
        if not self._is_current(message_id):
            return
        message = self.find(message_id)
        self.streaming_message_id = None
        self.cancel_requested = False
        if message is None:
            return
        if message.content:
            message.error = reason
            message.metadata["incomplete"] = True
        else:
            self.messages.remove(message)

    def apply_event(self, message_id: str, frame: dict[str, Any]) -> None:
        """Apply one decoded transport frame to the message ``message_id``."""
        kind = frame.get("type")
        if kind == "fragment":
            self.apply_fragment(message_id, frame.get("text", ""))
        elif kind == "done":
            metadata = {
                k: v
                for k, v in frame.items()
                if k in ("model", "finish_reason", "incomplete", "saved") and v is not None
            }
            self.complete_turn(message_id, metadata)
        elif kind == "error":
            self.fail_turn(message_id, frame.get("reason") or "error")
        else:
            logger.debug(f"Ignoring unknown frame type {kind!r}")

    def request_cancel(self) -> str | None:
        """Flag the streaming turn for cancellation. Returns its id, or None when idle."""
        if self.streaming_message_id is None:
            return None
        self.cancel_requested = True
        return self.streaming_message_id
