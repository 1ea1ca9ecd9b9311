"""Context Window Builder - derives the bounded message list sent to the model."""

from typing import Protocol, Sequence

from streamchat.core.prompts import get_prompt_for_type
from streamchat.services.llm.base import Message

ELIGIBLE_ROLES = ("user", "assistant")


class HistoryEntry(Protocol):
    role: str
    content: str


class ContextWindowBuilder:
    """Fixed-size sliding window over a conversation's history.

    The window counts messages, not tokens: the newest ``window_size``
    user/assistant messages are kept in their original order and one system
    entry carrying the persona directive is placed in front of them. Older
    context is dropped.
    """

    def __init__(self, window_size: int = 15):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size

    def build(self, history: Sequence[HistoryEntry], system_prompt: str | None = None) -> list[Message]:
        if system_prompt is None:
            system_prompt = get_prompt_for_type(None)
        eligible = [m for m in history if m.role in ELIGIBLE_ROLES]
        window = eligible[-self.window_size :]
        return [Message(role="system", content=system_prompt)] + [
            Message(role=m.role, content=m.content) for m in window
        ]
