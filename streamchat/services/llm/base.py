"""Abstract LLM provider interface. All providers must implement this."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from streamchat.core.errors import (
    ChatEngineError,
    InvalidRequestError,
    ModelUnavailableError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Request fields the gateway owns; caller options may not override them
RESERVED_OPTION_KEYS = frozenset(
    {
        "model",
        "messages",
        "stream",
        "stream_options",
        "contents",
        "system_instruction",
        "config",
        "max_output_tokens",
    }
)


def error_for_status(status_code: int, detail: str) -> ChatEngineError:
    """Map an HTTP error status reported by a backend onto the gateway taxonomy."""
    if status_code == 429:
        return RateLimitedError(f"Model backend rate limited the request: {detail}")
    if status_code >= 500:
        return ModelUnavailableError(f"Model backend error {status_code}: {detail}")
    return InvalidRequestError(f"Model backend rejected the request ({status_code}): {detail}")


@dataclass
class Message:
    role: str  # "user" | "assistant" | "system"
    content: str


@dataclass
class GenerationOptions:
    """Caller options passed through to the backend. ``extra`` may not name a reserved request field."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        reserved = sorted(RESERVED_OPTION_KEYS.intersection(self.extra))
        if reserved:
            raise InvalidRequestError(f"Options cannot override: {', '.join(reserved)}")

    def as_metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        data.update(self.extra)
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class LLMResponse:
    text: str
    model_id: str
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None


@dataclass
class TokenEvent:
    """One element of a normalized stream: a token, the done marker, or the error marker."""

    type: str  # "token" | "done" | "error"
    text: str = ""
    error: ChatEngineError | None = None
    finish_reason: str | None = None
    model_id: str | None = None

    @classmethod
    def token(cls, text: str) -> "TokenEvent":
        return cls(type="token", text=text)

    @classmethod
    def done(cls, finish_reason: str | None = None, model_id: str | None = None) -> "TokenEvent":
        return cls(type="done", finish_reason=finish_reason, model_id=model_id)

    @classmethod
    def failure(cls, error: ChatEngineError) -> "TokenEvent":
        return cls(type="error", error=error)


class BaseLLMProvider(ABC):
    name = "base"
    default_model = ""

    def __init__(self, model_id: str = "", max_retries: int = 0, retry_base_delay: float = 1.0):
        self.model_id = model_id or self.default_model
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    def resolve_model(self, options: GenerationOptions) -> str:
        return options.model or self.model_id

    async def with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call``, retrying retryable gateway errors with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except ChatEngineError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_base_delay * (2**attempt)
                attempt += 1
                logger.warning(
                    f"{self.name} request failed ({e.code}), retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    @abstractmethod
    async def complete(self, messages: list[Message], options: GenerationOptions) -> LLMResponse:
        """Send messages and get the full response."""
        ...

    @abstractmethod
    def stream_complete(
        self, messages: list[Message], options: GenerationOptions
    ) -> AsyncIterator[TokenEvent]:
        """Stream a response as normalized token events.

        The stream always ends with exactly one ``done`` or ``error`` event.
        Closing the iterator early cancels the backend request.
        """
        ...
