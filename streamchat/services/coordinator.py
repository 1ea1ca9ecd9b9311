"""Stream Coordinator - drives one conversational turn from user message to persisted answer."""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from streamchat.core.errors import (
    ChatEngineError,
    InvalidRequestError,
    ModelUnavailableError,
    NotFoundError,
    StorageError,
    TransportClosedError,
)
from streamchat.core.prompts import get_prompt_for_type
from streamchat.models.conversation import ChatMessage, Conversation, new_id
from streamchat.services.context import ContextWindowBuilder
from streamchat.services.llm.base import BaseLLMProvider, GenerationOptions, Message
from streamchat.services.store import ConversationStore
from streamchat.services.transport import SSETransport

logger = logging.getLogger(__name__)

# Terminal causes of a streaming turn
COMPLETED = "completed"
DISCONNECTED = "disconnected"
CANCELLED = "cancelled"
TIMEOUT = "timeout"
ERROR = "error"


class TurnState(str, Enum):
    BUILDING = "building"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChatRequest:
    message: str
    conversation_id: str | None = None
    conversation_type: str | None = None
    options: GenerationOptions = field(default_factory=GenerationOptions)


@dataclass
class TurnResult:
    conversation: Conversation
    user_message: ChatMessage
    assistant_message: ChatMessage


class StreamingTurn:
    """Transient state of one in-flight turn.

    The assistant message id is allocated up front and doubles as the turn
    id, so the client can render a placeholder before the first token and
    the persisted message keeps the id the client already knows.
    """

    def __init__(
        self,
        store: ConversationStore,
        gateway: BaseLLMProvider,
        conversation: Conversation,
        user_message: ChatMessage,
        context: list[Message],
        options: GenerationOptions,
        turn_timeout: float = 300.0,
    ):
        self._store = store
        self._gateway = gateway
        self.conversation = conversation
        self.user_message = user_message
        self.context = context
        self.options = options
        self.turn_timeout = turn_timeout

        self.assistant_message_id = new_id()
        self.state = TurnState.BUILDING
        self.cause: str | None = None
        self.error: ChatEngineError | None = None
        self.finish_reason: str | None = None
        self.model_id = gateway.resolve_model(options)
        self.saved_message: ChatMessage | None = None
        self._parts: list[str] = []
        self._cancel_requested = asyncio.Event()

    @property
    def turn_id(self) -> str:
        return self.assistant_message_id

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def user_message_id(self) -> str:
        return self.user_message.id

    @property
    def accumulated_text(self) -> str:
        return "".join(self._parts)

    def cancel(self) -> None:
        """Ask the turn to stop. The partial answer is still finalized."""
        logger.info(f"Turn {self.turn_id}: cancel requested")
        self._cancel_requested.set()

    async def run(self, transport: SSETransport) -> TurnState:
        self.state = TurnState.STREAMING
        logger.info(
            f"Turn {self.turn_id} streaming: conversation={self.conversation_id} "
            f"model={self.model_id} context={len(self.context)}"
        )

        pump = asyncio.create_task(self._pump(transport))
        cancel_wait = asyncio.create_task(self._cancel_requested.wait())
        closed_wait = asyncio.create_task(transport.wait_closed())
        try:
            done, _ = await asyncio.wait(
                {pump, cancel_wait, closed_wait},
                timeout=self.turn_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
            closed_wait.cancel()

        if pump in done:
            cause, error = pump.result()
        else:
            # Closing the gateway stream cancels the backend request
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
            error = None
            if cancel_wait in done:
                cause = CANCELLED
            elif closed_wait in done:
                cause = DISCONNECTED
            else:
                logger.warning(f"Turn {self.turn_id} exceeded the {self.turn_timeout}s turn timeout")
                cause = TIMEOUT

        try:
            await self._finalize(cause, error)
        finally:
            await self._send_terminal(transport)
        return self.state

    async def _pump(self, transport: SSETransport) -> tuple[str, ChatEngineError | None]:
        try:
            async with aclosing(self._gateway.stream_complete(self.context, self.options)) as stream:
                async for event in stream:
                    if event.type == "token":
                        self._parts.append(event.text)
                        await transport.send(event.text)
                    elif event.type == "done":
                        self.finish_reason = event.finish_reason
                        self.model_id = event.model_id or self.model_id
                        return COMPLETED, None
                    else:
                        return ERROR, event.error or ModelUnavailableError("Model stream failed")
        except TransportClosedError:
            logger.info(f"Turn {self.turn_id}: client disconnected after {len(self._parts)} fragments")
            return DISCONNECTED, None
        except Exception as e:
            logger.exception(f"Turn {self.turn_id}: unexpected failure while streaming")
            if isinstance(e, ChatEngineError):
                return ERROR, e
            return ERROR, ChatEngineError(f"Unexpected streaming failure: {e}")
        return ERROR, ModelUnavailableError("Model stream ended without a terminal event")

    async def _finalize(self, cause: str, error: ChatEngineError | None) -> None:
        """Persist whatever was accumulated, exactly once."""
        self.state = TurnState.FINALIZING
        self.cause = cause
        self.error = error

        text = self.accumulated_text
        if text:
            metadata: dict[str, Any] = {
                "model": self.model_id,
                "options": self.options.as_metadata(),
                "finish_reason": self.finish_reason,
                "incomplete": cause != COMPLETED,
            }
            try:
                self.saved_message = self._store.append_message(
                    self.conversation_id,
                    "assistant",
                    text,
                    metadata=metadata,
                    message_id=self.assistant_message_id,
                )
            except NotFoundError as e:
                # Conversation deleted while the turn was streaming
                logger.warning(f"Turn {self.turn_id}: could not persist answer: {e.message}")
                self.cause = ERROR
                self.error = e
            except Exception as e:
                logger.exception(f"Turn {self.turn_id}: persisting the answer failed")
                self.cause = ERROR
                self.error = StorageError(f"Could not save the answer: {e}")

        if self.saved_message is not None or (not text and self.cause == COMPLETED):
            self.state = TurnState.COMPLETED
        else:
            self.state = TurnState.FAILED
        logger.info(
            f"Turn {self.turn_id} {self.state.value}: cause={self.cause} "
            f"chars={len(text)} saved={self.saved_message is not None}"
        )

    async def _send_terminal(self, transport: SSETransport) -> None:
        saved = self.saved_message is not None
        message_id = self.assistant_message_id if saved else None
        try:
            if self.cause == DISCONNECTED:
                return
            if self.cause == COMPLETED or (saved and self.cause in (CANCELLED, TIMEOUT)):
                await transport.send_done(
                    message_id=message_id,
                    saved=saved,
                    incomplete=self.cause != COMPLETED,
                    reason=self.cause,
                    finish_reason=self.finish_reason,
                    model=self.model_id,
                )
            elif self.cause == ERROR and self.error is not None:
                await transport.send_error(
                    self.error.message,
                    code=self.error.code,
                    saved=saved,
                    message_id=message_id,
                )
            else:
                await transport.send_error(self.cause or ERROR, code=self.cause, saved=saved, message_id=message_id)
        except TransportClosedError:
            logger.debug(f"Turn {self.turn_id}: client gone before the terminal frame")
        finally:
            transport.close()


class TurnRegistry:
    """In-flight turns by turn id, so a cancel request can reach them."""

    def __init__(self):
        self._turns: dict[str, StreamingTurn] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._turns)

    def __contains__(self, turn_id: str) -> bool:
        return turn_id in self._turns

    def start(self, turn: StreamingTurn, transport: SSETransport) -> asyncio.Task:
        """Run ``turn`` as its own task; it deregisters itself when done."""
        task = asyncio.create_task(turn.run(transport), name=f"turn-{turn.turn_id}")
        self._turns[turn.turn_id] = turn
        self._tasks[turn.turn_id] = task
        task.add_done_callback(lambda t: self._finished(turn.turn_id, t))
        return task

    def _finished(self, turn_id: str, task: asyncio.Task) -> None:
        self._turns.pop(turn_id, None)
        self._tasks.pop(turn_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Turn {turn_id} crashed", exc_info=task.exception())

    def get(self, turn_id: str) -> StreamingTurn:
        turn = self._turns.get(turn_id)
        if turn is None:
            raise NotFoundError(f"No streaming turn {turn_id}")
        return turn

    def cancel(self, turn_id: str) -> StreamingTurn:
        turn = self.get(turn_id)
        turn.cancel()
        return turn

    async def shutdown(self) -> None:
        """Cancel every in-flight turn and wait for them to finalize."""
        tasks = list(self._tasks.values())
        for turn in list(self._turns.values()):
            turn.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class StreamCoordinator:
    def __init__(
        self,
        store: ConversationStore,
        gateway: BaseLLMProvider,
        builder: ContextWindowBuilder | None = None,
        system_prompt: str = "",
        default_conversation_type: str = "GENERAL",
        temperature: float | None = None,
        max_tokens: int | None = None,
        turn_timeout: float = 300.0,
        max_message_length: int = 2000,
    ):
        self.store = store
        self.gateway = gateway
        self.builder = builder or ContextWindowBuilder()
        self.system_prompt = system_prompt
        self.default_conversation_type = default_conversation_type
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.turn_timeout = turn_timeout
        self.max_message_length = max_message_length

    def _persona(self, conversation: Conversation) -> str:
        return self.system_prompt or get_prompt_for_type(conversation.conversation_type)

    def _options(self, options: GenerationOptions) -> GenerationOptions:
        """Fill unset generation options from the configured defaults."""
        return GenerationOptions(
            model=options.model,
            temperature=options.temperature if options.temperature is not None else self.temperature,
            max_tokens=options.max_tokens if options.max_tokens is not None else self.max_tokens,
            top_p=options.top_p,
            extra=dict(options.extra),
        )

    def _record_user_message(self, request: ChatRequest) -> tuple[Conversation, ChatMessage]:
        if not request.message or not request.message.strip():
            raise InvalidRequestError("Message cannot be empty")
        if len(request.message) > self.max_message_length:
            raise InvalidRequestError(
                f"Message is too long ({len(request.message)} > {self.max_message_length} characters)"
            )

        if request.conversation_id:
            conversation = self.store.get_conversation(request.conversation_id)
        else:
            conversation = self.store.create_conversation(
                conversation_type=request.conversation_type or self.default_conversation_type
            )

        user_message = self.store.append_message(conversation.id, "user", request.message)
        # Reload so a title derived from this message is visible
        return self.store.get_conversation(conversation.id), user_message

    def begin_turn(self, request: ChatRequest) -> StreamingTurn:
        """Record the user message and prepare a turn. Nothing is sent to the model yet."""
        conversation, user_message = self._record_user_message(request)
        history = self.store.get_messages(conversation.id)
        context = self.builder.build(history, self._persona(conversation))
        turn = StreamingTurn(
            self.store,
            self.gateway,
            conversation,
            user_message,
            context,
            self._options(request.options),
            turn_timeout=self.turn_timeout,
        )
        logger.debug(
            f"Turn {turn.turn_id} built: conversation={conversation.id} "
            f"history={len(history)} window={len(context) - 1}"
        )
        return turn

    async def complete_turn(self, request: ChatRequest) -> TurnResult:
        """Non-streaming turn. Model errors propagate once the user message is saved."""
        turn = self.begin_turn(request)
        response = await self.gateway.complete(turn.context, turn.options)
        if not response.text:
            raise ModelUnavailableError("Model returned an empty response")

        metadata: dict[str, Any] = {
            "model": response.model_id,
            "options": turn.options.as_metadata(),
            "finish_reason": response.finish_reason,
            "incomplete": False,
        }
        if response.usage:
            metadata["usage"] = response.usage
        assistant_message = self.store.append_message(
            turn.conversation_id,
            "assistant",
            response.text,
            metadata=metadata,
            message_id=turn.assistant_message_id,
        )
        return TurnResult(
            conversation=self.store.get_conversation(turn.conversation_id),
            user_message=turn.user_message,
            assistant_message=assistant_message,
        )
