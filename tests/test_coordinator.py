"""Tests for the stream coordinator: streaming, finalization and cancellation."""

import asyncio
import json

import pytest

from streamchat.core.errors import InvalidRequestError, ModelUnavailableError, NotFoundError
from streamchat.core.prompts import PERSONA_PROMPTS
from streamchat.services.context import ContextWindowBuilder
from streamchat.services.coordinator import (
    ChatRequest,
    StreamCoordinator,
    TurnRegistry,
    TurnState,
)
from streamchat.services.llm.base import GenerationOptions
from streamchat.services.store import ConversationStore
from streamchat.services.transport import SSETransport


def _decode(frame):
    return json.loads(frame[len("data: "):].strip())


def _coordinator(store, provider, **kwargs):
    return StreamCoordinator(store, provider, ContextWindowBuilder(15), **kwargs)


async def _run(turn, write_timeout=1.0):
    """Run a turn against a consumer that reads every frame."""
    transport = SSETransport(turn.turn_id, write_timeout=write_timeout)
    run = asyncio.create_task(turn.run(transport))
    frames = [_decode(f) async for f in transport.frames()]
    return await run, frames


def _assistant_messages(store, conversation_id):
    return [m for m in store.get_messages(conversation_id) if m.role == "assistant"]


@pytest.mark.asyncio
async def test_completed_turn_streams_in_order_and_persists_once(store, make_provider):
    provider = make_provider(tokens=["Recur", "sion is", " when a function calls itself."])
    coordinator = _coordinator(store, provider, temperature=0.5)
    turn = coordinator.begin_turn(ChatRequest(message="explain recursion"))

    state, frames = await _run(turn)

    assert state == TurnState.COMPLETED
    assert [f["text"] for f in frames if f["type"] == "fragment"] == [
        "Recur",
        "sion is",
        " when a function calls itself.",
    ]
    assert frames[-1]["type"] == "done"
    assert frames[-1]["saved"] is True
    assert frames[-1]["incomplete"] is False
    assert frames[-1]["message_id"] == turn.turn_id

    saved = _assistant_messages(store, turn.conversation_id)
    assert len(saved) == 1
    assert saved[0].id == turn.assistant_message_id
    assert saved[0].content == "Recursion is when a function calls itself."
    assert saved[0].message_metadata == {
        "model": "fake-model",
        "options": {"temperature": 0.5},
        "finish_reason": "stop",
        "incomplete": False,
    }


@pytest.mark.asyncio
async def test_user_message_is_recorded_before_streaming(store, make_provider):
    provider = make_provider()
    coordinator = _coordinator(store, provider)
    turn = coordinator.begin_turn(ChatRequest(message="explain recursion", conversation_type="learning"))

    messages = store.get_messages(turn.conversation_id)
    assert [(m.role, m.content) for m in messages] == [("user", "explain recursion")]
    assert turn.conversation.title == "explain recursion"
    assert turn.context[0].content == PERSONA_PROMPTS["LEARNING"]
    assert turn.context[-1].content == "explain recursion"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_configured_system_prompt_overrides_persona(store, make_provider):
    coordinator = _coordinator(store, make_provider(), system_prompt="Answer in French.")
    turn = coordinator.begin_turn(ChatRequest(message="hello"))
    assert turn.context[0].role == "system"
    assert turn.context[0].content == "Answer in French."


@pytest.mark.asyncio
async def test_blank_message_is_rejected_before_any_write(store, make_provider):
    coordinator = _coordinator(store, make_provider())
    with pytest.raises(InvalidRequestError):
        coordinator.begin_turn(ChatRequest(message="   "))
    assert store.list_conversations()[1] == 0


@pytest.mark.asyncio
async def test_unknown_conversation_is_not_found(store, make_provider):
    coordinator = _coordinator(store, make_provider())
    with pytest.raises(NotFoundError):
        coordinator.begin_turn(ChatRequest(message="hi", conversation_id="missing"))


@pytest.mark.asyncio
async def test_overlong_message_is_rejected_before_any_write(store, make_provider):
    coordinator = _coordinator(store, make_provider(), max_message_length=10)
    with pytest.raises(InvalidRequestError):
        coordinator.begin_turn(ChatRequest(message="x" * 11))
    assert store.list_conversations()[1] == 0

    turn = coordinator.begin_turn(ChatRequest(message="x" * 10))
    assert turn.context[-1].content == "x" * 10


@pytest.mark.asyncio
async def test_error_before_tokens_persists_nothing(store, make_provider):
    provider = make_provider(error=ModelUnavailableError("backend down"), fail_after=0)
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))

    state, frames = await _run(turn)

    assert state == TurnState.FAILED
    assert frames == [
        {
            "type": "error",
            "reason": "backend down",
            "code": "model_unavailable",
            "saved": False,
            "message_id": None,
        }
    ]
    messages = store.get_messages(turn.conversation_id)
    assert [m.role for m in messages] == ["user"]


@pytest.mark.asyncio
async def test_error_after_tokens_saves_partial_answer(store, make_provider):
    provider = make_provider(
        tokens=["Recur", "sion", " never arrives"],
        error=ModelUnavailableError("stream broke"),
        fail_after=2,
    )
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))

    state, frames = await _run(turn)

    assert state == TurnState.COMPLETED
    assert frames[-1]["type"] == "error"
    assert frames[-1]["saved"] is True
    assert frames[-1]["message_id"] == turn.turn_id

    saved = _assistant_messages(store, turn.conversation_id)
    assert [m.content for m in saved] == ["Recursion"]
    assert saved[0].message_metadata["incomplete"] is True


@pytest.mark.asyncio
async def test_client_disconnect_cancels_model_and_saves_partial(store, make_provider):
    provider = make_provider(tokens=["a", "b"], hang=True)
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))
    transport = SSETransport(turn.turn_id, write_timeout=1.0)
    run = asyncio.create_task(turn.run(transport))

    frames = transport.frames()
    received = [_decode(await frames.__anext__()) for _ in range(2)]
    await frames.aclose()
    state = await asyncio.wait_for(run, timeout=2.0)

    assert [f["text"] for f in received] == ["a", "b"]
    assert state == TurnState.COMPLETED
    assert turn.cause == "disconnected"
    assert provider.closed
    saved = _assistant_messages(store, turn.conversation_id)
    assert [m.content for m in saved] == ["ab"]
    assert saved[0].message_metadata["incomplete"] is True


@pytest.mark.asyncio
async def test_slow_consumer_is_treated_as_disconnected(store, make_provider):
    provider = make_provider(tokens=["a", "b", "c", "d"])
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))
    # Nobody reads the frames, so the second write cannot fit
    transport = SSETransport(turn.turn_id, write_timeout=0.05, buffer_size=1)

    state = await asyncio.wait_for(turn.run(transport), timeout=2.0)

    assert turn.cause == "disconnected"
    assert state == TurnState.COMPLETED
    saved = _assistant_messages(store, turn.conversation_id)
    assert [m.content for m in saved] == ["ab"]


@pytest.mark.asyncio
async def test_explicit_cancel_saves_partial_and_reports_done(store, make_provider):
    provider = make_provider(tokens=["Recur", "sion"], hang=True)
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))
    transport = SSETransport(turn.turn_id, write_timeout=1.0)
    run = asyncio.create_task(turn.run(transport))

    frames = transport.frames()
    first = [_decode(await frames.__anext__()) for _ in range(2)]
    turn.cancel()
    rest = [_decode(f) async for f in frames]
    state = await run

    assert [f["text"] for f in first] == ["Recur", "sion"]
    assert rest == [
        {
            "type": "done",
            "message_id": turn.turn_id,
            "saved": True,
            "incomplete": True,
            "reason": "cancelled",
            "finish_reason": None,
            "model": "fake-model",
        }
    ]
    assert state == TurnState.COMPLETED
    assert provider.closed
    assert [m.content for m in _assistant_messages(store, turn.conversation_id)] == ["Recursion"]


@pytest.mark.asyncio
async def test_turn_timeout_finalizes_like_disconnect(store, make_provider):
    provider = make_provider(tokens=["partial"], hang=True)
    turn = _coordinator(store, provider, turn_timeout=0.1).begin_turn(ChatRequest(message="hello"))

    state, frames = await _run(turn)

    assert state == TurnState.COMPLETED
    assert turn.cause == "timeout"
    assert frames[-1]["type"] == "done"
    assert frames[-1]["incomplete"] is True
    assert [m.content for m in _assistant_messages(store, turn.conversation_id)] == ["partial"]


@pytest.mark.asyncio
async def test_timeout_without_tokens_fails_with_error_frame(store, make_provider):
    provider = make_provider(tokens=[], hang=True)
    turn = _coordinator(store, provider, turn_timeout=0.1).begin_turn(ChatRequest(message="hello"))

    state, frames = await _run(turn)

    assert state == TurnState.FAILED
    assert frames == [
        {"type": "error", "reason": "timeout", "code": "timeout", "saved": False, "message_id": None}
    ]
    assert _assistant_messages(store, turn.conversation_id) == []


@pytest.mark.asyncio
async def test_empty_completion_saves_nothing(store, make_provider):
    turn = _coordinator(store, make_provider(tokens=[])).begin_turn(ChatRequest(message="hello"))

    state, frames = await _run(turn)

    assert state == TurnState.COMPLETED
    assert frames[-1]["type"] == "done"
    assert frames[-1]["saved"] is False
    assert _assistant_messages(store, turn.conversation_id) == []


@pytest.mark.asyncio
async def test_conversation_deleted_mid_turn_fails(store, make_provider):
    provider = make_provider(tokens=["a"], hang=True)
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))
    transport = SSETransport(turn.turn_id, write_timeout=1.0)
    run = asyncio.create_task(turn.run(transport))

    frames = transport.frames()
    await frames.__anext__()
    store.delete_conversation(turn.conversation_id)
    turn.cancel()
    rest = [_decode(f) async for f in frames]

    assert await run == TurnState.FAILED
    assert rest[-1]["type"] == "error"
    assert rest[-1]["code"] == "not_found"


@pytest.mark.asyncio
async def test_turns_on_one_conversation_append_in_finalize_order(store, make_provider):
    coordinator = _coordinator(store, make_provider(tokens=["first answer"]))
    first = coordinator.begin_turn(ChatRequest(message="one"))
    await _run(first)
    second = coordinator.begin_turn(ChatRequest(message="two", conversation_id=first.conversation_id))
    await _run(second)

    assert [(m.role, m.content) for m in store.get_messages(first.conversation_id)] == [
        ("user", "one"),
        ("assistant", "first answer"),
        ("user", "two"),
        ("assistant", "first answer"),
    ]
    # The second turn saw the first answer in its window
    assert [m.content for m in second.context[1:]] == ["one", "first answer", "two"]


@pytest.mark.asyncio
async def test_registry_routes_cancel_and_deregisters(store, make_provider):
    provider = make_provider(tokens=["x"], hang=True)
    turn = _coordinator(store, provider).begin_turn(ChatRequest(message="hello"))
    transport = SSETransport(turn.turn_id, write_timeout=1.0)
    registry = TurnRegistry()

    task = registry.start(turn, transport)
    frames = transport.frames()
    await frames.__anext__()
    assert turn.turn_id in registry

    registry.cancel(turn.turn_id)
    [_ async for _ in frames]
    await task
    await asyncio.sleep(0)

    assert turn.turn_id not in registry
    assert len(registry) == 0
    with pytest.raises(NotFoundError):
        registry.cancel(turn.turn_id)


@pytest.mark.asyncio
async def test_complete_turn_persists_answer(store, make_provider):
    coordinator = _coordinator(store, make_provider(tokens=["Hello", " there"]))
    result = await coordinator.complete_turn(
        ChatRequest(message="hi", options=GenerationOptions(max_tokens=50))
    )

    assert result.assistant_message.content == "Hello there"
    assert result.assistant_message.message_metadata["usage"] == {"total_tokens": 7}
    assert result.assistant_message.message_metadata["options"] == {"max_tokens": 50}
    assert store.count_messages(result.conversation.id) == 2


@pytest.mark.asyncio
async def test_complete_turn_error_keeps_user_message(store, make_provider):
    provider = make_provider(error=ModelUnavailableError("down"))
    coordinator = _coordinator(store, provider)
    with pytest.raises(ModelUnavailableError):
        await coordinator.complete_turn(ChatRequest(message="hi"))

    conversations, total = store.list_conversations()
    assert total == 1
    assert [m.role for m in store.get_messages(conversations[0].id)] == ["user"]


class LockedStore(ConversationStore):
    """Accepts user messages but fails every assistant write."""

    def append_message(self, conversation_id, role, content, metadata=None, message_id=None):
        if role == "assistant":
            raise RuntimeError("database is locked")
        return super().append_message(conversation_id, role, content, metadata, message_id)


@pytest.mark.asyncio
async def test_failed_save_still_ends_the_stream_with_an_error(engine, make_provider):
    store = LockedStore(engine)
    turn = _coordinator(store, make_provider(tokens=["a", "b"])).begin_turn(ChatRequest(message="hello"))
    transport = SSETransport(turn.turn_id, write_timeout=1.0)
    run = asyncio.create_task(turn.run(transport))

    async def read_all():
        return [_decode(f) async for f in transport.frames()]

    frames = await asyncio.wait_for(read_all(), timeout=2)

    assert await run == TurnState.FAILED
    assert [f["text"] for f in frames if f["type"] == "fragment"] == ["a", "b"]
    assert frames[-1]["type"] == "error"
    assert frames[-1]["code"] == "storage_error"
    assert frames[-1]["saved"] is False
    assert transport.closed
    assert [m.role for m in store.get_messages(turn.conversation_id)] == ["user"]
