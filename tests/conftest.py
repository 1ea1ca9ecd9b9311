"""Shared test fixtures."""

import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from streamchat.core.database import init_db
from streamchat.core.errors import ChatEngineError
from streamchat.services.llm.base import BaseLLMProvider, LLMResponse, Message, TokenEvent
from streamchat.services.store import ConversationStore


@pytest.fixture
def engine():
    # In-memory SQLite with StaticPool so all connections (including threads) share one DB
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(test_engine)
    yield test_engine
    SQLModel.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture
def store(engine):
    return ConversationStore(engine)


class FakeProvider(BaseLLMProvider):
    """Scripted model backend.

    ``error`` is reported after ``fail_after`` tokens; ``hang`` keeps the
    stream open after the last token until it is cancelled.
    """

    name = "fake"
    default_model = "fake-model"

    def __init__(
        self,
        tokens=("Hello", " from", " the model"),
        error: ChatEngineError | None = None,
        fail_after: int = 0,
        delay: float = 0.0,
        hang: bool = False,
    ):
        super().__init__()
        self.tokens = list(tokens)
        self.error = error
        self.fail_after = fail_after
        self.delay = delay
        self.hang = hang
        self.calls: list[list[Message]] = []
        self.closed = False

    async def complete(self, messages, options):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return LLMResponse(
            text="".join(self.tokens),
            model_id=self.resolve_model(options),
            usage={"total_tokens": 7},
            finish_reason="stop",
        )

    async def stream_complete(self, messages, options):
        self.calls.append(list(messages))
        try:
            for i, token in enumerate(self.tokens):
                if self.error is not None and i == self.fail_after:
                    yield TokenEvent.failure(self.error)
                    return
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield TokenEvent.token(token)
            if self.error is not None:
                yield TokenEvent.failure(self.error)
                return
            if self.hang:
                await asyncio.Event().wait()
            yield TokenEvent.done(finish_reason="stop", model_id=self.resolve_model(options))
        finally:
            self.closed = True


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def client(engine, fake_provider):
    """FastAPI TestClient backed by the in-memory DB and the fake provider."""
    with (
        patch("streamchat.core.database.engine", engine),
        patch("streamchat.main.get_llm_provider", return_value=fake_provider),
    ):
        from streamchat.main import app

        with TestClient(app) as c:
            yield c
