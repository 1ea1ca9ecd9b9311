import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from streamchat.api import chat, conversations
from streamchat.core import database
from streamchat.core.config import settings
from streamchat.core.errors import ChatEngineError, RateLimitedError
from streamchat.services.context import ContextWindowBuilder
from streamchat.services.coordinator import StreamCoordinator, TurnRegistry
from streamchat.services.llm import get_llm_provider
from streamchat.services.rate_limit import create_rate_limiter
from streamchat.services.store import ConversationStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure logging based on debug setting
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s" if settings.debug
        else "%(levelname)-8s %(name)s: %(message)s",
    )

    engine = database.engine
    database.init_db(engine)

    store = ConversationStore(engine, title_max_length=settings.title_max_length)
    app.state.store = store
    app.state.coordinator = StreamCoordinator(
        store,
        get_llm_provider(settings),
        ContextWindowBuilder(settings.context_window_size),
        system_prompt=settings.system_prompt,
        default_conversation_type=settings.default_conversation_type,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        turn_timeout=settings.turn_timeout,
        max_message_length=settings.max_message_length,
    )
    app.state.turns = TurnRegistry()
    app.state.rate_limiter = None
    if settings.rate_limit_enabled:
        app.state.rate_limiter = create_rate_limiter(
            settings.rate_limit_backend,
            engine=engine,
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )

    yield

    # Let in-flight turns save what they have
    await app.state.turns.shutdown()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id", "X-User-Message-Id", "X-Turn-Id"],
)

app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
app.include_router(conversations.router, prefix="/api/conversations", tags=["conversations"])


@app.exception_handler(ChatEngineError)
async def chat_engine_error_handler(request: Request, exc: ChatEngineError):
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers = {"Retry-After": str(math.ceil(exc.retry_after))}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


@app.get("/api/health")
async def health(request: Request):
    return {
        "status": "ok",
        "app": settings.app_name,
        "provider": settings.llm_provider,
        "active_turns": len(request.app.state.turns),
    }
