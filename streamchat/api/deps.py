"""FastAPI dependencies resolving the services built in the app lifespan."""

from fastapi import Request

from streamchat.services.coordinator import StreamCoordinator, TurnRegistry
from streamchat.services.store import ConversationStore


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_coordinator(request: Request) -> StreamCoordinator:
    return request.app.state.coordinator


def get_turns(request: Request) -> TurnRegistry:
    return request.app.state.turns


def enforce_rate_limit(request: Request) -> None:
    """Count the request against the caller's window; raises RateLimitedError when exhausted."""
    limiter = request.app.state.rate_limiter
    if limiter is None:
        return
    key = request.client.host if request.client else "anonymous"
    limiter.check(key)
