"""Chat endpoint: one turn per request, streamed as server-sent events or returned whole."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from streamchat.api.deps import enforce_rate_limit, get_coordinator, get_turns
from streamchat.core.config import settings
from streamchat.core.sse import SSE_HEADERS
from streamchat.services.coordinator import ChatRequest, StreamCoordinator, TurnRegistry
from streamchat.services.llm.base import GenerationOptions
from streamchat.services.transport import SSETransport

router = APIRouter()
logger = logging.getLogger(__name__)


class ChatOptions(BaseModel):
    """Generation options; unknown keys are passed to the backend as-is."""

    model_config = {"extra": "allow", "protected_namespaces": ()}

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, ge=0, le=1)

    def to_generation_options(self) -> GenerationOptions:
        return GenerationOptions(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            extra=dict(self.model_extra or {}),
        )


class ChatBody(BaseModel):
    message: str
    conversation_id: str | None = None
    stream: bool = True
    conversation_type: str | None = None
    options: ChatOptions = Field(default_factory=ChatOptions)


@router.post("", dependencies=[Depends(enforce_rate_limit)])
async def chat(
    body: ChatBody,
    coordinator: StreamCoordinator = Depends(get_coordinator),
    turns: TurnRegistry = Depends(get_turns),
):
    request = ChatRequest(
        message=body.message,
        conversation_id=body.conversation_id,
        conversation_type=body.conversation_type,
        options=body.options.to_generation_options(),
    )

    if not body.stream:
        result = await coordinator.complete_turn(request)
        answer = result.assistant_message
        return {
            "message": {
                "id": answer.id,
                "content": answer.content,
                "role": answer.role,
                "timestamp": answer.created_at.isoformat(),
            },
            "conversation": {
                "id": result.conversation.id,
                "updated_at": result.conversation.updated_at.isoformat(),
                "message_count": coordinator.store.count_messages(result.conversation.id),
            },
        }

    turn = coordinator.begin_turn(request)
    transport = SSETransport(
        turn.turn_id,
        write_timeout=settings.fragment_write_timeout,
        buffer_size=settings.transport_buffer_size,
    )
    turns.start(turn, transport)

    headers = {
        **SSE_HEADERS,
        "X-Conversation-Id": turn.conversation_id,
        "X-User-Message-Id": turn.user_message_id,
        "X-Turn-Id": turn.turn_id,
    }
    return StreamingResponse(transport.frames(), media_type="text/event-stream", headers=headers)


@router.post("/turns/{turn_id}/cancel")
async def cancel_turn(turn_id: str, turns: TurnRegistry = Depends(get_turns)):
    turn = turns.cancel(turn_id)
    return {"status": "cancelling", "turn_id": turn_id, "conversation_id": turn.conversation_id}
