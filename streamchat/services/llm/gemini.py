"""Google Gemini LLM provider."""

import logging
from typing import Any, AsyncIterator

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from streamchat.core.errors import ChatEngineError, InvalidRequestError, ModelUnavailableError
from streamchat.services.llm.base import (
    BaseLLMProvider,
    GenerationOptions,
    LLMResponse,
    Message,
    TokenEvent,
    error_for_status,
)

logger = logging.getLogger(__name__)


def _map_error(e: Exception) -> ChatEngineError:
    if isinstance(e, genai_errors.APIError):
        return error_for_status(e.code or 500, str(e)[:200])
    return ModelUnavailableError(f"Gemini unreachable: {e}")


def _chunk_text(chunk: Any) -> str | None:
    try:
        return chunk.text
    except (ValueError, AttributeError):
        logger.debug("Skipping Gemini chunk without text parts")
        return None


async def _close(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


def _finish_reason(response: Any) -> str | None:
    candidates = getattr(response, "candidates", None) or []
    if candidates and getattr(candidates[0], "finish_reason", None):
        reason = candidates[0].finish_reason
        return getattr(reason, "value", str(reason)).lower()
    return None


class GeminiProvider(BaseLLMProvider):
    name = "gemini"
    default_model = "gemini-2.0-flash"

    def __init__(
        self,
        api_key: str,
        model_id: str = "",
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
        client: genai.Client | None = None,
    ):
        super().__init__(model_id, max_retries, retry_base_delay)
        self.client = client or genai.Client(api_key=api_key)

    def _request(
        self, messages: list[Message], options: GenerationOptions
    ) -> tuple[list[dict], types.GenerateContentConfig]:
        """Convert to Gemini contents; system entries become the system instruction."""
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
            if m.role != "system"
        ]
        try:
            config = types.GenerateContentConfig(
                system_instruction=system or None,
                temperature=options.temperature,
                max_output_tokens=options.max_tokens,
                top_p=options.top_p,
                **options.extra,
            )
        except ValueError as e:
            raise InvalidRequestError(f"Invalid generation options: {e}") from e
        return contents, config

    async def complete(self, messages: list[Message], options: GenerationOptions) -> LLMResponse:
        contents, config = self._request(messages, options)
        model = self.resolve_model(options)

        async def call():
            try:
                return await self.client.aio.models.generate_content(
                    model=model, contents=contents, config=config
                )
            except (genai_errors.APIError, httpx.HTTPError) as e:
                raise _map_error(e) from e

        logger.info(f"gemini completion: model={model} messages={len(messages)}")
        response = await self.with_retries(call)

        usage: dict[str, int] = {}
        if response.usage_metadata:
            meta = response.usage_metadata
            usage = {
                "prompt_tokens": meta.prompt_token_count or 0,
                "completion_tokens": meta.candidates_token_count or 0,
                "total_tokens": meta.total_token_count or 0,
            }
            logger.info(f"gemini usage: {usage}")
        return LLMResponse(
            text=_chunk_text(response) or "",
            model_id=model,
            usage=usage,
            finish_reason=_finish_reason(response),
        )

    async def stream_complete(
        self, messages: list[Message], options: GenerationOptions
    ) -> AsyncIterator[TokenEvent]:
        model = self.resolve_model(options)
        logger.info(f"gemini stream: model={model} messages={len(messages)}")

        async def open_stream():
            stream = None
            try:
                stream = await self.client.aio.models.generate_content_stream(
                    model=model, contents=contents, config=config
                )
                # The SDK sends the request when the first chunk is pulled
                first = await anext(stream, None)
            except (genai_errors.APIError, httpx.HTTPError) as e:
                if stream is not None:
                    await _close(stream)
                raise _map_error(e) from e
            return stream, first

        try:
            contents, config = self._request(messages, options)
            stream, chunk = await self.with_retries(open_stream)
        except ChatEngineError as e:
            yield TokenEvent.failure(e)
            return

        finish_reason = None
        try:
            while chunk is not None:
                text = _chunk_text(chunk)
                if text:
                    yield TokenEvent.token(text)
                finish_reason = _finish_reason(chunk) or finish_reason
                chunk = await anext(stream, None)
            yield TokenEvent.done(finish_reason=finish_reason, model_id=model)
        except (genai_errors.APIError, httpx.HTTPError) as e:
            yield TokenEvent.failure(_map_error(e))
        finally:
            await _close(stream)
