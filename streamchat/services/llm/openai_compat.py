"""OpenAI-compatible chat completions provider (OpenAI, vLLM, Ollama, ...) over httpx."""

import json
import logging
from typing import Any, AsyncIterator

import httpx

from streamchat.core.errors import ChatEngineError, ModelUnavailableError
from streamchat.core.sse import iter_sse_data
from streamchat.services.llm.base import (
    BaseLLMProvider,
    GenerationOptions,
    LLMResponse,
    Message,
    TokenEvent,
    error_for_status,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def _error_detail(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body[:200]
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message", ""))[:200]
    return body[:200]


def status_error(status_code: int, body: str) -> ChatEngineError:
    return error_for_status(status_code, _error_detail(body))


def parse_chunk(data: str) -> dict[str, Any] | None:
    """Decode one streamed frame. Returns None for frames that are not chat chunks."""
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream frame: {data[:100]!r}")
        return None
    if not isinstance(chunk, dict):
        logger.debug(f"Skipping non-object stream frame: {data[:100]!r}")
        return None
    return chunk


class OpenAICompatibleProvider(BaseLLMProvider):
    name = "openai"
    default_model = "gpt-4o-mini"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model_id: str = "",
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model_id, max_retries, retry_base_delay)
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self._timeout, transport=self._transport
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(
        self, messages: list[Message], options: GenerationOptions, stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.resolve_model(options),
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": stream,
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        payload.update(options.extra)
        return payload

    async def complete(self, messages: list[Message], options: GenerationOptions) -> LLMResponse:
        payload = self._payload(messages, options, stream=False)

        async def call() -> dict[str, Any]:
            try:
                async with self._client() as client:
                    resp = await client.post(
                        "/chat/completions", json=payload, headers=self._headers()
                    )
            except httpx.TransportError as e:
                raise ModelUnavailableError(f"Model backend unreachable: {e}") from e
            if resp.status_code >= 400:
                raise status_error(resp.status_code, resp.text)
            try:
                return resp.json()
            except ValueError as e:
                raise ModelUnavailableError("Model backend returned a non-JSON response") from e

        logger.info(f"{self.name} completion: model={payload['model']} messages={len(messages)}")
        data = await self.with_retries(call)

        choice = (data.get("choices") or [{}])[0]
        usage = data.get("usage") or {}
        if usage:
            logger.info(
                f"{self.name} usage: prompt={usage.get('prompt_tokens')} "
                f"completion={usage.get('completion_tokens')} total={usage.get('total_tokens')}"
            )
        return LLMResponse(
            text=(choice.get("message") or {}).get("content") or "",
            model_id=data.get("model") or payload["model"],
            usage={k: v for k, v in usage.items() if isinstance(v, int)},
            finish_reason=choice.get("finish_reason"),
        )

    async def _open_stream(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        request = client.build_request(
            "POST", "/chat/completions", json=payload, headers=self._headers()
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            raise ModelUnavailableError(f"Model backend unreachable: {e}") from e
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise status_error(response.status_code, body.decode("utf-8", errors="replace"))
        return response

    async def stream_complete(
        self, messages: list[Message], options: GenerationOptions
    ) -> AsyncIterator[TokenEvent]:
        payload = self._payload(messages, options, stream=True)
        model = payload["model"]
        logger.info(f"{self.name} stream: model={model} messages={len(messages)}")

        async with self._client() as client:
            try:
                response = await self.with_retries(lambda: self._open_stream(client, payload))
            except ChatEngineError as e:
                yield TokenEvent.failure(e)
                return

            finish_reason = None
            try:
                async for data in iter_sse_data(response.aiter_lines()):
                    if data.strip() == DONE_SENTINEL:
                        break
                    chunk = parse_chunk(data)
                    if chunk is None:
                        continue
                    if isinstance(chunk.get("error"), dict):
                        message = chunk["error"].get("message", "stream error")
                        yield TokenEvent.failure(ModelUnavailableError(f"Model stream error: {message}"))
                        return

                    model = chunk.get("model") or model
                    choices = chunk.get("choices")
                    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                        continue
                    delta = choices[0].get("delta")
                    content = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(content, str) and content:
                        yield TokenEvent.token(content)
                    finish_reason = choices[0].get("finish_reason") or finish_reason

                yield TokenEvent.done(finish_reason=finish_reason, model_id=model)
            except httpx.TransportError as e:
                yield TokenEvent.failure(ModelUnavailableError(f"Model stream interrupted: {e}"))
            finally:
                await response.aclose()
