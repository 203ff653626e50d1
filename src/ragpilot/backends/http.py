"""
HTTP model backend for Ollama and OpenAI-compatible servers.

Transport failures (timeouts, refused connections) are retried with tenacity
and exponential backoff. Anything still failing after the last attempt is
raised as BackendCallFailure (or BackendTimeout), which the pipeline stages
know how to degrade from.

Wire formats:
- ollama: POST /api/chat (NDJSON when streaming), POST /api/embeddings
- openai: POST /chat/completions (SSE "data:" lines when streaming), POST /embeddings
"""

import json
import time
from collections.abc import Sequence
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.settings import ModelEndpoint
from ..errors import BackendCallFailure, BackendTimeout, ConfigurationError
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from .base import ChatMessage, StreamSink

logger = get_logger(__name__)

_TRANSIENT = (httpx.TimeoutException, httpx.ConnectError)


class HttpLLMBackend:
    """LLMBackend implementation over httpx."""

    def __init__(
        self,
        chat_endpoint: ModelEndpoint | None,
        embedding_endpoint: ModelEndpoint | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if chat_endpoint is None:
            raise ConfigurationError("No chat model configured. Set RAGPILOT_MODELS__CHAT__NAME.")
        self.chat_endpoint = chat_endpoint
        self.embedding_endpoint = embedding_endpoint
        self._http_client = http_client or httpx.AsyncClient(
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )
        self._owned_client = http_client is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owned_client:
            await self._http_client.aclose()

    async def chat(
        self, messages: Sequence[ChatMessage], stream_sink: StreamSink | None = None
    ) -> str:
        endpoint = self.chat_endpoint
        start = time.perf_counter()
        success = False
        try:
            if stream_sink is not None:
                text = await self._stream_chat(endpoint, list(messages), stream_sink)
            else:
                data = await self._post_with_retry(
                    endpoint, self._chat_url(endpoint), self._chat_payload(endpoint, messages, False)
                )
                text = self._parse_chat(endpoint, data)
            success = True
            return text
        finally:
            get_metrics_collector().record_backend_call(
                "chat", time.perf_counter() - start, success
            )

    async def embed(self, text: str) -> list[float]:
        endpoint = self.embedding_endpoint
        if endpoint is None:
            raise BackendCallFailure("No embedding model configured", operation="embed")

        start = time.perf_counter()
        success = False
        try:
            if endpoint.provider == "openai":
                url = f"{endpoint.base_url}/embeddings"
                payload: dict[str, Any] = {"model": endpoint.name, "input": text}
            else:
                url = f"{endpoint.base_url}/api/embeddings"
                payload = {"model": endpoint.name, "prompt": text}

            data = await self._post_with_retry(endpoint, url, payload)
            try:
                if endpoint.provider == "openai":
                    vector = data["data"][0]["embedding"]
                else:
                    vector = data["embedding"]
            except (KeyError, IndexError, TypeError) as e:
                raise BackendCallFailure(
                    f"Malformed embedding response: {e}", "embed", endpoint.provider
                ) from e
            success = True
            return [float(x) for x in vector]
        finally:
            get_metrics_collector().record_backend_call(
                "embed", time.perf_counter() - start, success
            )

    async def _post_with_retry(
        self, endpoint: ModelEndpoint, url: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(endpoint.max_retries),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(_TRANSIENT),
                reraise=True,
            ):
                with attempt:
                    response = await self._http_client.post(
                        url,
                        json=payload,
                        headers=self._get_headers(endpoint),
                        timeout=endpoint.timeout,
                    )
                    response.raise_for_status()
                    return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Model call timed out: {url}")
            raise BackendTimeout(str(e) or "timeout", url, endpoint.provider) from e
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error(f"Model call failed: {url}: {e}")
            raise BackendCallFailure(str(e), url, endpoint.provider) from e
        raise BackendCallFailure("No attempt was made", url, endpoint.provider)

    async def _stream_chat(
        self, endpoint: ModelEndpoint, messages: list[ChatMessage], sink: StreamSink
    ) -> str:
        url = self._chat_url(endpoint)
        payload = self._chat_payload(endpoint, messages, True)
        pieces: list[str] = []
        try:
            # Only connection failures are retried: a retry after chunks were
            # delivered would duplicate output in the sink.
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(endpoint.max_retries),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(httpx.ConnectError),
                reraise=True,
            ):
                with attempt:
                    async with self._http_client.stream(
                        "POST",
                        url,
                        json=payload,
                        headers=self._get_headers(endpoint),
                        timeout=endpoint.timeout,
                    ) as response:
                        response.raise_for_status()
                        async for line in response.aiter_lines():
                            piece = self._parse_stream_line(endpoint, line)
                            if piece:
                                pieces.append(piece)
                                sink(piece)
        except httpx.TimeoutException as e:
            raise BackendTimeout(str(e) or "timeout", url, endpoint.provider) from e
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error(f"Streaming model call failed: {url}: {e}")
            raise BackendCallFailure(str(e), url, endpoint.provider) from e
        return "".join(pieces)

    @staticmethod
    def _chat_url(endpoint: ModelEndpoint) -> str:
        if endpoint.provider == "openai":
            return f"{endpoint.base_url}/chat/completions"
        return f"{endpoint.base_url}/api/chat"

    @staticmethod
    def _chat_payload(
        endpoint: ModelEndpoint, messages: Sequence[ChatMessage], stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": endpoint.name,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": stream,
        }
        if endpoint.provider == "openai":
            payload["temperature"] = endpoint.temperature
        else:
            payload["options"] = {"temperature": endpoint.temperature}
        return payload

    @staticmethod
    def _parse_chat(endpoint: ModelEndpoint, data: dict[str, Any]) -> str:
        try:
            if endpoint.provider == "openai":
                return data["choices"][0]["message"]["content"] or ""
            return data["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise BackendCallFailure(
                f"Malformed chat response: {e}", "chat", endpoint.provider
            ) from e

    @staticmethod
    def _parse_stream_line(endpoint: ModelEndpoint, line: str) -> str:
        line = line.strip()
        if not line:
            return ""

        if endpoint.provider == "openai":
            if not line.startswith("data:"):
                return ""
            body = line[len("data:") :].strip()
            if body == "[DONE]":
                return ""
            chunk = json.loads(body)
            choices = chunk.get("choices") or [{}]
            return (choices[0].get("delta") or {}).get("content") or ""

        chunk = json.loads(line)
        return (chunk.get("message") or {}).get("content") or ""

    @staticmethod
    def _get_headers(endpoint: ModelEndpoint) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        return headers
