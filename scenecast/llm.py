"""LLM client: streaming connection to a text-completion backend.

The pipeline injects an LLM object matching the protocol:

    def stream(self, stage: Stage, prompt: str) -> AsyncIterator[str]: ...
    async def is_ready(self) -> bool: ...

`stream` yields text chunks in generation order. Running out of chunks is
the one terminal event of a request; an exception raised mid-iteration is a
fatal engine failure. `stage` tells the implementation which pipeline stage
is calling; it may use it for logging or routing, never for parsing.

Two implementations are provided:

    HttpLLM   real streaming HTTP client, supports KoboldCpp and
              OpenAI-compatible backends. Selected by provider_format.
    EchoLLM   streams the prompt back unchanged. Useful for smoke-testing
              the pipeline wiring without a running model.

Tests use StubLLM (defined in the test helpers) instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Literal, Protocol

import httpx

from scenecast.models import Stage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match these signatures
# ---------------------------------------------------------------------------

class LLM(Protocol):
    def stream(self, stage: Stage, prompt: str) -> AsyncIterator[str]: ...

    async def is_ready(self) -> bool: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async streaming HTTP client for text-completion backends.

    Supported formats:
      "koboldcpp"   POST /api/extra/generate/stream  {"prompt": ...}
                     SSE events: data: {"token": "..."}
      "openai"      POST /v1/completions  {"model": ..., "prompt": ..., "stream": true}
                     SSE events: data: {"choices": [{"text": "..."}]}, then data: [DONE]

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Model identifier, used only by the openai format.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        transport:       Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {"prompt": prompt, "stream": True}
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/extra/generate/stream"
        return url, {"prompt": prompt}

    def _parse_event(self, data: str) -> str | None:
        """Extract the text chunk from one SSE data payload.

        Returns None for the OpenAI end-of-stream sentinel.
        """
        if data == "[DONE]":
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise LLMError(f"Malformed stream event from LLM backend: {data[:80]!r}") from e

        if self._format == "openai":
            choices = payload.get("choices")
            if not choices or "text" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        # koboldcpp
        if "token" not in payload:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return payload["token"]

    async def stream(self, stage: Stage, prompt: str) -> AsyncIterator[str]:
        url, body = self._build_request(prompt)
        logger.debug("llm stream stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        received = 0
        try:
            async with self._client(self._timeout) as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        chunk = self._parse_event(line[len("data:"):].strip())
                        if chunk is None:
                            break
                        if chunk:
                            received += len(chunk)
                            yield chunk
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM stream interrupted: {e}") from e

        logger.debug("llm stream done stage=%s len=%d", stage, received)

    async def is_ready(self) -> bool:
        """Quick health check: is a model loaded and answering?"""
        path = "/v1/models" if self._format == "openai" else "/api/v1/model"
        try:
            async with self._client(5.0) as client:
                resp = await client.get(f"{self._base_url}{path}", headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug("llm readiness probe failed: %s", e)
            return False
        return True


# ---------------------------------------------------------------------------
# EchoLLM: streams the prompt unchanged; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Streams the prompt text back in fixed-size chunks. No network calls.

    Lets you verify the pipeline wiring (stage sequencing, display updates,
    storage writes) end-to-end without a running model. The output won't
    carry the summary marker, so player turns abort at the summary stage;
    use StubLLM in tests when you need controlled responses.
    """

    def __init__(self, chunk_size: int = 16) -> None:
        self._chunk_size = chunk_size

    async def stream(self, stage: Stage, prompt: str) -> AsyncIterator[str]:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        for i in range(0, len(prompt), self._chunk_size):
            yield prompt[i:i + self._chunk_size]

    async def is_ready(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or fails mid-stream."""
