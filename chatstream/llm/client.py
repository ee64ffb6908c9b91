"""
HTTP client for OpenAI-compatible chat completion endpoints.

Talks to any endpoint exposing ``GET /models`` and ``POST /chat/completions``
(LM Studio, AnythingLLM, OpenAI, Groq and similar), decoding streamed answers
through the frame decoder.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import httpx

from ..logging_utils import log_operation
from .exceptions import EndpointError, TransportError
from .models import GenerationParams, ModelInfo
from .streaming.models import DecodedFrame
from .streaming.parser import FrameDecoder

DEFAULT_ENDPOINT = "http://localhost:1234/v1"
STREAM_CONTENT_TYPES = ("text/event-stream", "stream")


class LLMClient:
    """Async HTTP client for streaming chat completions."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        api_key: str | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = (endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self.api_key = api_key

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        # No read timeout by default: a hung stream is ended by cancellation
        self.client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=self.endpoint,
            headers=headers,
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout),
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        llm_config: dict[str, Any],
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> LLMClient:
        """Build a client from the validated ``llm`` configuration section."""
        return cls(
            endpoint=llm_config["endpoint"],
            api_key=api_key,
            connect_timeout=llm_config["connect_timeout"],
            read_timeout=llm_config["read_timeout"],
            transport=transport,
        )

    @log_operation("list_models")
    async def list_models(self) -> list[ModelInfo]:
        """Fetch the model identifiers the endpoint serves."""
        try:
            response = await self.client.get("/models")
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to fetch models: {e!s}") from e

        if response.is_error:
            raise EndpointError(
                f"Failed to fetch models: {response.status_code} "
                f"{response.reason_phrase}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EndpointError(
                f"Models listing is not JSON: {e!s}",
                status_code=response.status_code,
                body=response.text,
            ) from e

        entries = data.get("data", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise EndpointError(
                "Unexpected models listing format",
                status_code=response.status_code,
                body=response.text,
            )

        models = []
        for entry in entries:
            try:
                models.append(ModelInfo.from_payload(entry))
            except ValueError:
                continue
        return models

    async def check_connection(self) -> dict[str, Any]:
        """Probe the endpoint; never raises."""
        try:
            models = await self.list_models()
        except (EndpointError, TransportError) as e:
            return {"connected": False, "error": str(e)}
        return {"connected": True, "models": models}

    async def stream_chat(
        self, messages: list[dict[str, str]], params: GenerationParams
    ) -> AsyncGenerator[DecodedFrame]:
        """
        Stream a chat completion as decoded frames.

        Yields content frames followed by exactly one end frame. Leaving the
        generator early (end frame, cancellation, consumer break) closes the
        HTTP response.

        Raises:
            EndpointError: Non-success status or non-streaming response.
            TransportError: Connection-level failure.
        """
        payload = params.to_payload(messages, stream=True)
        decoder = FrameDecoder()

        try:
            async with self.client.stream(
                "POST", "/chat/completions", json=payload
            ) as response:
                if response.is_error:
                    error_text = (await response.aread()).decode(
                        "utf-8", errors="replace"
                    )
                    raise EndpointError(
                        f"API error {response.status_code}: "
                        f"{error_text or response.reason_phrase}",
                        status_code=response.status_code,
                        body=error_text,
                        model=params.model,
                    )

                content_type = response.headers.get("content-type", "")
                if not any(t in content_type for t in STREAM_CONTENT_TYPES):
                    error_text = (await response.aread()).decode(
                        "utf-8", errors="replace"
                    )
                    raise EndpointError(
                        f"Expected streaming response, got "
                        f"content-type: {content_type}",
                        status_code=response.status_code,
                        body=error_text,
                        model=params.model,
                    )

                async for frame in decoder.decode(response.aiter_bytes()):
                    yield frame

        except httpx.TransportError as e:
            raise TransportError(
                f"Connection error: {e!s}", model=params.model
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e!s}", model=params.model) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
