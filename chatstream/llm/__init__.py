"""
OpenAI-compatible LLM integration.

This package provides:
- Generation options and resolved request parameters
- A typed error taxonomy for configuration, endpoint and transport failures
- SSE frame decoding (``chatstream.llm.streaming``)
- The async HTTP client (``chatstream.llm.client``)
"""

from __future__ import annotations

from .exceptions import (
    ConfigurationError,
    EndpointError,
    GenerationCancelledError,
    GenerationInProgressError,
    LLMError,
    TransportError,
)
from .models import (
    GenerationOptions,
    GenerationParams,
    ModelInfo,
)

__all__ = [
    "ConfigurationError",
    "EndpointError",
    "GenerationCancelledError",
    "GenerationInProgressError",
    "GenerationOptions",
    "GenerationParams",
    "LLMError",
    "ModelInfo",
    "TransportError",
]
