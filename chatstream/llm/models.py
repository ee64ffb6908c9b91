"""
Core LLM dataclasses for OpenAI-compatible chat completions.

This module provides:
- Per-call generation options and their resolution against configured defaults
- The resolved request parameters sent on the wire
- Model listing entries
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class ModelInfo:
    """Entry returned by the models listing."""
    id: str
    owned_by: str = "local"

    @classmethod
    def from_payload(cls, item: Any) -> ModelInfo:
        """Accept either a bare model id or an object with an ``id`` field."""
        if isinstance(item, str):
            return cls(id=item)
        if isinstance(item, dict) and item.get("id"):
            return cls(id=str(item["id"]), owned_by=item.get("owned_by") or "local")
        raise ValueError(f"Unrecognized model entry: {item!r}")


@dataclass(frozen=True)
class GenerationParams:
    """Fully resolved generation parameters for one request."""
    model: str
    temperature: float
    top_p: float
    max_tokens: int

    def to_payload(
        self, messages: list[dict[str, str]], stream: bool = True
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }


@dataclass(frozen=True)
class GenerationOptions:
    """Per-call overrides; any field left as None falls back to configuration."""
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None

    def resolve(self, defaults: dict[str, Any]) -> GenerationParams:
        """
        Merge these options over the configured defaults.

        Raises:
            ConfigurationError: If no non-empty model identifier results.
        """
        # A blank override falls back to the configured model
        model = (self.model or "").strip() or (defaults.get("model") or "").strip()
        if not model:
            raise ConfigurationError(
                "No model selected. Set llm.model in config.yaml or pass a model."
            )

        def pick(value: Any, key: str) -> Any:
            return value if value is not None else defaults[key]

        return GenerationParams(
            model=model,
            temperature=float(pick(self.temperature, "temperature")),
            top_p=float(pick(self.top_p, "top_p")),
            max_tokens=int(pick(self.max_tokens, "max_tokens")),
        )
