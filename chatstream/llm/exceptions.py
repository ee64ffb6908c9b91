"""
Error taxonomy for streaming chat completions.

Every failure the core can surface derives from LLMError and carries as much
upstream context as is available:
- ConfigurationError: no usable model or endpoint, raised before any request
- EndpointError: non-success status or malformed response envelope
- TransportError: connection-level failure
- GenerationCancelledError: user-initiated stop, never shown as a failure
- GenerationInProgressError: a second generation on a busy conversation

A single malformed stream line is not an error at all; the frame decoder
absorbs it as an ignorable frame.
"""

from __future__ import annotations


class LLMError(Exception):
    """Base LLM error with rich context."""

    def __init__(
        self,
        message: str,
        model: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.model = model
        self.status_code = status_code
        self.body = body or ""


class ConfigurationError(LLMError):
    """No usable model or endpoint could be resolved."""
    pass


class EndpointError(LLMError):
    """Endpoint answered with a non-success status or an unusable envelope."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, body=body, **kwargs)


class TransportError(LLMError):
    """Connection-level failure talking to the endpoint."""
    pass


class GenerationCancelledError(LLMError):
    """Generation was stopped on request."""

    def __init__(self, message: str = "Generation stopped", **kwargs):
        super().__init__(message, **kwargs)


class GenerationInProgressError(LLMError):
    """A generation is already streaming into this conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} already has a generation in progress"
        )
        self.conversation_id = conversation_id
