"""
Conversation utilities for building requests and deriving metadata.

This module provides helpers for turning a stored conversation into the
OpenAI-style message list sent to the endpoint, plus the small text
heuristics (title derivation, token estimates) used around it.
"""

from __future__ import annotations

import math

from .models import Conversation

TITLE_MAX_LENGTH = 40
TITLE_ELLIPSIS = "…"


def build_request_messages(conversation: Conversation) -> list[dict[str, str]]:
    """
    Build the request message list for a conversation.

    The system prompt goes first when set, followed by the stored history in
    chronological order.

    Args:
        conversation: The conversation to send

    Returns:
        list of ``{role, content}`` dicts
    """
    messages: list[dict[str, str]] = []
    if conversation.system_prompt:
        messages.append({"role": "system", "content": conversation.system_prompt})
    messages.extend(m.to_api() for m in conversation.messages)
    return messages


def derive_title(content: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    """First ``max_length`` characters, with an ellipsis when truncated."""
    if len(content) > max_length:
        return content[:max_length] + TITLE_ELLIPSIS
    return content


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text or "") / 4)
