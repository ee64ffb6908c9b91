# chatstream/history/models.py
from __future__ import annotations

import secrets
import string
import time
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]

DEFAULT_TITLE = "New Chat"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if value == 0:
            return "".join(reversed(digits))


def generate_conversation_id() -> str:
    """
    Opaque, unique id: creation time in base36 plus a random suffix.
    """
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"conv_{_to_base36(int(time.time() * 1000))}_{suffix}"


def _now() -> datetime:
    return datetime.now(UTC)


class Message(BaseModel):
    """
    One turn of a conversation. The role is fixed at creation; content is
    only rewritten for the streaming assistant message.
    """
    model_config = ConfigDict(validate_assignment=True)

    role: Role = Field(frozen=True)
    content: str = ""
    timestamp: datetime = Field(default_factory=_now)

    def to_api(self) -> dict[str, str]:
        """OpenAI-style ``{role, content}`` dict."""
        return {"role": self.role, "content": self.content}


class Conversation(BaseModel):
    """
    Durable conversation record: ordered messages plus metadata.
    """
    id: str = Field(default_factory=generate_conversation_id)
    title: str = DEFAULT_TITLE
    messages: list[Message] = Field(default_factory=list)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def touch(self) -> None:
        self.updated_at = _now()

    def last_index_of(self, role: Role) -> int | None:
        """Index of the most recent message with ``role``, scanning from the end."""
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index].role == role:
                return index
        return None

    def count_role(self, role: Role) -> int:
        return sum(1 for m in self.messages if m.role == role)
