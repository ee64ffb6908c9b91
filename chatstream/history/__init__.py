"""
Durable conversation history.
"""

from .chat_store import (
    ConversationNotFoundError,
    ConversationStore,
    JsonKeyValueStore,
)
from .models import Conversation, Message, Role

__all__ = [
    "Conversation",
    "ConversationNotFoundError",
    "ConversationStore",
    "JsonKeyValueStore",
    "Message",
    "Role",
]
