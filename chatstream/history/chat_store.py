"""
Conversation Storage Module

This module provides the durable conversation log used by the streaming
session. Conversations are kept as whole records in a small key-value store
on disk: one JSON document per stable key, replaced atomically on every
write and guarded by a cross-process file lock.

Key Components:
- JsonKeyValueStore: async key-value storage, one JSON file per key
- ConversationStore: ordered per-conversation message log with append,
  patch-last-of-role and full-replace operations

Every ConversationStore call persists the entire record list before it
returns, so a caller that awaited an operation can rely on it being durable.
There is no cross-operation transaction: a reader may observe the empty
assistant placeholder before the first delta patches it.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from filelock import FileLock, Timeout
from pydantic import ValidationError

from .conversation_utils import TITLE_MAX_LENGTH, derive_title
from .models import (
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TITLE,
    Conversation,
    Message,
    Role,
)

logger = logging.getLogger(__name__)

CONVERSATIONS_KEY = "chatstream_conversations"
ACTIVE_KEY = "chatstream_active_conversation"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


@asynccontextmanager
async def async_file_lock(
    file_path: str | Path, timeout: float = 30.0
) -> AsyncGenerator[None]:
    """
    Async context manager for cross-process file locking with timeout.

    Creates a lock file alongside the target file and holds it for the
    duration of the block. Blocking acquisition runs in the default executor.

    Args:
        file_path: Path to the file that needs to be locked
        timeout: Maximum time to wait for the lock (seconds)

    Raises:
        TimeoutError: If the lock cannot be acquired within the timeout period
    """
    lock_path = f"{file_path}.lock"
    file_lock = FileLock(lock_path, timeout=timeout)
    loop = asyncio.get_running_loop()

    try:
        await loop.run_in_executor(None, file_lock.acquire)
    except Timeout as e:
        raise TimeoutError(f"Failed to acquire file lock within {timeout}s") from e

    try:
        yield
    finally:
        # Lock file cleanup is left to the OS if release fails
        with suppress(OSError):
            await loop.run_in_executor(None, file_lock.release)


class ConversationNotFoundError(KeyError):
    """No conversation with the given id exists."""

    def __init__(self, conversation_id: str):
        super().__init__(conversation_id)
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return f"Conversation not found: {self.conversation_id}"


# ---------- Key-value storage ----------

class JsonKeyValueStore:
    """
    Durable key-value storage with one JSON document per key.

    Writes go to a temporary file which then replaces the target, so a crash
    leaves either the old or the new document, never a torn one.

    Durability Options:
    - fsync_enabled: When True, forces data to persistent storage before the
      replace
    - When False, relies on OS buffer flushing for better performance
    """

    def __init__(
        self,
        directory: str | Path,
        fsync_enabled: bool = True,
        lock_timeout: float = 30.0,
    ):
        self.directory = Path(directory).expanduser()
        self.fsync_enabled = fsync_enabled
        self.lock_timeout = lock_timeout

    def path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    async def get(self, key: str, default: Any = None) -> Any:
        """Read the value stored under ``key``; ``default`` if absent or corrupt."""
        path = self.path_for(key)
        if not await aiofiles.os.path.exists(path):
            return default

        async with (
            async_file_lock(path, self.lock_timeout),
            aiofiles.open(path, encoding="utf-8") as f,
        ):
            raw = await f.read()

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable value for '{key}' in {path}: {e}")
            return default

    async def set(self, key: str, value: Any) -> None:
        """Atomically replace the value stored under ``key``."""
        path = self.path_for(key)
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        data = json.dumps(value, ensure_ascii=False)

        async with async_file_lock(path, self.lock_timeout):
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(data)
                await f.flush()
                if self.fsync_enabled:
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, os.fsync, f.fileno())
            await aiofiles.os.replace(tmp_path, path)

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        if not await aiofiles.os.path.exists(path):
            return
        async with async_file_lock(path, self.lock_timeout):
            with suppress(FileNotFoundError):
                await aiofiles.os.remove(path)


# ---------- Conversation store ----------

class ConversationStore:
    """
    Ordered conversation log with whole-record persistence.

    Conversations are listed most-recently-created first; messages within a
    conversation are strictly chronological. Only the most recent message of
    a role may be rewritten in place (``patch_last``), which is how the
    streaming assistant answer is kept current.
    """

    def __init__(
        self,
        storage: JsonKeyValueStore,
        default_title: str = DEFAULT_TITLE,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        title_max_length: int = TITLE_MAX_LENGTH,
    ):
        self.storage = storage
        self.default_title = default_title
        self.system_prompt = system_prompt
        self.title_max_length = title_max_length
        self._lock = asyncio.Lock()
        self._conversations: list[Conversation] = []
        self._active_id: str | None = None
        # Initialize on first access to avoid I/O in __init__
        self._loaded = False

    @classmethod
    def from_config(
        cls, storage_config: dict[str, Any], conversation_config: dict[str, Any]
    ) -> ConversationStore:
        """Build a store from the ``storage`` and ``conversation`` sections."""
        storage = JsonKeyValueStore(
            storage_config["path"],
            fsync_enabled=storage_config["fsync"],
            lock_timeout=storage_config["lock_timeout"],
        )
        return cls(
            storage,
            default_title=conversation_config["default_title"],
            system_prompt=conversation_config["system_prompt"],
            title_max_length=conversation_config["title_max_length"],
        )

    # ---- loading / persistence (call with lock held) ----

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        records = await self.storage.get(CONVERSATIONS_KEY, [])
        if not isinstance(records, list):
            logger.warning("Stored conversation list is not a list; starting empty")
            records = []

        for record in records:
            try:
                self._conversations.append(Conversation.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping invalid conversation record: {e}")
                continue

        active_id = await self.storage.get(ACTIVE_KEY)
        self._active_id = active_id if isinstance(active_id, str) else None
        self._loaded = True

    async def _persist(self) -> None:
        await self.storage.set(
            CONVERSATIONS_KEY,
            [c.model_dump(mode="json") for c in self._conversations],
        )

    async def _persist_active(self) -> None:
        if self._active_id is None:
            await self.storage.delete(ACTIVE_KEY)
        else:
            await self.storage.set(ACTIVE_KEY, self._active_id)

    def _find(self, conversation_id: str) -> Conversation:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        raise ConversationNotFoundError(conversation_id)

    # ---- conversations ----

    async def create(
        self, title: str | None = None, system_prompt: str | None = None
    ) -> Conversation:
        """Create a conversation, list it first and make it active."""
        async with self._lock:
            await self._ensure_loaded()
            conversation = Conversation(
                title=title or self.default_title,
                system_prompt=(
                    system_prompt if system_prompt is not None else self.system_prompt
                ),
            )
            self._conversations.insert(0, conversation)
            self._active_id = conversation.id
            await self._persist()
            await self._persist_active()
            logger.info(f"Created conversation {conversation.id}")
            return conversation.model_copy(deep=True)

    async def get(self, conversation_id: str) -> Conversation | None:
        async with self._lock:
            await self._ensure_loaded()
            try:
                return self._find(conversation_id).model_copy(deep=True)
            except ConversationNotFoundError:
                return None

    async def list_conversations(self) -> list[Conversation]:
        """All conversations, most recently created first."""
        async with self._lock:
            await self._ensure_loaded()
            return [c.model_copy(deep=True) for c in self._conversations]

    async def active_id(self) -> str | None:
        async with self._lock:
            await self._ensure_loaded()
            return self._active_id

    async def set_active(self, conversation_id: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._find(conversation_id)
            self._active_id = conversation_id
            await self._persist_active()

    async def get_active(self) -> Conversation | None:
        active_id = await self.active_id()
        if active_id is None:
            return None
        return await self.get(active_id)

    async def update(self, conversation_id: str, **fields: Any) -> Conversation:
        """Replace top-level fields (title, system_prompt, messages)."""
        async with self._lock:
            await self._ensure_loaded()
            current = self._find(conversation_id)
            updated = Conversation.model_validate(
                {**current.model_dump(), **fields, "id": current.id}
            )
            updated.touch()
            index = self._conversations.index(current)
            self._conversations[index] = updated
            await self._persist()
            return updated.model_copy(deep=True)

    async def rename(self, conversation_id: str, title: str) -> Conversation:
        title = title.strip()
        if not title:
            raise ValueError("Conversation title must not be empty")
        return await self.update(conversation_id, title=title)

    async def delete(self, conversation_id: str) -> None:
        """
        Delete a conversation. If it was active, the first remaining
        conversation becomes active (or none).
        """
        async with self._lock:
            await self._ensure_loaded()
            self._conversations.remove(self._find(conversation_id))
            await self._persist()
            if self._active_id == conversation_id:
                self._active_id = (
                    self._conversations[0].id if self._conversations else None
                )
                await self._persist_active()
            logger.info(f"Deleted conversation {conversation_id}")

    async def clear_all(self) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._conversations.clear()
            self._active_id = None
            await self.storage.delete(CONVERSATIONS_KEY)
            await self.storage.delete(ACTIVE_KEY)

    # ---- messages ----

    async def append(self, conversation_id: str, role: Role, content: str) -> Message:
        """
        Append a message and persist.

        The first user message of a conversation still carrying the default
        title also sets the title.
        """
        async with self._lock:
            await self._ensure_loaded()
            conversation = self._find(conversation_id)
            message = Message(role=role, content=content)
            conversation.messages.append(message)

            if (
                role == "user"
                and conversation.count_role("user") == 1
                and conversation.title == self.default_title
            ):
                conversation.title = derive_title(content, self.title_max_length)

            conversation.touch()
            await self._persist()
            return message.model_copy()

    async def patch_last(self, conversation_id: str, role: Role, content: str) -> bool:
        """
        Replace the content of the most recent message with ``role``.

        Returns:
            bool: False (and nothing written) if no message has that role
        """
        async with self._lock:
            await self._ensure_loaded()
            conversation = self._find(conversation_id)
            index = conversation.last_index_of(role)
            if index is None:
                return False
            conversation.messages[index].content = content
            conversation.touch()
            await self._persist()
            return True

    async def remove(
        self, conversation_id: str, messages: list[Message]
    ) -> Conversation:
        """Replace the whole message list (drop a placeholder, truncate)."""
        async with self._lock:
            await self._ensure_loaded()
            conversation = self._find(conversation_id)
            conversation.messages = [m.model_copy() for m in messages]
            conversation.touch()
            await self._persist()
            return conversation.model_copy(deep=True)
