"""
Chat Service for chatstream

This module owns the streaming completion session: the one in-flight
generation per conversation. It handles:
- Resolving generation parameters (failing fast without a model)
- Appending the assistant placeholder before any bytes arrive
- Feeding each decoded delta to the renderer and the conversation store
- Cancellation that keeps partial answers and drops empty placeholders
- Send and regenerate flows built on top of the store

Each delta is applied synchronously relative to its arrival: the buffer
grows, the full buffer is re-rendered, and the last assistant message is
patched before the next frame is read, so persisted state is never more than
one delta behind what is displayed.

Starting a second generation on a conversation that already has one in
flight is rejected with GenerationInProgressError.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import aclosing, contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from chatstream.history.chat_store import ConversationNotFoundError, ConversationStore
from chatstream.history.conversation_utils import build_request_messages, estimate_tokens
from chatstream.llm.exceptions import GenerationInProgressError
from chatstream.llm.models import GenerationOptions, GenerationParams
from chatstream.llm.streaming.models import DecodedFrame, FrameType
from chatstream.logging_utils import operation_context
from chatstream.render.markdown import render
from chatstream.render.nodes import Document

if TYPE_CHECKING:                                        # pragma: no cover
    from chatstream.llm.client import LLMClient

logger = structlog.get_logger(__name__)

Renderer = Callable[[str], Document]


class StreamStatus(Enum):
    """Lifecycle of a streaming session."""
    STREAMING = "streaming"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamUpdate:
    """One applied delta: the fragment, the full text so far and its render."""
    delta: str
    text: str
    tree: Document


@dataclass(frozen=True)
class StreamResult:
    """Final outcome of a session."""
    status: StreamStatus
    content: str
    error: Exception | None = None


class StreamSession:
    """
    One in-flight generation for a conversation.

    The session is both the cancellation handle and an async iterator of
    StreamUpdate values. Iteration ends quietly on completion or
    cancellation; a genuine failure is raised once from the iterator and is
    also available from ``wait()``.
    """

    def __init__(
        self,
        conversation_id: str,
        store: ConversationStore,
        renderer: Renderer = render,
    ):
        self.conversation_id = conversation_id
        self.status = StreamStatus.STREAMING
        self.text = ""
        self.tree = Document()
        self.delta_count = 0
        self.error: Exception | None = None

        self.started_at = time.perf_counter()
        self.first_token_at: float | None = None
        self.finished_at: float | None = None

        self._store = store
        self._render = renderer
        self._deltas: asyncio.Queue[str | None] = asyncio.Queue()
        self._consumed = 0
        self._error_raised = False
        self._task: asyncio.Task | None = None
        self._on_close: Callable[[StreamSession], None] | None = None
        self._cancel_requested = False
        self._closed = False
        self._done = asyncio.Event()

    # ---- state ----

    @property
    def active(self) -> bool:
        return self.status is StreamStatus.STREAMING

    @property
    def first_token_latency(self) -> float | None:
        if self.first_token_at is None:
            return None
        return self.first_token_at - self.started_at

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.text)

    @property
    def tokens_per_second(self) -> float:
        """Estimated tokens per second since the first delta arrived."""
        if self.first_token_at is None:
            return 0.0
        end = self.finished_at or time.perf_counter()
        elapsed = end - self.first_token_at
        return self.estimated_tokens / elapsed if elapsed > 0 else 0.0

    def result(self) -> StreamResult:
        return StreamResult(self.status, self.text, self.error)

    # ---- lifecycle ----

    def _attach(
        self, task: asyncio.Task, on_close: Callable[[StreamSession], None]
    ) -> None:
        self._task = task
        self._on_close = on_close

    async def _run(self, frames: AsyncIterator[DecodedFrame]) -> None:
        """Pump decoded frames into the buffer, renderer and store."""
        try:
            async with aclosing(frames), operation_context(
                "stream_completion",
                context={"conversation_id": self.conversation_id},
            ):
                async for frame in frames:
                    if frame.type is FrameType.CONTENT:
                        await self._apply_delta(frame.text)
                    elif frame.is_terminal:
                        break
                await self._finish()

        except asyncio.CancelledError:
            await self._abandon(StreamStatus.CANCELLED)
            raise

        except Exception as e:
            await self._abandon(StreamStatus.FAILED, e)

        finally:
            self._close()

    async def _apply_delta(self, delta: str) -> None:
        if self.first_token_at is None:
            self.first_token_at = time.perf_counter()
        self.text += delta
        self.delta_count += 1
        self.tree = self._render(self.text)
        await self._store.patch_last(self.conversation_id, "assistant", self.text)
        self._deltas.put_nowait(delta)

    async def _finish(self) -> None:
        await self._store.patch_last(self.conversation_id, "assistant", self.text)
        self.status = StreamStatus.FINISHED
        logger.info(
            "Generation finished",
            conversation_id=self.conversation_id,
            deltas=self.delta_count,
            characters=len(self.text),
        )

    async def _abandon(
        self, status: StreamStatus, error: Exception | None = None
    ) -> None:
        """Keep partial content as final, or drop an empty placeholder."""
        self.status = status
        self.error = error
        if self.text:
            await self._store.patch_last(self.conversation_id, "assistant", self.text)
        else:
            await self._drop_placeholder()

    async def _drop_placeholder(self) -> None:
        conversation = await self._store.get(self.conversation_id)
        if conversation is None:
            return
        messages = conversation.messages
        if messages and messages[-1].role == "assistant" and not messages[-1].content:
            await self._store.remove(self.conversation_id, messages[:-1])

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.finished_at = time.perf_counter()
        self._deltas.put_nowait(None)
        self._done.set()
        if self._on_close is not None:
            self._on_close(self)

    async def cancel(self) -> None:
        """
        Stop the generation. Idempotent and safe after completion.

        The in-flight read is aborted, which closes the HTTP response.
        """
        if self._task is None or self._closed:
            return
        if not self._cancel_requested:
            self._cancel_requested = True
            self._task.cancel()
        await asyncio.wait([self._task])

        if not self._closed:
            # Cancelled before the pump ever ran
            await self._abandon(StreamStatus.CANCELLED)
            self._close()

    async def wait(self) -> StreamResult:
        """Wait for the session to end and return its outcome."""
        await self._done.wait()
        if (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is not None
        ):
            raise self._task.exception()
        return self.result()

    # ---- iteration ----

    def __aiter__(self) -> StreamSession:
        return self

    async def __anext__(self) -> StreamUpdate:
        delta = await self._deltas.get()
        if delta is None:
            # Keep the terminal marker for any later iteration
            self._deltas.put_nowait(None)
            if self.status is StreamStatus.FAILED and not self._error_raised:
                self._error_raised = True
                if self.error is not None:
                    raise self.error
            raise StopAsyncIteration

        self._consumed += len(delta)
        if self._consumed == len(self.text):
            return StreamUpdate(delta, self.text, self.tree)
        text = self.text[:self._consumed]
        return StreamUpdate(delta, text, self._render(text))


class ChatService:
    """
    Conversation orchestrator for streaming generations.

    Holds at most one StreamSession per conversation. Sessions on different
    conversations run independently and share only the store.
    """

    def __init__(
        self,
        client: LLMClient,
        store: ConversationStore,
        llm_config: dict[str, Any],
        renderer: Renderer = render,
    ):
        self.client = client
        self.store = store
        self.llm_config = llm_config
        self.renderer = renderer
        self._sessions: dict[str, StreamSession] = {}
        # Conversations claimed by a send/regenerate/start that has not yet
        # registered its session
        self._reserved: set[str] = set()

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions or conversation_id in self._reserved

    def session_for(self, conversation_id: str) -> StreamSession | None:
        return self._sessions.get(conversation_id)

    def resolve_params(self, options: GenerationOptions | None = None) -> GenerationParams:
        """Raises ConfigurationError when no model can be resolved."""
        return (options or GenerationOptions()).resolve(self.llm_config)

    @contextmanager
    def _reserve(self, conversation_id: str) -> Iterator[None]:
        """Claim the conversation synchronously, before any await."""
        if self.is_generating(conversation_id):
            raise GenerationInProgressError(conversation_id)
        self._reserved.add(conversation_id)
        try:
            yield
        finally:
            self._reserved.discard(conversation_id)

    async def start(
        self,
        conversation_id: str,
        messages: list[dict[str, str]],
        options: GenerationOptions | None = None,
    ) -> StreamSession:
        """
        Start streaming a completion into ``conversation_id``.

        Appends the empty assistant placeholder before any network activity
        and returns the running session.

        Raises:
            ConfigurationError: No model could be resolved.
            GenerationInProgressError: The conversation is already streaming.
            ConversationNotFoundError: Unknown conversation.
        """
        params = self.resolve_params(options)
        with self._reserve(conversation_id):
            return await self._start(conversation_id, messages, params)

    async def _start(
        self,
        conversation_id: str,
        messages: list[dict[str, str]],
        params: GenerationParams,
    ) -> StreamSession:
        session = StreamSession(conversation_id, self.store, self.renderer)
        self._sessions[conversation_id] = session
        try:
            await self.store.append(conversation_id, "assistant", "")
        except Exception:
            self._sessions.pop(conversation_id, None)
            raise

        logger.info(
            "Generation started",
            conversation_id=conversation_id,
            model=params.model,
            messages=len(messages),
        )
        task = asyncio.create_task(
            session._run(self.client.stream_chat(messages, params)),
            name=f"stream:{conversation_id}",
        )
        session._attach(task, on_close=self._release)
        return session

    def _release(self, session: StreamSession) -> None:
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]

    async def cancel(self, conversation_id: str) -> bool:
        """Cancel the live session for a conversation, if any."""
        session = self._sessions.get(conversation_id)
        if session is None:
            return False
        await session.cancel()
        return True

    async def send(
        self,
        conversation_id: str,
        text: str,
        options: GenerationOptions | None = None,
    ) -> StreamSession:
        """
        Append a user message and stream the answer to the full history.

        A rejected call writes nothing to the conversation.
        """
        params = self.resolve_params(options)
        with self._reserve(conversation_id):
            await self.store.append(conversation_id, "user", text)
            conversation = await self.store.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            return await self._start(
                conversation_id, build_request_messages(conversation), params
            )

    async def regenerate(
        self, conversation_id: str, options: GenerationOptions | None = None
    ) -> StreamSession:
        """Drop a trailing assistant answer and stream a new one."""
        params = self.resolve_params(options)
        with self._reserve(conversation_id):
            conversation = await self.store.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            messages = conversation.messages
            if messages and messages[-1].role == "assistant":
                conversation = await self.store.remove(conversation_id, messages[:-1])
            if not any(m.role == "user" for m in conversation.messages):
                raise ValueError("Nothing to regenerate: conversation has no user message")

            return await self._start(
                conversation_id, build_request_messages(conversation), params
            )

    async def shutdown(self) -> None:
        """Cancel every live session."""
        for session in list(self._sessions.values()):
            await session.cancel()
