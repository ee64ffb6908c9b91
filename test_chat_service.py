#!/usr/bin/env python3
"""
Tests for the streaming chat session: delta application, finalization,
cancellation and failure handling against a mocked endpoint.
"""

import asyncio
import json

import httpx
import pytest

from chatstream.chat_service import ChatService, StreamStatus
from chatstream.history.chat_store import (
    ConversationNotFoundError,
    ConversationStore,
    JsonKeyValueStore,
)
from chatstream.llm.client import LLMClient
from chatstream.llm.exceptions import (
    ConfigurationError,
    EndpointError,
    GenerationInProgressError,
    TransportError,
)
from chatstream.llm.models import GenerationOptions
from chatstream.render import CodeBlock, Reasoning

LLM_CONFIG = {"model": "test-model", "temperature": 0.7, "top_p": 0.9, "max_tokens": 256}
SSE_HEADERS = {"content-type": "text/event-stream"}
DONE = b"data: [DONE]\n\n"


def sse(content=None, finish_reason=None):
    delta = {} if content is None else {"content": content}
    record = {"choices": [{"delta": delta, "finish_reason": finish_reason}]}
    return f"data: {json.dumps(record)}\n\n".encode()


def streaming(*chunks):
    """Handler answering every request with the given SSE chunks."""
    async def body():
        for chunk in chunks:
            yield chunk

    def handler(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=body())

    return handler


def hanging(*chunks, started=None):
    """Handler whose stream sends ``chunks`` and then never ends."""
    async def body():
        for chunk in chunks:
            yield chunk
        if started is not None:
            started.set()
        await asyncio.Event().wait()
        yield b""  # pragma: no cover

    def handler(request):
        return httpx.Response(200, headers=SSE_HEADERS, content=body())

    return handler


class SpyStore(ConversationStore):
    """Records every patch_last write."""

    def __init__(self, storage):
        super().__init__(storage)
        self.patches = []

    async def patch_last(self, conversation_id, role, content):
        self.patches.append(content)
        return await super().patch_last(conversation_id, role, content)


@pytest.fixture
def store(tmp_path):
    return SpyStore(JsonKeyValueStore(tmp_path, fsync_enabled=False))


def make_service(store, handler, **config):
    client = LLMClient(endpoint="http://llm.test/v1", transport=httpx.MockTransport(handler))
    return ChatService(client, store, {**LLM_CONFIG, **config})


async def messages_of(store, conversation_id):
    conversation = await store.get(conversation_id)
    return [(m.role, m.content) for m in conversation.messages]


class TestStreaming:
    """Normal completion."""

    @pytest.mark.asyncio
    async def test_deltas_accumulate_and_finalize_once(self, store):
        service = make_service(store, streaming(sse("Hel"), sse("lo, "), sse("world"), DONE))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        updates = [update async for update in session]
        result = await session.wait()

        assert [u.delta for u in updates] == ["Hel", "lo, ", "world"]
        assert [u.text for u in updates] == ["Hel", "Hello, ", "Hello, world"]
        assert result.status is StreamStatus.FINISHED
        assert result.content == "Hello, world"
        assert result.error is None
        # One patch per delta, then exactly one finalizing patch
        assert store.patches == ["Hel", "Hello, ", "Hello, world", "Hello, world"]
        assert await messages_of(store, conversation.id) == [
            ("user", "Hi"), ("assistant", "Hello, world"),
        ]
        assert not service.is_generating(conversation.id)

    @pytest.mark.asyncio
    async def test_finish_reason_terminates_stream(self, store):
        service = make_service(
            store, hanging(sse("done", finish_reason="stop"))
        )
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        result = await asyncio.wait_for(session.wait(), timeout=5)
        assert result.status is StreamStatus.FINISHED
        assert result.content == "done"

    @pytest.mark.asyncio
    async def test_placeholder_exists_before_first_byte(self, store):
        conversation = await store.create()
        seen = {}

        async def handler(request):
            seen["messages"] = await messages_of(store, conversation.id)
            seen["request"] = json.loads(request.content)["messages"]
            return httpx.Response(200, headers=SSE_HEADERS, content=DONE)

        service = make_service(store, handler)
        session = await service.send(conversation.id, "Question?")
        await session.wait()

        assert seen["messages"] == [("user", "Question?"), ("assistant", "")]
        assert seen["request"] == [
            {"role": "system", "content": "You are a helpful AI assistant."},
            {"role": "user", "content": "Question?"},
        ]

    @pytest.mark.asyncio
    async def test_updates_carry_render_tree(self, store):
        service = make_service(
            store, streaming(sse("<think>step one"), sse("</think>\n```html\n<b>"), DONE)
        )
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        updates = [update async for update in session]

        first = updates[0].tree.children
        assert len(first) == 1
        assert isinstance(first[0], Reasoning) and not first[0].complete

        last = updates[-1].tree.children
        assert isinstance(last[0], Reasoning) and last[0].complete
        assert isinstance(last[1], CodeBlock) and not last[1].closed
        assert last[1].previewable

    @pytest.mark.asyncio
    async def test_session_statistics(self, store):
        service = make_service(store, streaming(sse("a"), sse("b"), DONE))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await session.wait()
        assert session.delta_count == 2
        assert session.first_token_latency is not None
        assert session.tokens_per_second >= 0

    @pytest.mark.asyncio
    async def test_independent_conversations(self, store):
        service = make_service(store, streaming(sse("same"), DONE))
        first = await store.create()
        second = await store.create()

        sessions = [
            await service.send(first.id, "one"),
            await service.send(second.id, "two"),
        ]
        results = await asyncio.gather(*(s.wait() for s in sessions))

        assert [r.status for r in results] == [StreamStatus.FINISHED] * 2
        assert (await messages_of(store, first.id))[-1] == ("assistant", "same")
        assert (await messages_of(store, second.id))[-1] == ("assistant", "same")


class TestCancellation:
    """Stopping a generation."""

    @pytest.mark.asyncio
    async def test_cancel_before_content_removes_placeholder(self, store):
        started = asyncio.Event()
        service = make_service(store, hanging(started=started))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await asyncio.wait_for(started.wait(), timeout=5)
        await session.cancel()

        result = await session.wait()
        assert result.status is StreamStatus.CANCELLED
        assert result.content == ""
        assert await messages_of(store, conversation.id) == [("user", "Hi")]
        assert [update async for update in session] == []
        assert not service.is_generating(conversation.id)

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_content(self, store):
        service = make_service(store, hanging(sse("partial"), sse(" answer")))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        first = await session.__anext__()
        assert first.delta == "partial"
        while session.text != "partial answer":
            await asyncio.sleep(0)
        await service.cancel(conversation.id)

        result = await session.wait()
        assert result.status is StreamStatus.CANCELLED
        assert result.content == "partial answer"
        assert await messages_of(store, conversation.id) == [
            ("user", "Hi"), ("assistant", "partial answer"),
        ]

    @pytest.mark.asyncio
    async def test_no_writes_after_cancel(self, store):
        service = make_service(store, hanging(sse("x")))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await session.__anext__()
        await session.cancel()
        patches = len(store.patches)

        await store.append(conversation.id, "user", "next question")
        await asyncio.sleep(0.01)

        assert len(store.patches) == patches
        assert session.status is StreamStatus.CANCELLED
        assert (await messages_of(store, conversation.id))[-1] == ("user", "next question")

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, store):
        started = asyncio.Event()
        service = make_service(store, hanging(started=started))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await asyncio.wait_for(started.wait(), timeout=5)
        await asyncio.gather(session.cancel(), session.cancel())
        await session.cancel()

        assert session.status is StreamStatus.CANCELLED
        assert await service.cancel(conversation.id) is False

    @pytest.mark.asyncio
    async def test_cancel_after_finish_is_noop(self, store):
        service = make_service(store, streaming(sse("ok"), DONE))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await session.wait()
        await session.cancel()

        assert session.status is StreamStatus.FINISHED
        assert (await messages_of(store, conversation.id))[-1] == ("assistant", "ok")

    @pytest.mark.asyncio
    async def test_cancel_before_pump_runs(self, store):
        service = make_service(store, streaming(sse("never"), DONE))
        conversation = await store.create()
        await store.append(conversation.id, "user", "Hi")

        session = await service.start(
            conversation.id, [{"role": "user", "content": "Hi"}]
        )
        await session.cancel()

        assert session.status is StreamStatus.CANCELLED
        assert await messages_of(store, conversation.id) == [("user", "Hi")]
        assert not service.is_generating(conversation.id)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_live_sessions(self, store):
        service = make_service(store, hanging(sse("x")))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await session.__anext__()
        await service.shutdown()
        assert session.status is StreamStatus.CANCELLED


class TestFailures:
    """Configuration, endpoint and transport failures."""

    @pytest.mark.asyncio
    async def test_missing_model_fails_before_network(self, store):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, headers=SSE_HEADERS, content=DONE)

        service = make_service(store, handler, model="")
        conversation = await store.create()

        with pytest.raises(ConfigurationError):
            await service.send(conversation.id, "Hi")
        assert calls == []
        assert await messages_of(store, conversation.id) == []

    @pytest.mark.asyncio
    async def test_model_option_overrides_empty_default(self, store):
        models = []

        def handler(request):
            models.append(json.loads(request.content)["model"])
            return httpx.Response(200, headers=SSE_HEADERS, content=DONE)

        service = make_service(store, handler, model="")
        conversation = await store.create()

        session = await service.send(
            conversation.id, "Hi", GenerationOptions(model="picked")
        )
        await session.wait()
        assert models == ["picked"]

    @pytest.mark.asyncio
    async def test_endpoint_error_surfaces_once_and_drops_placeholder(self, store):
        def handler(request):
            return httpx.Response(500, text="boom")

        service = make_service(store, handler)
        conversation = await store.create()
        session = await service.send(conversation.id, "Hi")

        with pytest.raises(EndpointError) as exc_info:
            async for _ in session:
                pass
        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "boom"
        assert [update async for update in session] == []

        result = await session.wait()
        assert result.status is StreamStatus.FAILED
        assert result.error is exc_info.value
        assert await messages_of(store, conversation.id) == [("user", "Hi")]

    @pytest.mark.asyncio
    async def test_transport_error_keeps_partial_content(self, store):
        async def body():
            yield sse("par")
            raise httpx.ReadError("connection reset")

        def handler(request):
            return httpx.Response(200, headers=SSE_HEADERS, content=body())

        service = make_service(store, handler)
        conversation = await store.create()
        session = await service.send(conversation.id, "Hi")

        result = await session.wait()
        assert result.status is StreamStatus.FAILED
        assert isinstance(result.error, TransportError)
        assert await messages_of(store, conversation.id) == [
            ("user", "Hi"), ("assistant", "par"),
        ]

    @pytest.mark.asyncio
    async def test_second_generation_rejected(self, store):
        service = make_service(store, hanging(sse("x")))
        conversation = await store.create()

        session = await service.send(conversation.id, "Hi")
        await session.__anext__()

        with pytest.raises(GenerationInProgressError):
            await service.send(conversation.id, "again")
        with pytest.raises(GenerationInProgressError):
            await service.regenerate(conversation.id)

        await session.cancel()
        assert await messages_of(store, conversation.id) == [
            ("user", "Hi"), ("assistant", "x"),
        ]


class TestConcurrentRequests:
    """Racing calls on one conversation."""

    @pytest.mark.asyncio
    async def test_racing_sends_write_only_the_winner(self, store):
        requests = []
        stream = hanging(sse("x"))

        def handler(request):
            requests.append(json.loads(request.content)["messages"])
            return stream(request)

        service = make_service(store, handler)
        conversation = await store.create(system_prompt="")

        first, second = await asyncio.gather(
            service.send(conversation.id, "first"),
            service.send(conversation.id, "second"),
            return_exceptions=True,
        )
        assert isinstance(second, GenerationInProgressError)
        await first.__anext__()
        await first.cancel()

        assert await messages_of(store, conversation.id) == [
            ("user", "first"), ("assistant", "x"),
        ]
        assert requests == [[{"role": "user", "content": "first"}]]

    @pytest.mark.asyncio
    async def test_send_racing_regenerate_is_rejected(self, store):
        service = make_service(store, hanging(sse("new")))
        conversation = await store.create(system_prompt="")
        await store.append(conversation.id, "user", "Q")
        await store.append(conversation.id, "assistant", "old")

        regenerated, sent = await asyncio.gather(
            service.regenerate(conversation.id),
            service.send(conversation.id, "interloper"),
            return_exceptions=True,
        )
        assert isinstance(sent, GenerationInProgressError)
        await regenerated.__anext__()
        await regenerated.cancel()

        assert await messages_of(store, conversation.id) == [
            ("user", "Q"), ("assistant", "new"),
        ]

    @pytest.mark.asyncio
    async def test_generating_while_send_is_pending(self, store):
        service = make_service(store, hanging(sse("x")))
        conversation = await store.create()

        pending = asyncio.create_task(service.send(conversation.id, "Hi"))
        await asyncio.sleep(0)
        assert service.is_generating(conversation.id)

        session = await pending
        await session.cancel()
        assert not service.is_generating(conversation.id)

    @pytest.mark.asyncio
    async def test_failed_send_releases_conversation(self, store):
        service = make_service(store, streaming(sse("ok"), DONE))

        with pytest.raises(ConversationNotFoundError):
            await service.send("conv_missing", "Hi")
        assert not service.is_generating("conv_missing")

        conversation = await store.create()
        with pytest.raises(ValueError):
            await service.regenerate(conversation.id)
        assert not service.is_generating(conversation.id)

        session = await service.send(conversation.id, "Hi")
        result = await session.wait()
        assert result.status is StreamStatus.FINISHED


class TestRegenerate:
    """Dropping and re-streaming the last answer."""

    @pytest.mark.asyncio
    async def test_regenerate_replaces_trailing_answer(self, store):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content)["messages"])
            return httpx.Response(
                200, headers=SSE_HEADERS, content=sse("new answer") + DONE
            )

        service = make_service(store, handler)
        conversation = await store.create(system_prompt="")
        await store.append(conversation.id, "user", "Q")
        await store.append(conversation.id, "assistant", "old answer")

        session = await service.regenerate(conversation.id)
        await session.wait()

        assert requests == [[{"role": "user", "content": "Q"}]]
        assert await messages_of(store, conversation.id) == [
            ("user", "Q"), ("assistant", "new answer"),
        ]

    @pytest.mark.asyncio
    async def test_regenerate_without_user_message(self, store):
        service = make_service(store, streaming(DONE))
        conversation = await store.create()
        with pytest.raises(ValueError):
            await service.regenerate(conversation.id)
