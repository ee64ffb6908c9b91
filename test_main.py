#!/usr/bin/env python3
"""
Tests for the terminal chat front end.
"""

import io
import json

import httpx
import pytest

from chatstream.chat_service import ChatService
from chatstream.history.chat_store import ConversationStore, JsonKeyValueStore
from chatstream.llm.client import LLMClient
from chatstream.main import ChatRepl

LLM_CONFIG = {"model": "test-model", "temperature": 0.7, "top_p": 0.9, "max_tokens": 256}
SSE_HEADERS = {"content-type": "text/event-stream"}


def sse(content):
    record = {"choices": [{"delta": {"content": content}, "finish_reason": None}]}
    return f"data: {json.dumps(record)}\n\n".encode()


def handler(request):
    if request.url.path.endswith("/models"):
        return httpx.Response(200, json={"data": [{"id": "test-model"}, {"id": "other"}]})
    if request.url.path.endswith("/chat/completions"):
        return httpx.Response(
            200, headers=SSE_HEADERS, content=sse("Hi ") + sse("there") + b"data: [DONE]\n\n"
        )
    return httpx.Response(404)


class LockedStore(ConversationStore):
    """Every streamed write times out waiting for the file lock."""

    async def patch_last(self, conversation_id, role, content):
        raise TimeoutError("lock timeout")


@pytest.fixture
def repl(tmp_path):
    store = ConversationStore(JsonKeyValueStore(tmp_path, fsync_enabled=False))
    client = LLMClient(endpoint="http://llm.test/v1", transport=httpx.MockTransport(handler))
    return ChatRepl(ChatService(client, store, dict(LLM_CONFIG)), output=io.StringIO())


def scripted(lines):
    pending = list(lines)

    async def read_line(prompt):
        if not pending:
            raise EOFError
        return pending.pop(0)

    return read_line


class TestChatRepl:
    """Command handling and streamed output."""

    @pytest.mark.asyncio
    async def test_message_streams_answer(self, repl):
        repl.read_line = scripted(["Hello"])
        await repl.run()

        assert "Hi there\n" in repl.output.getvalue()
        conversation = await repl.store.get_active()
        assert [(m.role, m.content) for m in conversation.messages] == [
            ("user", "Hello"), ("assistant", "Hi there"),
        ]
        assert conversation.title == "Hello"

    @pytest.mark.asyncio
    async def test_quit_stops_loop(self, repl):
        repl.read_line = scripted(["/quit", "never sent"])
        await repl.run()
        conversation = await repl.store.get_active()
        assert conversation.messages == []

    @pytest.mark.asyncio
    async def test_new_list_switch(self, repl):
        first = await repl.active_conversation()
        assert await repl.handle_line("/new") is True
        second = await repl.store.get_active()
        assert second.id != first.id

        await repl.handle_line("/list")
        listing = repl.output.getvalue()
        assert f"* {second.id}" in listing
        assert f"  {first.id}" in listing

        await repl.handle_line(f"/switch {first.id}")
        assert await repl.store.active_id() == first.id

    @pytest.mark.asyncio
    async def test_switch_unknown(self, repl):
        await repl.handle_line("/switch conv_nope")
        assert "Conversation not found: conv_nope" in repl.output.getvalue()

    @pytest.mark.asyncio
    async def test_rename_and_delete(self, repl):
        conversation = await repl.active_conversation()
        await repl.handle_line("/rename Project notes")
        assert (await repl.store.get(conversation.id)).title == "Project notes"

        await repl.handle_line("/delete")
        assert await repl.store.get(conversation.id) is None

    @pytest.mark.asyncio
    async def test_regen(self, repl):
        await repl.handle_line("Hello")
        await repl.handle_line("/regen")
        conversation = await repl.store.get_active()
        assert [(m.role, m.content) for m in conversation.messages] == [
            ("user", "Hello"), ("assistant", "Hi there"),
        ]

    @pytest.mark.asyncio
    async def test_models_list_and_select(self, repl):
        await repl.handle_line("/models")
        output = repl.output.getvalue()
        assert "* test-model" in output
        assert "  other" in output

        await repl.handle_line("/models other")
        assert repl.model == "other"

    @pytest.mark.asyncio
    async def test_missing_model_reported(self, repl):
        repl.service.llm_config["model"] = ""
        await repl.handle_line("Hello")
        assert "Error: No model selected" in repl.output.getvalue()

    @pytest.mark.asyncio
    async def test_store_failure_while_streaming_is_reported(self, tmp_path):
        store = LockedStore(JsonKeyValueStore(tmp_path, fsync_enabled=False))
        client = LLMClient(endpoint="http://llm.test/v1", transport=httpx.MockTransport(handler))
        service = ChatService(client, store, dict(LLM_CONFIG))
        repl = ChatRepl(service, output=io.StringIO())

        assert await repl.handle_line("Hello") is True
        assert "Error: lock timeout" in repl.output.getvalue()
        conversation = await repl.active_conversation()
        assert not service.is_generating(conversation.id)

        assert await repl.handle_line("/help") is True
        assert "Commands:" in repl.output.getvalue()

    @pytest.mark.asyncio
    async def test_unknown_command(self, repl):
        await repl.handle_line("/bogus")
        assert "Unknown command /bogus" in repl.output.getvalue()
