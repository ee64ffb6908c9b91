"""
Terminal chat client for chatstream.

Streams answers from an OpenAI-compatible endpoint into the terminal and keeps
conversations on disk. Ctrl-C while an answer is streaming stops it and keeps
what has arrived so far.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import TextIO

from chatstream.chat_service import ChatService, StreamSession, StreamStatus
from chatstream.config import Configuration
from chatstream.history.chat_store import ConversationNotFoundError, ConversationStore
from chatstream.history.models import Conversation
from chatstream.llm.client import LLMClient
from chatstream.llm.models import GenerationOptions
from chatstream.logging_utils import ErrorHandler, configure_logging

PROMPT = "> "

HELP_TEXT = """\
Commands:
  /new              start a new conversation
  /list             list conversations (* marks the active one)
  /switch <id>      make another conversation active
  /rename <title>   rename the active conversation
  /delete           delete the active conversation
  /regen            regenerate the last answer
  /models [id]      list the endpoint's models, or select one
  /help             show this help
  /quit             exit
Anything else is sent as a message. Ctrl-C stops a streaming answer."""

ReadLine = Callable[[str], Awaitable[str]]


async def read_stdin_line(prompt: str) -> str:
    """Read one line without blocking the event loop."""
    return await asyncio.to_thread(input, prompt)


class ChatRepl:
    """Line-oriented terminal front end over ChatService."""

    def __init__(
        self,
        service: ChatService,
        output: TextIO = sys.stdout,
        read_line: ReadLine = read_stdin_line,
    ) -> None:
        self.service = service
        self.store: ConversationStore = service.store
        self.output = output
        self.read_line = read_line
        self.model: str | None = None
        self._session: StreamSession | None = None

    def write(self, text: str = "", end: str = "\n") -> None:
        self.output.write(text + end)
        self.output.flush()

    @property
    def options(self) -> GenerationOptions:
        return GenerationOptions(model=self.model)

    async def active_conversation(self) -> Conversation:
        conversation = await self.store.get_active()
        if conversation is None:
            conversation = await self.store.create()
        return conversation

    async def run(self) -> None:
        conversation = await self.active_conversation()
        self.write(f"chatstream: {conversation.title} ({conversation.id})")
        self.write("Type /help for commands.")

        while True:
            try:
                line = await self.read_line(PROMPT)
            except EOFError:
                self.write()
                break
            if not await self.handle_line(line.strip()):
                break

        await self.service.shutdown()

    async def handle_line(self, line: str) -> bool:
        """Handle one input line; False means quit."""
        if not line:
            return True
        if not line.startswith("/"):
            conversation = await self.active_conversation()
            await self._stream(self.service.send(conversation.id, line, self.options))
            return True

        command, _, arg = line.partition(" ")
        arg = arg.strip()

        match command:
            case "/quit" | "/exit":
                return False
            case "/help":
                self.write(HELP_TEXT)
            case "/new":
                conversation = await self.store.create()
                self.write(f"Started {conversation.id}")
            case "/list":
                await self._list()
            case "/switch":
                await self._switch(arg)
            case "/rename":
                await self._rename(arg)
            case "/delete":
                await self._delete()
            case "/regen":
                conversation = await self.active_conversation()
                await self._stream(self.service.regenerate(conversation.id, self.options))
            case "/models":
                await self._models(arg)
            case _:
                self.write(f"Unknown command {command}. Type /help for commands.")
        return True

    async def _list(self) -> None:
        conversations = await self.store.list_conversations()
        if not conversations:
            self.write("No conversations.")
            return
        active_id = await self.store.active_id()
        for conversation in conversations:
            mark = "*" if conversation.id == active_id else " "
            self.write(
                f"{mark} {conversation.id}  {conversation.title}  "
                f"({len(conversation.messages)} messages)"
            )

    async def _switch(self, conversation_id: str) -> None:
        if not conversation_id:
            self.write("Usage: /switch <id>")
            return
        try:
            await self.store.set_active(conversation_id)
        except ConversationNotFoundError as e:
            self.write(str(e))
            return
        conversation = await self.active_conversation()
        self.write(f"Switched to {conversation.title}")
        for message in conversation.messages:
            self.write(f"[{message.role}] {message.content}")

    async def _rename(self, title: str) -> None:
        conversation = await self.active_conversation()
        try:
            renamed = await self.store.rename(conversation.id, title)
        except ValueError as e:
            self.write(str(e))
            return
        self.write(f"Renamed to {renamed.title}")

    async def _delete(self) -> None:
        conversation = await self.active_conversation()
        if self.service.is_generating(conversation.id):
            await self.service.cancel(conversation.id)
        await self.store.delete(conversation.id)
        self.write(f"Deleted {conversation.title}")

    async def _models(self, model_id: str) -> None:
        if model_id:
            self.model = model_id
            self.write(f"Using model {model_id}")
            return
        status = await self.service.client.check_connection()
        if not status["connected"]:
            self.write(f"Error: {status['error']}")
            return
        current = self.model or self.service.llm_config.get("model")
        for model in status["models"]:
            mark = "*" if model.id == current else " "
            self.write(f"{mark} {model.id}")

    def _interrupt(self) -> None:
        if self._session is not None and self._session.active:
            asyncio.get_running_loop().create_task(self._session.cancel())

    async def _stream(self, starting: Awaitable[StreamSession]) -> None:
        """Start a generation and print its deltas as they arrive."""
        try:
            self._session = await starting
        except Exception as e:
            self.write(ErrorHandler.user_message(e))
            return

        loop = asyncio.get_running_loop()
        handles_sigint = sys.platform != "win32"
        if handles_sigint:
            loop.add_signal_handler(signal.SIGINT, self._interrupt)
        try:
            async for update in self._session:
                self.write(update.delta, end="")
            self.write()
        except Exception as e:
            self.write()
            self.write(ErrorHandler.user_message(e))
        finally:
            if handles_sigint:
                loop.remove_signal_handler(signal.SIGINT)

        try:
            result = await self._session.wait()
        except Exception as e:
            # Cleanup after the reported failure failed as well
            ErrorHandler.log_error(
                e, "stream_completion", {"conversation_id": self._session.conversation_id}
            )
            result = self._session.result()
        if result.status is StreamStatus.CANCELLED:
            self.write("[Generation stopped]")
        elif result.status is StreamStatus.FINISHED:
            logging.info(
                f"~{self._session.estimated_tokens} tokens, "
                f"{self._session.tokens_per_second:.1f} tokens/s"
            )
        self._session = None


async def main() -> None:
    """Main entry point - terminal chat."""
    config = Configuration()
    configure_logging(config.get_logging_config())

    llm_config = config.get_llm_config()
    store = ConversationStore.from_config(
        config.get_storage_config(), config.get_conversation_config()
    )

    async with LLMClient.from_config(llm_config, config.llm_api_key) as client:
        service = ChatService(client, store, llm_config)
        try:
            await ChatRepl(service).run()
        except Exception as e:
            logging.error(f"Application error: {e}")
            raise
        finally:
            await service.shutdown()


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
