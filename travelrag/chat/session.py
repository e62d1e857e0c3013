import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any
from uuid import UUID

import structlog
from annotated_types import Ge, Gt
from ddtrace.trace import tracer
from pydantic import BaseModel

from .chunks import (
    ContentChunk,
    ErrorChunk,
    GenerationError,
    Generator,
    MetadataChunk,
    StopChunk,
)
from .events import (
    ChannelEventSink,
    CompleteEvent,
    ErrorEvent,
    Event,
    EventSink,
    ReadyEvent,
    StartEvent,
    TokenEvent,
)
from .history import DEFAULT_HISTORY_LIMIT, build_history
from .models import HistoryEntry, Message, Role
from .routing import should_use_fast_model
from .store import MessageStore

logger = structlog.get_logger()

APOLOGY = "Sorry, I encountered an error processing your request. Please try again."
UNEXPECTED_END = "generation stream ended unexpectedly"


class SessionState(str, Enum):
    INIT = "init"
    READY = "ready"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


class SessionConfig(BaseModel):
    """
    Settings for a streaming session.

    Attributes:
        checkpoint_interval: Characters of new content that trigger a
            checkpoint write of the partial reply. Default is 50.
        history_limit: Prior turns handed to the generation provider.
            Default is 10.
        apology: Content of the reply stored when the session fails.
    """

    checkpoint_interval: Annotated[int, Gt(gt=0)] = 50
    history_limit: Annotated[int, Ge(ge=0)] = DEFAULT_HISTORY_LIMIT
    apology: str = APOLOGY


@dataclass
class SessionResult:
    state: SessionState
    message: Message | None = None
    error: str | None = None


class _Disconnected(Exception):
    """The event sink failed; nothing more can be delivered."""


class StreamingSession:
    """
    Streams one assistant reply to a caller while persisting it.

    The session moves INIT -> READY -> STREAMING -> COMPLETE or ERROR and
    emits exactly one terminal event (complete or error), unless the caller
    went away. The reply is written when its first content arrives and then
    every `checkpoint_interval` characters, so a crash loses at most that much
    of it. When the session fails, the partial reply is discarded and a new
    apology message carrying the technical detail in its metadata is stored
    as the reply.

    A session runs once.
    """

    def __init__(
        self,
        conversation_id: UUID,
        query: str,
        generator: Generator,
        store: MessageStore,
        config: SessionConfig | None = None,
        query_message_id: UUID | None = None,
        log: Any = None,
    ):
        self.conversation_id = conversation_id
        self.query = query
        self.generator = generator
        self.store = store
        self.config = config or SessionConfig()
        self.query_message_id = query_message_id
        self.log = (log or logger).bind(conversation_id=str(conversation_id))

        self.state = SessionState.INIT
        self.result: SessionResult | None = None

        self._content = ""
        self._message: Message | None = None
        self._persisted = False
        self._checkpointed_length = 0
        self._token_count: int | None = None

    async def _emit(self, sink: EventSink, event: Event) -> None:
        try:
            await sink.send(event)
        except Exception as e:
            raise _Disconnected(str(e) or type(e).__name__) from e

    async def _load_history(self) -> list[HistoryEntry]:
        try:
            messages = await self.store.list_messages(self.conversation_id)
        except Exception as e:
            self.log.warning("history unavailable, replying without it", error=str(e))
            return []
        return build_history(
            messages, self.config.history_limit, exclude_id=self.query_message_id
        )

    async def _checkpoint(self, message: Message) -> None:
        message.content = self._content
        if self._persisted:
            await self.store.update(message)
        else:
            await self.store.create(message)
            self._persisted = True
        self._checkpointed_length = len(self._content)
        await self.log.adebug(
            "reply checkpointed",
            message_id=str(message.id),
            length=self._checkpointed_length,
        )

    def _on_content(self, chunk: ContentChunk) -> Message | None:
        """Appends a content chunk. Returns the reply when a checkpoint is
        due."""
        self._content += chunk.text
        if self._message is None:
            self._message = Message(
                conversation_id=self.conversation_id,
                role=Role.ASSISTANT,
                content=self._content,
                model_used=chunk.model,
                token_count=self._token_count,
            )
            return self._message
        grown = len(self._content) - self._checkpointed_length
        if grown >= self.config.checkpoint_interval:
            return self._message
        return None

    def _on_metadata(self, chunk: MetadataChunk) -> None:
        if chunk.usage is None or chunk.usage.output_tokens is None:
            return
        self._token_count = chunk.usage.output_tokens
        if self._message is not None:
            self._message.token_count = self._token_count

    async def _stream(
        self, sink: EventSink, history: Sequence[HistoryEntry], prefer_fast: bool
    ) -> str:
        """
        Consumes the provider's chunks until a stop chunk and returns the stop
        reason.

        Raises:
            GenerationError: On an error chunk or when the chunks end without
                a stop chunk.
        """
        chunks = self.generator.generate(self.query, history, prefer_fast)
        try:
            async for chunk in chunks:
                match chunk:
                    case ContentChunk(text=text):
                        if not text:
                            continue
                        due = self._on_content(chunk)
                        await self._emit(sink, TokenEvent(text=text))
                        if due is not None:
                            await self._checkpoint(due)
                    case MetadataChunk():
                        self._on_metadata(chunk)
                    case StopChunk(stop_reason=stop_reason):
                        return stop_reason
                    case ErrorChunk(message=message):
                        raise GenerationError(message)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()
        raise GenerationError(UNEXPECTED_END)

    async def _complete(self, sink: EventSink, stop_reason: str) -> SessionResult:
        message = self._message or Message(
            conversation_id=self.conversation_id,
            role=Role.ASSISTANT,
            token_count=self._token_count,
        )
        self._message = message
        await self._checkpoint(message)
        self.log.info(
            "reply complete",
            message_id=str(message.id),
            length=len(self._content),
            stop_reason=stop_reason,
        )
        await self._emit(sink, CompleteEvent(stop_reason=stop_reason))
        self.state = SessionState.COMPLETE
        return SessionResult(self.state, message)

    async def _discard_partial(self) -> None:
        if self._message is None or not self._persisted:
            return
        try:
            await self.store.delete(self._message.id)
        except Exception as e:
            self.log.error("failed to discard partial reply", error=str(e))
            return
        self._persisted = False

    async def _store_apology(self, detail: str) -> Message | None:
        apology = Message(
            conversation_id=self.conversation_id,
            role=Role.ASSISTANT,
            content=self.config.apology,
            metadata={"error": detail},
        )
        try:
            await self.store.create(apology)
        except Exception as e:
            self.log.error("failed to store apology message", error=str(e))
            return None
        return apology

    async def _fail(self, sink: EventSink | None, detail: str) -> SessionResult:
        self.state = SessionState.ERROR
        await self._discard_partial()
        apology = await self._store_apology(detail)
        if sink is not None:
            try:
                await self._emit(sink, ErrorEvent(message=detail))
            except _Disconnected as e:
                self.log.warning("could not deliver error event", error=str(e))
        return SessionResult(self.state, apology, detail)

    @tracer.wrap()
    async def run(self, sink: EventSink) -> SessionResult:
        """
        Runs the session, delivering its events to `sink`.

        Provider, persistence and delivery failures end the session in the
        ERROR state; they are not raised.

        Raises:
            RuntimeError: If the session already ran.
        """
        if self.state is not SessionState.INIT:
            raise RuntimeError(f"session already ran (state {self.state.value})")

        try:
            await self._emit(sink, ReadyEvent())
            self.state = SessionState.READY
            history = await self._load_history()
            prefer_fast = should_use_fast_model(self.query)
            self.log.info(
                "starting reply", history=len(history), prefer_fast=prefer_fast
            )

            await self._emit(sink, StartEvent())
            self.state = SessionState.STREAMING
            stop_reason = await self._stream(sink, history, prefer_fast)
            self.result = await self._complete(sink, stop_reason)
        except _Disconnected as e:
            # the caller is gone; only the apology replaces the partial reply
            self.log.warning("client disconnected", error=str(e))
            self.result = await self._fail(None, f"client disconnected: {e}")
        except Exception as e:
            self.log.error(
                "reply failed", error=str(e), error_type=type(e).__name__
            )
            self.result = await self._fail(sink, str(e) or type(e).__name__)
        return self.result

    async def events(self) -> AsyncIterator[Event]:
        """
        The session's events for callers that pull. Closing the iterator
        early is handled like a client disconnect.
        """
        channel = ChannelEventSink()

        async def run() -> SessionResult:
            try:
                return await self.run(channel)
            finally:
                await channel.finish()

        task = asyncio.create_task(run())
        try:
            while (event := await channel.get()) is not None:
                yield event
        finally:
            channel.close()
            await task
