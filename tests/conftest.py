from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any
from uuid import UUID, uuid4

import pytest

from travelrag.chat.chunks import Chunk
from travelrag.chat.events import Event
from travelrag.chat.models import HistoryEntry, Message
from travelrag.db import PersistenceError
from travelrag.embedding.embeddings import Embedder, EmbeddingResponse, Usage
from travelrag.embedding.queue import QueuedJob
from travelrag.entities import (
    EMBEDDING_DIMENSIONS,
    EmbeddingVector,
    Entity,
    EntityKind,
    EntityNotFoundError,
)


def vector(value: float = 0.5, index: int | None = None) -> EmbeddingVector:
    """A full-size vector, either constant or a unit vector along `index`."""
    if index is None:
        return [value] * EMBEDDING_DIMENSIONS
    components = [0.0] * EMBEDDING_DIMENSIONS
    components[index] = 1.0
    return components


class InMemoryEntityStore:
    def __init__(self) -> None:
        self.entities: dict[tuple[EntityKind, str], Entity] = {}
        self.saved: list[tuple[EntityKind, str, EmbeddingVector]] = []
        self.fail_saves_with: Exception | None = None

    def add(self, entity: Entity) -> Entity:
        self.entities[(entity.kind, entity.id)] = entity
        return entity

    async def load(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self.entities.get((kind, entity_id))

    async def save_embedding(
        self, kind: EntityKind, entity_id: str, embedding: EmbeddingVector
    ) -> None:
        if self.fail_saves_with is not None:
            raise self.fail_saves_with
        entity = self.entities.get((kind, entity_id))
        if entity is None:
            raise EntityNotFoundError(kind, entity_id)
        self.entities[(kind, entity_id)] = entity.model_copy(
            update={"embedding": embedding}
        )
        self.saved.append((kind, entity_id, embedding))


class FakeEmbedder(Embedder):
    def __init__(self, embedding: EmbeddingVector | None = None) -> None:
        self.embedding = embedding if embedding is not None else vector()
        self.texts: list[str] = []
        self.error: Exception | None = None

    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        return EmbeddingResponse(
            embedding=self.embedding, usage=Usage(prompt_tokens=1, total_tokens=1)
        )


class FakeJobQueue:
    def __init__(self) -> None:
        self.retried: list[tuple[QueuedJob, str]] = []
        self.dead: list[tuple[QueuedJob, str, str]] = []
        self.pending: list[QueuedJob] = []

    async def claim(self, batch_size: int) -> list[QueuedJob]:
        claimed, self.pending = self.pending[:batch_size], self.pending[batch_size:]
        return claimed

    async def retry(self, queued: QueuedJob, error: str) -> None:
        self.retried.append((queued, error))

    async def dead_letter(
        self, queued: QueuedJob, failure_step: str, error: str
    ) -> None:
        self.dead.append((queued, failure_step, error))


class InMemoryMessageStore:
    """Keeps a copy of every write so tests can inspect what was durable at
    each point in time."""

    def __init__(self, messages: Sequence[Message] = ()) -> None:
        self.messages: dict[UUID, Message] = {m.id: m for m in messages}
        self.writes: list[tuple[str, Message]] = []
        self.fail_after: int | None = None

    def _check(self) -> None:
        if self.fail_after is not None and len(self.writes) >= self.fail_after:
            raise PersistenceError("database unavailable")

    async def create(self, message: Message) -> None:
        self._check()
        assert message.id not in self.messages
        self.messages[message.id] = message.model_copy()
        self.writes.append(("create", message.model_copy()))

    async def update(self, message: Message) -> None:
        self._check()
        assert message.id in self.messages
        self.messages[message.id] = message.model_copy()
        self.writes.append(("update", message.model_copy()))

    async def delete(self, message_id: UUID) -> None:
        self._check()
        removed = self.messages.pop(message_id)
        self.writes.append(("delete", removed))

    async def list_messages(self, conversation_id: UUID) -> list[Message]:
        return [
            m for m in self.messages.values() if m.conversation_id == conversation_id
        ]


class ScriptedGenerator:
    """Plays back a fixed chunk sequence and records how it was called."""

    def __init__(self, chunks: Sequence[Chunk], error: Exception | None = None):
        self.chunks = list(chunks)
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def _generate(self) -> AsyncIterator[Chunk]:
        try:
            for chunk in self.chunks:
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    def generate(
        self,
        query: str,
        history: Sequence[HistoryEntry],
        prefer_fast: bool,
        system: str | None = None,
    ) -> AsyncIterator[Chunk]:
        self.calls.append(
            {
                "query": query,
                "history": list(history),
                "prefer_fast": prefer_fast,
                "system": system,
            }
        )
        return self._generate()


class RecordingSink:
    def __init__(self, fail_on: int | None = None) -> None:
        self.events: list[Event] = []
        self.fail_on = fail_on

    async def send(self, event: Event) -> None:
        if self.fail_on is not None and len(self.events) >= self.fail_on:
            raise ConnectionResetError("broken pipe")
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def conversation_id() -> UUID:
    return uuid4()


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def scripted() -> Callable[..., ScriptedGenerator]:
    return ScriptedGenerator


@pytest.fixture
def make_vector() -> Callable[..., EmbeddingVector]:
    return vector


@pytest.fixture
def make_sink() -> Callable[..., RecordingSink]:
    return RecordingSink
