from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Literal, Protocol, TypeAlias

from .models import HistoryEntry


class GenerationError(Exception):
    """
    Raised when the generation provider fails outside its own error chunk
    protocol.
    """

    msg = "generation provider failed"


@dataclass(frozen=True)
class ContentChunk:
    text: str
    model: str
    type: Literal["content"] = "content"


@dataclass(frozen=True)
class GenerationUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class MetadataChunk:
    usage: GenerationUsage | None = field(default=None)
    type: Literal["metadata"] = "metadata"


@dataclass(frozen=True)
class StopChunk:
    stop_reason: str = "end_turn"
    type: Literal["stop"] = "stop"


@dataclass(frozen=True)
class ErrorChunk:
    message: str
    type: Literal["error"] = "error"


Chunk: TypeAlias = ContentChunk | MetadataChunk | StopChunk | ErrorChunk


class Generator(Protocol):
    """
    A generation provider. generate returns a lazy, finite sequence of chunks
    that ends with exactly one StopChunk or ErrorChunk, or ends early.
    Implementations have no side effects beyond the provider call.
    """

    def generate(
        self,
        query: str,
        history: Sequence[HistoryEntry],
        prefer_fast: bool,
    ) -> AsyncIterator[Chunk]: ...
