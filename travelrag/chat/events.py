import asyncio
from collections.abc import Awaitable, Callable
from typing import Literal, Protocol, TypeAlias

from pydantic import BaseModel, ConfigDict, Field


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_sse(self) -> str:
        """Encodes the event as one server-sent-events frame."""
        return f"event: {self.type}\ndata: {self.model_dump_json(by_alias=True)}\n\n"  # type: ignore[attr-defined]


class ReadyEvent(_Event):
    type: Literal["ready"] = "ready"


class StartEvent(_Event):
    type: Literal["start"] = "start"


class TokenEvent(_Event):
    type: Literal["token"] = "token"
    text: str


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    stop_reason: str | None = Field(default=None, alias="stopReason")


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str


Event: TypeAlias = ReadyEvent | StartEvent | TokenEvent | CompleteEvent | ErrorEvent


class EventSinkClosedError(Exception):
    """
    Raised when an event is sent after the caller went away.
    """

    msg = "event sink closed"


class EventSink(Protocol):
    async def send(self, event: Event) -> None:
        """Delivers one event to the caller and flushes it. Raises if the
        caller can no longer receive events."""
        ...


class SseEventSink:
    """Writes each event as an SSE frame through the given coroutine, e.g.
    a response stream's write-and-drain."""

    def __init__(self, write: Callable[[str], Awaitable[None]]):
        self._write = write

    async def send(self, event: Event) -> None:
        await self._write(event.to_sse())


class ChannelEventSink:
    """
    Hands events to a reader in another task, one at a time: send waits
    while the reader has an event it hasn't taken yet. Once the reader
    closes the channel, send raises EventSinkClosedError.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=1)
        self.closed = False

    async def send(self, event: Event) -> None:
        if self.closed:
            raise EventSinkClosedError("client disconnected")
        await self._queue.put(event)

    async def finish(self) -> None:
        """Tells the reader that no more events follow."""
        if not self.closed:
            await self._queue.put(None)

    def close(self) -> None:
        self.closed = True
        # unblocks a sender waiting for room
        while not self._queue.empty():
            self._queue.get_nowait()

    async def get(self) -> Event | None:
        return await self._queue.get()
