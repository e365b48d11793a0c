"""
Streamed answers as a bounded producer/consumer channel.

``QueryStream`` owns a producer task that retrieves once, then copies deltas
from the generation backend into a bounded ``asyncio.Queue``. The consumer
iterates the stream. Cancelling the stream (``aclose()``, leaving
``async with``, cancelling the consuming task, or dropping the last reference)
cancels the producer, which closes the backend's async generator and with it
the HTTP request.

The producer never holds a reference to the ``QueryStream`` itself, only to
the shared ``_Status`` and the queue; that is what lets garbage collection of
an abandoned stream reach the producer.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from .errors import GenerationTimeout
from .models import RetrievalResult

LOG = logging.getLogger(__name__)

Retrieve = Callable[[], Awaitable[List[RetrievalResult]]]
Generate = Callable[[List[RetrievalResult]], AsyncIterator[str]]


class StreamState(str, Enum):
    IDLE = "idle"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.FAILED, StreamState.CANCELLED)


@dataclass
class _Status:
    state: StreamState = StreamState.IDLE
    sources: List[RetrievalResult] = field(default_factory=list)
    error: Optional[BaseException] = None
    delivered_error: bool = False


@dataclass(frozen=True)
class _Failure:
    error: BaseException


_DONE = object()


async def _produce(
    status: _Status,
    queue: "asyncio.Queue[object]",
    retrieve: Retrieve,
    generate: Generate,
) -> None:
    try:
        status.state = StreamState.RETRIEVING
        status.sources = await retrieve()
        status.state = StreamState.GENERATING
        async with aclosing(generate(status.sources)) as deltas:
            async for delta in deltas:
                await queue.put(delta)
        status.state = StreamState.COMPLETED
        await queue.put(_DONE)
    except asyncio.CancelledError:
        if not status.state.terminal:
            status.state = StreamState.CANCELLED
        raise
    except Exception as exc:
        status.state = StreamState.FAILED
        status.error = exc
        await queue.put(_Failure(exc))


def _cancel(task: "asyncio.Task[None]") -> None:
    if not task.done():
        task.cancel()


class QueryStream:
    """
    Async iterator of answer fragments for one query.

    Not restartable: once exhausted, failed or cancelled it stays that way;
    ask the system for a new stream to query again. ``sources`` is filled in
    as soon as retrieval finishes.
    """

    def __init__(
        self,
        retrieve: Retrieve,
        generate: Generate,
        idle_timeout: float = 60.0,
        max_buffer: int = 64,
    ) -> None:
        self._retrieve = retrieve
        self._generate = generate
        self.idle_timeout = idle_timeout
        self._status = _Status()
        self._queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=max_buffer)
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def state(self) -> StreamState:
        return self._status.state

    @property
    def sources(self) -> List[RetrievalResult]:
        return list(self._status.sources)

    @property
    def error(self) -> Optional[BaseException]:
        return self._status.error

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            _produce(self._status, self._queue, self._retrieve, self._generate)
        )
        weakref.finalize(self, _cancel, self._task)

    def __aiter__(self) -> "QueryStream":
        return self

    async def __anext__(self) -> str:
        if self._task is None:
            if self._status.state.terminal:
                raise StopAsyncIteration
            self._start()
        elif self._status.state == StreamState.CANCELLED:
            raise StopAsyncIteration
        elif self._status.state.terminal and self._queue.empty():
            if self._status.state == StreamState.FAILED and not self._status.delivered_error:
                self._status.delivered_error = True
                raise self._status.error
            raise StopAsyncIteration

        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            error = GenerationTimeout(f"No output for {self.idle_timeout:.0f}s while streaming")
            self._status.state = StreamState.FAILED
            self._status.error = error
            self._status.delivered_error = True
            await self._stop_producer()
            raise error from None
        except asyncio.CancelledError:
            await self.aclose()
            raise

        if item is _DONE:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._status.delivered_error = True
            raise item.error
        return item

    async def _stop_producer(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        # gather() lets a cancellation of the caller itself propagate.
        await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        """Abort the stream and the upstream request. Safe to call repeatedly."""
        if not self._status.state.terminal:
            self._status.state = StreamState.CANCELLED
            LOG.debug("Streamed query cancelled")
        await self._stop_producer()

    async def text(self) -> str:
        """Drain the stream and return the full answer."""
        return "".join([delta async for delta in self])

    async def __aenter__(self) -> "QueryStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


__all__ = ["QueryStream", "StreamState"]
