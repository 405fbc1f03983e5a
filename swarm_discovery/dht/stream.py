"""
Peer Streams

An announce or lookup walks the DHT towards a topic and reports what each
contacted node knows as it goes. Callers consume the stream with
``async for`` and may stop it early with ``destroy()``.

A producer coroutine runs in its own task and pushes replies into a queue;
exhausting the producer ends the stream and an exception raised by the
producer is re-raised to the consumer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from ..peer import Endpoint

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class PeerReply:
    """What one DHT node returned for a topic."""
    node: Any
    peers: List[Endpoint] = field(default_factory=list)
    local_peers: List[Endpoint] = field(default_factory=list)


Producer = Callable[[Callable[[PeerReply], None]], Awaitable[None]]


class PeerStream:
    """Async iterator of ``PeerReply`` items."""

    def __init__(self, producer: Producer):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.destroyed = False
        self._task: Optional[asyncio.Task] = asyncio.ensure_future(self._run(producer))

    async def _run(self, producer: Producer):
        try:
            await producer(self._queue.put_nowait)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._queue.put_nowait(e)
        else:
            self._queue.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self) -> PeerReply:
        if self.destroyed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    def destroy(self):
        """Stop the walk. Replies not yet consumed are dropped."""
        if self.destroyed:
            return
        self.destroyed = True
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        # Wake a consumer blocked on the queue
        self._queue.put_nowait(_END)
