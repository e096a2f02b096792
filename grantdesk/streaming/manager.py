"""StreamManager: per-run frame buffering and response-stream subscribers."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncGenerator, Awaitable, Callable, Optional

from .events import SSEEvent


class StreamManager:
    """Hands frames from a running pipeline to the HTTP response writing them.

    Each run_id has:
    - A list of subscriber queues (asyncio.Queue instances)
    - A buffer of frames emitted before anyone subscribed

    Once the last subscriber leaves early the run is detached: later frames
    are dropped instead of buffered, up to and including its terminal frame.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[SSEEvent]]] = defaultdict(list)
        self._buffers: dict[str, list[SSEEvent]] = defaultdict(list)
        self._detached: set[str] = set()

    async def subscribe(self, run_id: str) -> asyncio.Queue[SSEEvent]:
        """Create and return a new subscriber queue for a run."""
        queue: asyncio.Queue[SSEEvent] = asyncio.Queue()
        self._subscribers[run_id].append(queue)
        return queue

    async def unsubscribe(
        self, run_id: str, queue: asyncio.Queue[SSEEvent], detach: bool = True
    ) -> None:
        """Remove a subscriber queue; drop the run's buffer with the last one."""
        subs = self._subscribers.get(run_id, [])
        if queue in subs:
            subs.remove(queue)
        if not self._subscribers.get(run_id):
            self._buffers.pop(run_id, None)
            self._subscribers.pop(run_id, None)
            if detach:
                self._detached.add(run_id)

    async def emit(self, run_id: str, event: SSEEvent) -> None:
        """Deliver a frame to all subscribers, or buffer it if there are none."""
        if run_id in self._detached:
            if event.is_terminal:
                self._detached.discard(run_id)
            return
        subs = self._subscribers.get(run_id)
        if not subs:
            self._buffers[run_id].append(event)
            return
        for queue in subs:
            await queue.put(event)

    def discard(self, run_id: str) -> None:
        """Forget anything still held for a finished run."""
        self._buffers.pop(run_id, None)
        self._detached.discard(run_id)

    def emitter(self, run_id: str) -> Callable[[SSEEvent], Awaitable[None]]:
        """Bind emit() to one run, for handing to a PipelineRunner."""

        async def _emit(event: SSEEvent) -> None:
            await self.emit(run_id, event)

        return _emit

    async def event_generator(
        self,
        run_id: str,
        on_disconnect: Optional[Callable[[], None]] = None,
    ) -> AsyncGenerator[str, None]:
        """Async generator yielding wire frames for a run.

        Stops after the first terminal frame. If the consumer goes away
        first (the generator is closed early), ``on_disconnect`` is called
        so the run can stop scheduling work.
        """
        queue = await self.subscribe(run_id)
        finished = False
        try:
            for event in self._buffers.pop(run_id, []):
                yield event.to_sse_string()
                if event.is_terminal:
                    finished = True
                    return

            while True:
                event = await queue.get()
                yield event.to_sse_string()
                if event.is_terminal:
                    finished = True
                    return
        finally:
            if not finished and on_disconnect is not None:
                on_disconnect()
            await self.unsubscribe(run_id, queue, detach=not finished)
