"""
Streaming channels for in-flight A2A calls.

A ``StreamingChannel`` is the ordered pipe between the task manager (the
producer) and one caller. A ``TaskEventStream`` fans the events of one
task's run out to every channel attached to it: the original caller plus
any client that resubscribed after losing its connection. The
``StreamingManager`` keeps track of the live streams.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from .a2a.models import Task, TaskEvent
from .lifecycle import status_event

logger = logging.getLogger(__name__)

# End-of-stream marker
_END = object()

StreamItem = Union[TaskEvent, Exception]


class ChannelClosedError(RuntimeError):
    """Raised when a producer sends on a channel it already closed."""


class StreamingChannel:
    """Single-producer, single-consumer ordered event pipe.

    The queue is bounded, so ``send`` waits while the consumer is behind.
    Iterating the channel yields events in the order they were sent. A
    failure is delivered as the exception instance itself, always as the
    last item. If the consumer stops iterating early the channel detaches:
    anything queued is dropped and later sends return ``False``
    immediately, so a departed consumer can never stall the producer.
    """

    def __init__(
        self,
        task_id: str,
        maxsize: int = 16,
        on_detach: Optional[Callable[["StreamingChannel"], None]] = None,
    ):
        self.channel_id = str(uuid.uuid4())
        self.task_id = task_id
        self.connected_at = datetime.now(timezone.utc)
        self.events_sent = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._detached = False
        self._on_detach = on_detach

    @property
    def closed(self) -> bool:
        """True once the producer closed or failed the channel."""
        return self._closed

    @property
    def detached(self) -> bool:
        """True once the consumer went away."""
        return self._detached

    async def send(self, event: TaskEvent) -> bool:
        """Queue ``event`` for the consumer, waiting for room if needed.

        Returns ``False`` when the consumer has already detached.
        """
        if self._closed:
            raise ChannelClosedError(f"Channel {self.channel_id} is closed")
        if self._detached:
            return False
        await self._queue.put(event)
        if self._detached:
            # The consumer left while we were waiting for room.
            self._drain()
            return False
        self.events_sent += 1
        return True

    def prime(self, event: TaskEvent) -> None:
        """Queue a first event without waiting; only valid on a fresh channel."""
        self._queue.put_nowait(event)

    async def fail(self, error: Exception) -> None:
        """Deliver ``error`` as the terminal item and end the stream."""
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(error)
        logger.debug(
            "Streaming channel failed",
            extra={"channel_id": self.channel_id, "task_id": self.task_id, "error": str(error)},
        )

    async def close(self) -> None:
        """Signal end-of-stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_END)

    def detach(self) -> None:
        """Consumer-side shutdown: drop queued events and unblock the producer."""
        if self._detached:
            return
        self._detached = True
        self._drain()
        if self._on_detach is not None:
            self._on_detach(self)
        logger.debug(
            "Streaming channel detached",
            extra={"channel_id": self.channel_id, "task_id": self.task_id},
        )

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    async def __aiter__(self) -> AsyncIterator[StreamItem]:
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    return
                yield item
                if isinstance(item, Exception):
                    return
        finally:
            self.detach()

    async def collect(self) -> List[StreamItem]:
        """Consume the whole channel into a list."""
        return [item async for item in self]


class TaskEventStream:
    """Producer-side fan-out of one task's run to its attached channels."""

    def __init__(self, task_id: str, maxsize: int = 16):
        self.task_id = task_id
        self.maxsize = maxsize
        self.started_at = datetime.now(timezone.utc)
        self.events_published = 0
        self.latest_task: Optional[Task] = None
        self._channels: List[StreamingChannel] = []
        self._final_published = False
        self._closed = False

    @property
    def live(self) -> bool:
        """True until the final event was published or the stream closed."""
        return not (self._final_published or self._closed)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def attach(self) -> StreamingChannel:
        """Attach a new consumer.

        A consumer joining after the first event receives a status snapshot
        of the most recently published task state before anything else.
        """
        channel = StreamingChannel(self.task_id, self.maxsize, on_detach=self._remove)
        if self.latest_task is not None:
            channel.prime(status_event(self.latest_task, final=False))
        self._channels.append(channel)
        return channel

    def _remove(self, channel: StreamingChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    async def publish(
        self, event: TaskEvent, task: Optional[Task] = None, *, final: bool = False
    ) -> None:
        """Send ``event`` to every attached channel, in attachment order.

        ``final`` marks the last event of the run; no consumer can attach
        after it.
        """
        if task is not None:
            self.latest_task = task
        if final:
            self._final_published = True
        self.events_published += 1
        for channel in list(self._channels):
            if not channel.closed:
                await channel.send(event)

    async def fail(self, error: Exception) -> None:
        self._closed = True
        for channel in list(self._channels):
            await channel.fail(error)

    async def close(self) -> None:
        self._closed = True
        for channel in list(self._channels):
            await channel.close()


class StreamingManager:
    """
    Registry of live task event streams.

    Provides stream lookup for resubscription and connection statistics for
    the health endpoint.
    """

    def __init__(self, queue_size: int = 16):
        """Initialize the streaming manager."""
        self.queue_size = queue_size
        self._streams: Dict[str, TaskEventStream] = {}
        self._lock: Optional[asyncio.Lock] = None
        self.total_streams = 0

    @property
    def lock(self) -> asyncio.Lock:
        """Get or create the asyncio lock for registry updates."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def open_stream(self, task_id: str) -> TaskEventStream:
        """Register a new event stream for ``task_id``."""
        stream = TaskEventStream(task_id, self.queue_size)
        async with self.lock:
            previous = self._streams.get(task_id)
            self._streams[task_id] = stream
            self.total_streams += 1

        if previous is not None and previous.live:
            logger.warning(
                "Replacing live event stream",
                extra={"task_id": task_id},
            )
            await previous.close()

        logger.info("Event stream opened", extra={"task_id": task_id})
        return stream

    async def attach(self, task_id: str) -> Optional[StreamingChannel]:
        """Attach a channel to the live stream of ``task_id``, if any."""
        async with self.lock:
            stream = self._streams.get(task_id)
            if stream is None or not stream.live:
                return None
            channel = stream.attach()

        logger.info(
            "Channel attached to live stream",
            extra={"task_id": task_id, "channel_id": channel.channel_id},
        )
        return channel

    def get_stream(self, task_id: str) -> Optional[TaskEventStream]:
        return self._streams.get(task_id)

    async def finish(self, stream: TaskEventStream, error: Optional[Exception] = None) -> None:
        """End ``stream``: fail its channels when ``error`` is given, else close them."""
        async with self.lock:
            if self._streams.get(stream.task_id) is stream:
                del self._streams[stream.task_id]

        if error is not None:
            await stream.fail(error)
        else:
            await stream.close()

        logger.info(
            "Event stream finished",
            extra={
                "task_id": stream.task_id,
                "events": stream.events_published,
                "failed": error is not None,
            },
        )

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get statistics about live streams."""
        streams = list(self._streams.values())
        return {
            "active_streams": len(streams),
            "active_channels": sum(stream.channel_count for stream in streams),
            "total_streams": self.total_streams,
            "task_ids": [stream.task_id for stream in streams],
        }

    async def close(self) -> None:
        """Close every live stream."""
        async with self.lock:
            streams = list(self._streams.values())
            self._streams.clear()

        for stream in streams:
            await stream.close()

        logger.info("Streaming manager closed", extra={"closed_streams": len(streams)})
