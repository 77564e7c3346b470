"""Reference-counted topic subscriptions sharing one stream connection."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import SessionClosed, SubscriptionRejected, TransportFault
from .metrics import record_frame_dispatched, record_frame_dropped
from .topics import Frame, StreamTopic

LOGGER = logging.getLogger(__name__)

FrameConsumer = Callable[[Frame], Awaitable[None]]

_CLOSED = object()


class Upstream(Protocol):
    """Control channel used to (un)subscribe streams on the live connection."""

    @property
    def is_live(self) -> bool: ...

    async def subscribe_streams(self, streams: Sequence[str]) -> None: ...

    async def unsubscribe_streams(self, streams: Sequence[str]) -> None: ...


class SubscriptionHandle:
    """One consumer's view of a topic.

    Frames are buffered in a bounded queue; a full queue blocks the session's
    delivery task (back-pressure) instead of growing without limit.  The handle
    is async-iterable, or drives ``consumer`` from its own delivery task.
    """

    def __init__(
        self,
        multiplexer: "SubscriptionMultiplexer",
        topic: StreamTopic,
        handle_id: int,
        *,
        queue_size: int,
        consumer: FrameConsumer | None = None,
    ) -> None:
        self._multiplexer = multiplexer
        self.topic = topic
        self.id = handle_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._drained = False
        self._close_pending = False
        self._error: BaseException | None = None
        self._task: asyncio.Task[None] | None = None
        if consumer is not None:
            self._task = asyncio.create_task(
                self._deliver(consumer), name=f"consumer-{topic.stream_name}-{handle_id}"
            )

    def __repr__(self) -> str:
        return f"SubscriptionHandle(id={self.id}, topic={self.topic.stream_name!r}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Frame:
        """Return the next frame, raising :class:`SessionClosed` once the handle is closed."""

        if self._drained:
            raise self._closed_error()
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            raise self._closed_error()
        if self._close_pending:
            try:
                self._queue.put_nowait(_CLOSED)
                self._close_pending = False
            except asyncio.QueueFull:
                pass
        return item

    def __aiter__(self) -> "SubscriptionHandle":
        return self

    async def __anext__(self) -> Frame:
        try:
            return await self.get()
        except SessionClosed:
            raise StopAsyncIteration from None

    async def unsubscribe(self) -> None:
        await self._multiplexer.unsubscribe(self)

    async def wait_closed(self) -> None:
        """Wait until the consumer callback (if any) has finished its backlog."""

        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def _closed_error(self) -> BaseException:
        if isinstance(self._error, SessionClosed):
            return self._error
        error = SessionClosed(f"subscription to {self.topic.stream_name} is closed")
        if self._error is not None:
            error.__cause__ = self._error
        return error

    async def _put(self, frame: Frame) -> None:
        if self._closed:
            return
        await self._queue.put(frame)

    def _close(self, error: BaseException | None = None, *, discard: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        if discard:
            while not self._queue.empty():
                self._queue.get_nowait()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._close_pending = True

    async def _deliver(self, consumer: FrameConsumer) -> None:
        while True:
            try:
                frame = await self.get()
            except SessionClosed:
                return
            try:
                await consumer(frame)
            except asyncio.CancelledError:
                raise
            except Exception:
                # A failing consumer must not stall delivery for the topic.
                LOGGER.warning("Consumer for %s raised", self.topic.stream_name, exc_info=True)


@dataclass
class _TopicEntry:
    topic: StreamTopic
    sequence: int
    handles: dict[int, SubscriptionHandle] = field(default_factory=dict)


class SubscriptionMultiplexer:
    """Map many logical subscriptions onto one physical connection.

    The topic table is guarded by a single lock shared by subscribe,
    unsubscribe and the session's re-subscribe path.  Demultiplexing reads
    the table without the lock so the read loop can keep processing
    acknowledgements while a subscribe call waits for one.
    """

    def __init__(self, *, queue_size: int = 1_000, name: str = "binance") -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.name = name
        self._queue_size = queue_size
        self._entries: dict[StreamTopic, _TopicEntry] = {}
        self._by_stream: dict[str, StreamTopic] = {}
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._handle_ids = itertools.count(1)
        self._upstream: Upstream | None = None
        self._closed = False

    def attach(self, upstream: Upstream) -> None:
        self._upstream = upstream

    @property
    def closed(self) -> bool:
        return self._closed

    def __contains__(self, topic: object) -> bool:
        return topic in self._entries

    def refcount(self, topic: StreamTopic) -> int:
        entry = self._entries.get(topic)
        return len(entry.handles) if entry else 0

    def active_topics(self) -> list[StreamTopic]:
        """Topics with at least one consumer, ascending by creation sequence."""

        entries = sorted(self._entries.values(), key=lambda entry: entry.sequence)
        return [entry.topic for entry in entries]

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[list[StreamTopic]]:
        """Hold the topic-table lock and yield the ordered active topics."""

        async with self._lock:
            yield self.active_topics()

    async def subscribe(
        self,
        topic: StreamTopic,
        consumer: FrameConsumer | None = None,
        *,
        queue_size: int | None = None,
    ) -> SubscriptionHandle:
        """Register a consumer for *topic*, subscribing upstream on first use."""

        async with self._lock:
            if self._closed:
                raise SessionClosed("stream session is closed")

            entry = self._entries.get(topic)
            if entry is None:
                entry = _TopicEntry(topic, next(self._sequence))
                self._entries[topic] = entry
                self._by_stream[topic.stream_name] = topic
                upstream = self._upstream
                if upstream is not None and upstream.is_live:
                    try:
                        await upstream.subscribe_streams([topic.stream_name])
                    except SubscriptionRejected:
                        self._remove_entry(topic)
                        raise
                    except TransportFault as exc:
                        # The topic stays registered; the reconnect path re-issues it.
                        LOGGER.info("Subscribe for %s deferred until reconnect: %s", topic, exc)

            handle = SubscriptionHandle(
                self,
                topic,
                next(self._handle_ids),
                queue_size=queue_size or self._queue_size,
                consumer=consumer,
            )
            entry.handles[handle.id] = handle
            LOGGER.debug("Subscribed handle %d to %s (refcount=%d)", handle.id, topic, len(entry.handles))
            return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Release *handle*; the upstream unsubscribe is sent when the count reaches zero."""

        async with self._lock:
            entry = self._entries.get(handle.topic)
            if entry is None or entry.handles.pop(handle.id, None) is None:
                handle._close(discard=True)
                return
            handle._close(discard=True)
            if entry.handles:
                return

            self._remove_entry(handle.topic)
            upstream = self._upstream
            if upstream is None or not upstream.is_live:
                return
            try:
                await upstream.unsubscribe_streams([handle.topic.stream_name])
            except TransportFault as exc:
                # The next connection will not include the topic anyway.
                LOGGER.info("Unsubscribe for %s not acknowledged: %s", handle.topic, exc)
            except SubscriptionRejected as exc:
                LOGGER.warning("Unsubscribe for %s rejected: %s", handle.topic, exc)

    async def dispatch(self, stream: str, data: Any, received_at: float | None = None) -> bool:
        """Deliver one inbound message to every consumer of its topic."""

        topic = self._by_stream.get(stream)
        entry = self._entries.get(topic) if topic is not None else None
        if entry is None or not entry.handles:
            LOGGER.debug("Dropping frame for unknown or unsubscribed stream %s", stream)
            record_frame_dropped(self.name, "unknown_topic")
            return False

        frame = Frame(entry.topic, stream, data, received_at if received_at is not None else time.time())
        for handle in list(entry.handles.values()):
            await handle._put(frame)
        record_frame_dispatched(self.name)
        return True

    def drop_stream(self, stream: str, error: BaseException) -> None:
        """Remove a topic the exchange refused, closing its consumers with *error*.

        Callers must hold the lock (see :meth:`exclusive`).
        """

        topic = self._by_stream.get(stream)
        if topic is None:
            return
        entry = self._remove_entry(topic)
        if entry is not None:
            for handle in entry.handles.values():
                handle._close(error)

    def close_all(self, error: BaseException | None = None) -> None:
        """Close every handle and refuse further subscriptions."""

        self._closed = True
        entries = list(self._entries.values())
        self._entries.clear()
        self._by_stream.clear()
        for entry in entries:
            for handle in entry.handles.values():
                handle._close(error)

    def _remove_entry(self, topic: StreamTopic) -> _TopicEntry | None:
        entry = self._entries.pop(topic, None)
        self._by_stream.pop(topic.stream_name, None)
        return entry


__all__ = ["FrameConsumer", "SubscriptionHandle", "SubscriptionMultiplexer", "Upstream"]
