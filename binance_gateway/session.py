"""Long-lived Binance stream session with transparent reconnects."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections import deque
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any

import websockets
from websockets.exceptions import InvalidURI

from .backoff import Backoff, BackoffPolicy
from .constants import WS_BASE_URLS, Market
from .errors import (
    ConfigurationError,
    DecodeError,
    SessionClosed,
    SubscriptionRejected,
    TransportFault,
)
from .metrics import record_frame_dropped, record_reconnect, record_stream_state
from .multiplexer import FrameConsumer, SubscriptionHandle, SubscriptionMultiplexer
from .topics import StreamTopic

LOGGER = logging.getLogger(__name__)

ConnectFactory = Callable[..., Any]
StateListener = Callable[["SessionState"], None]

# Handshake statuses that will not improve by retrying.
_TERMINAL_HANDSHAKE_STATUSES = frozenset({400, 401, 403})
_CLOSE_TIMEOUT = 5.0


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    RECONNECTING = "reconnecting"


_STATE_NAMES = tuple(state.value for state in SessionState)


def _handshake_status(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return int(status) if status is not None else None


class StreamSession:
    """Own one combined-stream connection and keep it alive.

    A supervisor task walks ``CONNECTING → SUBSCRIBING → LIVE`` and falls
    back to ``RECONNECTING`` on any transport fault, sleeping according to
    the backoff policy before the next attempt.  Topics are tracked by the
    :class:`SubscriptionMultiplexer` and re-issued in creation order after
    every reconnect; consumers only observe a gap.

    The reader resolves control replies itself and queues data frames for a
    separate delivery task, so a slow consumer never delays a SUBSCRIBE ack.
    Frames that arrive while the session is not live are held (up to
    ``resubscribe_buffer_size``) and delivered in order once it is.

    ``connect`` is the ``websockets.connect``-compatible factory used to open
    connections.  The returned object needs ``send``, ``recv``, ``ping`` and
    ``close`` coroutines.
    """

    def __init__(
        self,
        url: str = WS_BASE_URLS[Market.SPOT],
        *,
        multiplexer: SubscriptionMultiplexer | None = None,
        backoff: BackoffPolicy | None = None,
        connect: ConnectFactory = websockets.connect,
        open_timeout: float = 10.0,
        liveness_timeout: float = 30.0,
        ping_timeout: float = 10.0,
        ack_timeout: float = 10.0,
        decode_failure_threshold: int = 5,
        consumer_queue_size: int = 1_000,
        resubscribe_buffer_size: int = 1_000,
        subscribe_batch_size: int = 50,
        control_message_interval: float = 0.25,
        name: str = "binance",
        on_state_change: StateListener | None = None,
    ) -> None:
        if decode_failure_threshold < 1:
            raise ValueError("decode_failure_threshold must be >= 1")
        if subscribe_batch_size < 1:
            raise ValueError("subscribe_batch_size must be >= 1")
        self.url = url
        self.name = name
        self._connect = connect
        self._open_timeout = open_timeout
        self._liveness_timeout = liveness_timeout
        self._ping_timeout = ping_timeout
        self._ack_timeout = ack_timeout
        self._decode_failure_threshold = decode_failure_threshold
        self._batch_size = subscribe_batch_size
        self._control_interval = control_message_interval
        self._on_state_change = on_state_change

        self._multiplexer = multiplexer or SubscriptionMultiplexer(queue_size=consumer_queue_size, name=name)
        self._multiplexer.attach(self)
        self._backoff = Backoff(backoff or BackoffPolicy())

        self._state = SessionState.DISCONNECTED
        self._history: deque[SessionState] = deque([self._state], maxlen=64)
        self._live_event = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._supervisor: asyncio.Task[None] | None = None
        self._reader: asyncio.Task[None] | None = None
        self._connection: Any = None
        self._stopping = False
        self._error: BaseException | None = None
        self._forced_fault: TransportFault | None = None

        self._pending_acks: dict[int, asyncio.Future[Any]] = {}
        self._request_ids = itertools.count(1)
        self._last_control_at = 0.0
        self._inbound: deque[tuple[str, Any, float]] = deque()
        self._inbound_ready = asyncio.Event()
        self._inbound_space = asyncio.Event()
        self._buffer_size = resubscribe_buffer_size
        self._delivery: asyncio.Task[None] | None = None
        self._reader_blocked = False
        self._reader_stalls = 0
        self._connect_attempts = 0

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        connect: ConnectFactory = websockets.connect,
        multiplexer: SubscriptionMultiplexer | None = None,
        name: str | None = None,
    ) -> "StreamSession":
        return cls(
            settings.ws_base_url,
            multiplexer=multiplexer,
            backoff=BackoffPolicy(
                base=settings.backoff_base,
                cap=settings.backoff_cap,
                jitter=settings.backoff_jitter,
            ),
            connect=connect,
            open_timeout=settings.connect_timeout,
            liveness_timeout=settings.liveness_timeout,
            ping_timeout=settings.ping_timeout,
            ack_timeout=settings.ack_timeout,
            decode_failure_threshold=settings.decode_failure_threshold,
            consumer_queue_size=settings.consumer_queue_size,
            resubscribe_buffer_size=settings.resubscribe_buffer_size,
            subscribe_batch_size=settings.subscribe_batch_size,
            control_message_interval=settings.control_message_interval,
            name=name or f"binance-{settings.market.value}",
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> tuple[SessionState, ...]:
        """Most recent state transitions, oldest first."""

        return tuple(self._history)

    @property
    def is_live(self) -> bool:
        return self._state is SessionState.LIVE and self._connection is not None

    @property
    def multiplexer(self) -> SubscriptionMultiplexer:
        return self._multiplexer

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def connect_attempts(self) -> int:
        return self._connect_attempts

    @property
    def closed(self) -> bool:
        return self._closed_event.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def __aenter__(self) -> "StreamSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()

    async def start(self) -> None:
        if self._stopping or self._closed_event.is_set():
            raise SessionClosed("stream session is closed")
        if self._supervisor is None:
            self._supervisor = asyncio.create_task(self._run(), name=f"{self.name}-session")

    async def close(self) -> None:
        """Stop the session, cancelling any connect, ack or backoff wait."""

        self._stopping = True
        task = self._supervisor
        if task is None:
            self._multiplexer.close_all()
            self._closed_event.set()
            return
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def wait_live(self, timeout: float | None = None) -> None:
        """Block until the session is ``LIVE``; raise if it closes first."""

        live = asyncio.ensure_future(self._live_event.wait())
        closed = asyncio.ensure_future(self._closed_event.wait())
        try:
            done, _ = await asyncio.wait({live, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            live.cancel()
            closed.cancel()
        if not done:
            raise asyncio.TimeoutError(f"stream session {self.name} not live after {timeout}s")
        if self._live_event.is_set():
            return
        if self._error is not None:
            raise self._error
        raise SessionClosed("stream session is closed")

    async def wait_closed(self) -> None:
        """Wait for the session to stop; re-raise a terminal error if any."""

        await self._closed_event.wait()
        if self._error is not None:
            raise self._error

    async def subscribe(self, topic: StreamTopic, consumer: FrameConsumer | None = None) -> SubscriptionHandle:
        return await self._multiplexer.subscribe(topic, consumer)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self._multiplexer.unsubscribe(handle)

    # ------------------------------------------------------------------
    # Upstream protocol used by the multiplexer
    # ------------------------------------------------------------------
    async def subscribe_streams(self, streams: Sequence[str]) -> None:
        await self._send_control("SUBSCRIBE", streams)

    async def unsubscribe_streams(self, streams: Sequence[str]) -> None:
        await self._send_control("UNSUBSCRIBE", streams)

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        self._delivery = asyncio.create_task(self._deliver_loop(), name=f"{self.name}-delivery")
        try:
            while not self._stopping:
                self._set_state(SessionState.CONNECTING)
                try:
                    await self._connect_and_serve()
                except TransportFault as exc:
                    LOGGER.warning("Stream %s fault: %s", self.name, exc)
                if self._stopping:
                    break
                self._set_state(SessionState.RECONNECTING)
                record_reconnect(self.name)
                delay = self._backoff.next_delay()
                LOGGER.info(
                    "Reconnecting stream %s in %.2fs (attempt %d)",
                    self.name,
                    delay,
                    self._backoff.attempt,
                )
                await asyncio.sleep(delay)
        except ConfigurationError as exc:
            self._error = exc
            LOGGER.error("Stream %s stopped: %s", self.name, exc)
        except Exception as exc:
            self._error = exc
            LOGGER.exception("Stream %s supervisor crashed", self.name)
        finally:
            self._stopping = True
            self._set_state(SessionState.DISCONNECTED)
            self._delivery.cancel()
            await asyncio.gather(self._delivery, return_exceptions=True)
            if self._inbound:
                LOGGER.info("Discarding %d undelivered frames from stream %s", len(self._inbound), self.name)
                self._inbound.clear()
            self._multiplexer.close_all(self._error)
            self._closed_event.set()

    async def _connect_and_serve(self) -> None:
        self._forced_fault = None
        connection = await self._open()
        self._connection = connection
        reader = asyncio.create_task(self._read_loop(connection), name=f"{self.name}-reader")
        self._reader = reader
        try:
            self._set_state(SessionState.SUBSCRIBING)
            await self._resubscribe()
            try:
                await reader
            except asyncio.CancelledError:
                if self._forced_fault is None or self._stopping:
                    raise
                raise self._forced_fault from None
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            self._reader = None
            self._connection = None
            self._fail_pending_acks(TransportFault("connection closed"))
            await self._close_connection(connection)

    async def _open(self) -> Any:
        self._connect_attempts += 1
        LOGGER.info("→ CONNECT %s", self.url)
        try:
            return await asyncio.wait_for(
                self._connect(self.url, ping_interval=None, max_size=2**22),
                timeout=self._open_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransportFault(f"connect to {self.url} timed out after {self._open_timeout}s") from exc
        except InvalidURI as exc:
            raise ConfigurationError(f"invalid stream URL {self.url!r}") from exc
        except websockets.WebSocketException as exc:
            status = _handshake_status(exc)
            if status in _TERMINAL_HANDSHAKE_STATUSES:
                raise ConfigurationError(f"stream handshake rejected with HTTP {status}") from exc
            raise TransportFault(f"stream handshake failed: {exc}") from exc
        except OSError as exc:
            raise TransportFault(f"connect to {self.url} failed: {exc}") from exc

    async def _close_connection(self, connection: Any) -> None:
        try:
            await asyncio.wait_for(connection.close(), timeout=_CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, OSError, websockets.WebSocketException) as exc:
            LOGGER.debug("Ignoring error while closing stream %s: %s", self.name, exc)

    async def _resubscribe(self) -> None:
        async with self._multiplexer.exclusive() as topics:
            streams = [topic.stream_name for topic in topics]
            for index in range(0, len(streams), self._batch_size):
                batch = streams[index : index + self._batch_size]
                try:
                    await self._send_control("SUBSCRIBE", batch)
                except SubscriptionRejected as exc:
                    if len(batch) == 1:
                        self._reject(batch[0], exc)
                        continue
                    # Isolate the offending topics without losing the rest.
                    for stream in batch:
                        try:
                            await self._send_control("SUBSCRIBE", [stream])
                        except SubscriptionRejected as inner:
                            self._reject(stream, inner)
            if streams:
                LOGGER.info("Re-subscribed %d topics on stream %s", len(streams), self.name)
            self._set_state(SessionState.LIVE)
            self._backoff.reset()

    def _reject(self, stream: str, exc: SubscriptionRejected) -> None:
        LOGGER.error("Stream %s rejected topic %s: %s", self.name, stream, exc)
        self._multiplexer.drop_stream(stream, exc)

    # ------------------------------------------------------------------
    # Control messages
    # ------------------------------------------------------------------
    async def _send_control(self, method: str, streams: Sequence[str]) -> Any:
        connection = self._connection
        if connection is None:
            raise TransportFault("no active stream connection")

        wait = self._last_control_at + self._control_interval - time.monotonic()
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_control_at = time.monotonic()

        request_id = next(self._request_ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending_acks[request_id] = future
        message = json.dumps({"method": method, "params": list(streams), "id": request_id})
        LOGGER.debug("→ %s %s id=%d", method, ",".join(streams), request_id)
        try:
            try:
                await connection.send(message)
            except (OSError, websockets.WebSocketException) as exc:
                raise TransportFault(f"{method} could not be sent: {exc}") from exc
            return await self._wait_ack(method, request_id, future)
        finally:
            self._pending_acks.pop(request_id, None)

    async def _wait_ack(self, method: str, request_id: int, future: asyncio.Future[Any]) -> Any:
        """Wait for a control reply, not counting time the reader spent held by back-pressure."""

        while True:
            stalls = self._reader_stalls
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=self._ack_timeout)
            except asyncio.TimeoutError as exc:
                if self._reader_blocked or stalls != self._reader_stalls:
                    LOGGER.debug("%s id=%d still queued behind slow consumers on %s", method, request_id, self.name)
                    continue
                fault = TransportFault(f"{method} id={request_id} not acknowledged within {self._ack_timeout}s")
                self._force_fault(fault)
                raise fault from exc

    def _resolve_ack(self, message: dict[str, Any]) -> None:
        future = self._pending_acks.pop(message.get("id"), None)  # type: ignore[arg-type]
        if future is None or future.done():
            LOGGER.debug("Ignoring unexpected control reply %s", message)
            return
        error = message.get("error")
        if error is None and "code" in message:
            error = message
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            text = error.get("msg") if isinstance(error, dict) else str(error)
            future.set_exception(SubscriptionRejected(str(text), code=code))
        else:
            future.set_result(message.get("result"))

    def _fail_pending_acks(self, error: BaseException) -> None:
        pending = list(self._pending_acks.values())
        self._pending_acks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _force_fault(self, fault: TransportFault) -> None:
        reader = self._reader
        if reader is not None and not reader.done():
            self._forced_fault = fault
            reader.cancel()

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------
    async def _read_loop(self, connection: Any) -> None:
        failures = 0
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(connection.recv(), timeout=self._liveness_timeout)
                except asyncio.TimeoutError:
                    await self._probe(connection)
                    continue
                except websockets.ConnectionClosed as exc:
                    raise TransportFault(f"connection closed: {exc}") from exc
                except OSError as exc:
                    raise TransportFault(f"connection lost: {exc}") from exc

                received_at = time.time()
                try:
                    message = self._decode(raw)
                except DecodeError as exc:
                    failures += 1
                    record_frame_dropped(self.name, "decode")
                    LOGGER.warning("Dropping undecodable frame on %s (%d in a row): %s", self.name, failures, exc)
                    if failures >= self._decode_failure_threshold:
                        raise TransportFault(f"{failures} consecutive undecodable frames") from exc
                    continue
                failures = 0
                await self._handle_message(message, received_at)
        finally:
            self._fail_pending_acks(TransportFault("connection closed"))

    async def _probe(self, connection: Any) -> None:
        LOGGER.debug("No traffic on %s for %.1fs, sending ping", self.name, self._liveness_timeout)
        try:
            pong = await connection.ping()
            await asyncio.wait_for(pong, timeout=self._ping_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFault(f"no pong within {self._ping_timeout}s") from exc
        except (OSError, websockets.WebSocketException) as exc:
            raise TransportFault(f"ping failed: {exc}") from exc

    @staticmethod
    def _decode(raw: Any) -> dict[str, Any]:
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = bytes(raw).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError("frame is not valid UTF-8") from exc
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"frame is not valid JSON: {str(raw)[:80]!r}") from exc
        if not isinstance(message, dict):
            raise DecodeError(f"unexpected frame shape: {type(message).__name__}")
        return message

    async def _handle_message(self, message: dict[str, Any], received_at: float) -> None:
        if "id" in message and ("result" in message or "error" in message or "code" in message):
            self._resolve_ack(message)
            return

        stream = message.get("stream")
        if not isinstance(stream, str):
            record_frame_dropped(self.name, "untagged")
            LOGGER.debug("Dropping frame without stream tag on %s", self.name)
            return

        await self._enqueue((stream, message.get("data"), received_at))

    async def _enqueue(self, item: tuple[str, Any, float]) -> None:
        if not self._live_event.is_set():
            # Held until the topics are re-acknowledged; oldest frames go first.
            if len(self._inbound) >= self._buffer_size:
                record_frame_dropped(self.name, "buffer_full")
                if not self._inbound:
                    return
                self._inbound.popleft()
        elif len(self._inbound) >= max(self._buffer_size, 1):
            self._reader_blocked = True
            self._reader_stalls += 1
            LOGGER.debug("Inbound queue of %s is full, pausing reads", self.name)
            try:
                while len(self._inbound) >= max(self._buffer_size, 1):
                    self._inbound_space.clear()
                    await self._inbound_space.wait()
            finally:
                self._reader_blocked = False
        self._inbound.append(item)
        self._inbound_ready.set()

    async def _deliver_loop(self) -> None:
        """Hand queued frames to the multiplexer in receipt order while the session is live."""

        while True:
            await self._live_event.wait()
            if not self._inbound:
                self._inbound_ready.clear()
                await self._inbound_ready.wait()
                continue
            stream, data, received_at = self._inbound.popleft()
            self._inbound_space.set()
            try:
                await self._multiplexer.dispatch(stream, data, received_at)
            except Exception:
                LOGGER.exception("Failed to dispatch frame for %s on %s", stream, self.name)

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    def _set_state(self, state: SessionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        self._history.append(state)
        if state is SessionState.LIVE:
            self._live_event.set()
        else:
            self._live_event.clear()
        LOGGER.info("Stream %s: %s → %s", self.name, previous.value, state.value)
        record_stream_state(self.name, state.value, _STATE_NAMES)
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                LOGGER.warning("State listener for %s raised", self.name, exc_info=True)


__all__ = ["ConnectFactory", "SessionState", "StreamSession"]
