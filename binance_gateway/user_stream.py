"""User data stream: listen-key lifecycle on top of a stream session."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from .client import BinanceClient
from .errors import GatewayError
from .multiplexer import FrameConsumer, SubscriptionHandle
from .outcomes import ApiOutcome, ClientError, Success
from .session import StreamSession
from .topics import Frame, StreamTopic

LOGGER = logging.getLogger(__name__)

LISTEN_KEY_EXPIRED_EVENT = "listenKeyExpired"


class UserDataStream:
    """Keep a listen key alive and route its events to ``consumer``.

    The key is extended every ``keepalive_interval`` seconds.  When the
    exchange reports ``listenKeyExpired`` (or a keepalive is rejected) a new
    key is requested and subscribed before the old one is released, so the
    consumer keeps receiving events from a single callback.
    """

    def __init__(
        self,
        client: BinanceClient,
        session: StreamSession,
        consumer: FrameConsumer,
        *,
        keepalive_interval: float = 1_800.0,
    ) -> None:
        if keepalive_interval <= 0:
            raise ValueError("keepalive_interval must be positive")
        self._client = client
        self._session = session
        self._consumer = consumer
        self._keepalive_interval = keepalive_interval
        self._listen_key: str | None = None
        self._handle: SubscriptionHandle | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._rotation: asyncio.Task[ApiOutcome] | None = None
        self._lock = asyncio.Lock()

    @property
    def listen_key(self) -> str | None:
        return self._listen_key

    @property
    def handle(self) -> SubscriptionHandle | None:
        return self._handle

    async def start(self) -> ApiOutcome:
        """Obtain a listen key and subscribe it; returns the key request outcome."""

        async with self._lock:
            outcome = await self._open_key()
        if isinstance(outcome, Success) and self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name="binance-listen-key-keepalive")
        return outcome

    async def rotate(self) -> ApiOutcome:
        """Replace the current listen key with a fresh one."""

        async with self._lock:
            previous_key, previous_handle = self._listen_key, self._handle
            outcome = await self._open_key()
            if not isinstance(outcome, Success):
                return outcome
            if previous_handle is not None:
                await previous_handle.unsubscribe()
            if previous_key and previous_key != self._listen_key:
                await self._client.close_user_stream(previous_key)
            LOGGER.info("Rotated user data listen key")
            return outcome

    async def close(self) -> None:
        tasks = [task for task in (self._keepalive_task, self._rotation) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._keepalive_task = None
        self._rotation = None

        async with self._lock:
            if self._handle is not None and not self._handle.closed:
                await self._handle.unsubscribe()
            self._handle = None
            if self._listen_key:
                outcome = await self._client.close_user_stream(self._listen_key)
                if not outcome.ok:
                    LOGGER.warning("Closing listen key failed: %s", outcome)
            self._listen_key = None

    async def __aenter__(self) -> "UserDataStream":
        outcome = await self.start()
        if not isinstance(outcome, Success):
            raise GatewayError(f"could not start user data stream: {outcome}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()

    async def _open_key(self) -> ApiOutcome:
        outcome = await self._client.start_user_stream()
        if not isinstance(outcome, Success):
            LOGGER.warning("Listen key request failed: %s", outcome)
            return outcome
        payload = outcome.payload if isinstance(outcome.payload, Mapping) else {}
        listen_key = payload.get("listenKey")
        if not listen_key:
            return ClientError(None, "listen key response did not contain listenKey", outcome.status_code)
        self._listen_key = str(listen_key)
        self._handle = await self._session.subscribe(StreamTopic.user_data(self._listen_key), self._on_frame)
        return outcome

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            listen_key = self._listen_key
            if not listen_key:
                continue
            outcome = await self._client.keepalive_user_stream(listen_key)
            if isinstance(outcome, ClientError):
                LOGGER.warning("Listen key keepalive rejected (%s); rotating", outcome.message)
                await self._rotate_logged()
            elif not outcome.ok:
                LOGGER.warning("Listen key keepalive failed: %s", outcome)

    async def _on_frame(self, frame: Frame) -> None:
        data: Any = frame.data
        if isinstance(data, Mapping) and data.get("e") == LISTEN_KEY_EXPIRED_EVENT:
            LOGGER.info("Listen key expired, requesting a new one")
            if self._rotation is None or self._rotation.done():
                self._rotation = asyncio.create_task(self._rotate_logged(), name="binance-listen-key-rotate")
        await self._consumer(frame)

    async def _rotate_logged(self) -> None:
        try:
            outcome = await self.rotate()
        except GatewayError:
            LOGGER.warning("Listen key rotation failed", exc_info=True)
            return
        if not outcome.ok:
            LOGGER.warning("Listen key rotation failed: %s", outcome)


__all__ = ["LISTEN_KEY_EXPIRED_EVENT", "UserDataStream"]
