"""Stream topics and the frames delivered for them."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

# Channels whose stream name has no symbol prefix, e.g. "!ticker@arr".
_MARKET_WIDE_PREFIX = "!"
USER_DATA_CHANNEL = "userData"


@dataclass(frozen=True)
class StreamTopic:
    """A logical subscription independent of the connection carrying it.

    Equality is value based: two topics with the same channel, symbol and
    parameters share one upstream subscription.
    """

    channel: str
    symbol: str | None = None
    params: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.channel:
            raise ValueError("channel must not be empty")
        if self.symbol is not None and self.channel != USER_DATA_CHANNEL:
            object.__setattr__(self, "symbol", self.symbol.replace("-", "").replace("/", "").lower())
        object.__setattr__(self, "params", tuple(str(item) for item in self.params))

    @property
    def stream_name(self) -> str:
        """Return the Binance stream name used in SUBSCRIBE messages and frames."""

        if self.channel == USER_DATA_CHANNEL:
            return str(self.symbol)
        head = f"{self.symbol}@{self.channel}" if self.symbol else self.channel
        return "@".join((head, *self.params))

    @classmethod
    def from_stream_name(cls, name: str) -> "StreamTopic":
        if "@" not in name:
            return cls(USER_DATA_CHANNEL, name)
        parts = name.split("@")
        if parts[0].startswith(_MARKET_WIDE_PREFIX):
            return cls(parts[0], None, tuple(parts[1:]))
        return cls(parts[1], parts[0], tuple(parts[2:]))

    def __str__(self) -> str:
        return self.stream_name

    # ------------------------------------------------------------------
    # Factories for the common Binance market streams
    # ------------------------------------------------------------------
    @classmethod
    def trade(cls, symbol: str) -> "StreamTopic":
        return cls("trade", symbol)

    @classmethod
    def agg_trade(cls, symbol: str) -> "StreamTopic":
        return cls("aggTrade", symbol)

    @classmethod
    def kline(cls, symbol: str, interval: str) -> "StreamTopic":
        return cls(f"kline_{interval}", symbol)

    @classmethod
    def ticker(cls, symbol: str) -> "StreamTopic":
        return cls("ticker", symbol)

    @classmethod
    def mini_ticker(cls, symbol: str) -> "StreamTopic":
        return cls("miniTicker", symbol)

    @classmethod
    def book_ticker(cls, symbol: str) -> "StreamTopic":
        return cls("bookTicker", symbol)

    @classmethod
    def depth(cls, symbol: str, levels: int | None = None, update_speed_ms: int | None = None) -> "StreamTopic":
        channel = f"depth{levels}" if levels else "depth"
        params = (f"{update_speed_ms}ms",) if update_speed_ms else ()
        return cls(channel, symbol, params)

    @classmethod
    def mark_price(cls, symbol: str, update_speed_s: int | None = None) -> "StreamTopic":
        params = (f"{update_speed_s}s",) if update_speed_s else ()
        return cls("markPrice", symbol, params)

    @classmethod
    def all_tickers(cls) -> "StreamTopic":
        return cls("!ticker", None, ("arr",))

    @classmethod
    def all_mini_tickers(cls) -> "StreamTopic":
        return cls("!miniTicker", None, ("arr",))

    @classmethod
    def user_data(cls, listen_key: str) -> "StreamTopic":
        return cls(USER_DATA_CHANNEL, listen_key)


@dataclass(frozen=True)
class Frame:
    """One inbound data message, tagged with its topic after demultiplexing."""

    topic: StreamTopic
    stream: str
    data: Any
    received_at: float = field(default_factory=time.time)


__all__ = ["Frame", "StreamTopic", "USER_DATA_CHANNEL"]
