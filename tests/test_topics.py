"""Tests for stream topic naming."""

from __future__ import annotations

import pytest

from binance_gateway.topics import StreamTopic


@pytest.mark.parametrize(
    "topic, name",
    [
        (StreamTopic.trade("BTC-USDT"), "btcusdt@trade"),
        (StreamTopic.kline("ETHUSDT", "1m"), "ethusdt@kline_1m"),
        (StreamTopic.depth("BTCUSDT", 20, 100), "btcusdt@depth20@100ms"),
        (StreamTopic.depth("BTCUSDT"), "btcusdt@depth"),
        (StreamTopic.mark_price("BTCUSDT", 1), "btcusdt@markPrice@1s"),
        (StreamTopic.all_tickers(), "!ticker@arr"),
        (StreamTopic.user_data("AbCdEf123"), "AbCdEf123"),
    ],
)
def test_stream_names(topic: StreamTopic, name: str) -> None:
    assert topic.stream_name == name


@pytest.mark.parametrize(
    "name",
    ["btcusdt@aggTrade", "btcusdt@depth5@100ms", "!miniTicker@arr", "pqia91ma19a5s61cv6a81va65sdf19v8a65a1a5s61cv6a81va65sdf19v8a65a1"],
)
def test_stream_name_round_trip(name: str) -> None:
    assert StreamTopic.from_stream_name(name).stream_name == name


def test_topics_compare_by_value() -> None:
    assert StreamTopic.trade("btcusdt") == StreamTopic("trade", "BTCUSDT")
    assert len({StreamTopic.trade("btcusdt"), StreamTopic.trade("BTC/USDT")}) == 1


def test_listen_key_case_is_preserved() -> None:
    assert StreamTopic.user_data("MixedCase").symbol == "MixedCase"


def test_channel_is_required() -> None:
    with pytest.raises(ValueError):
        StreamTopic("")
