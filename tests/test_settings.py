"""Tests for environment driven gateway settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from binance_gateway.config import Settings, get_settings
from binance_gateway.constants import Market
from binance_gateway.session import StreamSession


def test_defaults_follow_market(monkeypatch) -> None:
    monkeypatch.setenv("BINANCE_MARKET", "usdm")

    settings = Settings(_env_file=None)

    assert settings.market is Market.USDM
    assert settings.rest_base_url == "https://fapi.binance.com"
    assert settings.ws_base_url == "wss://fstream.binance.com/stream"
    assert settings.recv_window == 5_000


def test_explicit_urls_are_kept(monkeypatch) -> None:
    monkeypatch.setenv("BINANCE_REST_BASE_URL", "https://testnet.binance.vision/")
    monkeypatch.setenv("BINANCE_WS_BASE_URL", "wss://testnet.binance.vision/stream")

    settings = Settings(_env_file=None)

    assert settings.rest_base_url == "https://testnet.binance.vision"
    assert settings.ws_base_url == "wss://testnet.binance.vision/stream"


def test_secret_is_not_rendered(monkeypatch) -> None:
    monkeypatch.setenv("BINANCE_API_SECRET", "super-secret")

    settings = Settings(_env_file=None)

    assert "super-secret" not in repr(settings)
    assert settings.api_secret is not None
    assert settings.api_secret.get_secret_value() == "super-secret"


def test_invalid_recv_window_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, recv_window=120_000)


def test_get_settings_is_cached() -> None:
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_session_from_settings_uses_stream_url() -> None:
    settings = Settings(_env_file=None, market="spot", backoff_base=2, backoff_cap=10)

    session = StreamSession.from_settings(settings)

    assert session.url == "wss://stream.binance.com:9443/stream"
    assert session.name == "binance-spot"
    await session.close()
