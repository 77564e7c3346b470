"""Tests for the credential store."""

from __future__ import annotations

import copy
import pickle

import pytest

from binance_gateway.config import Settings
from binance_gateway.credentials import Credentials


def test_repr_masks_key_and_secret() -> None:
    credentials = Credentials("my-api-key", "my-secret")

    text = repr(credentials)

    assert "my-api-key" not in text
    assert "my-secret" not in text


def test_secret_is_stored_as_bytes() -> None:
    assert Credentials("key", "secret").secret == b"secret"


def test_copies_return_the_same_instance() -> None:
    credentials = Credentials("key", b"secret")

    assert copy.copy(credentials) is credentials
    assert copy.deepcopy(credentials) is credentials


def test_pickling_is_refused() -> None:
    with pytest.raises(TypeError):
        pickle.dumps(Credentials("key", b"secret"))


@pytest.mark.parametrize("api_key, secret", [("", "secret"), ("key", ""), ("key", b"")])
def test_empty_values_are_rejected(api_key: str, secret) -> None:
    with pytest.raises(ValueError):
        Credentials(api_key, secret)


def test_from_settings_returns_none_without_secret() -> None:
    settings = Settings(_env_file=None, api_key="key")

    assert Credentials.from_settings(settings) is None


def test_from_settings_reads_secret_value() -> None:
    settings = Settings(_env_file=None, api_key="key", api_secret="secret")

    credentials = Credentials.from_settings(settings)

    assert credentials is not None
    assert credentials.api_key == "key"
    assert credentials.secret == b"secret"
