"""Tests for request canonicalisation and HMAC signing."""

from __future__ import annotations

from decimal import Decimal

import pytest

from binance_gateway.auth import (
    build_signature,
    canonicalize,
    normalize_params,
    redact_signature,
    sign,
    sign_request,
)
from binance_gateway.errors import SigningError

REFERENCE_SECRET = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
REFERENCE_PARAMS = {
    "symbol": "LTCBTC",
    "side": "BUY",
    "type": "LIMIT",
    "timeInForce": "GTC",
    "quantity": 1,
    "price": 0.1,
}


def test_signature_matches_exchange_reference_vector() -> None:
    payload = canonicalize(REFERENCE_PARAMS, timestamp=1499827319559, recv_window=5000)

    assert payload == (
        "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
        "&recvWindow=5000&timestamp=1499827319559"
    )
    assert sign(REFERENCE_SECRET, payload) == "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def test_signing_is_deterministic() -> None:
    first = build_signature(REFERENCE_SECRET, REFERENCE_PARAMS, timestamp=1, recv_window=5000)
    second = build_signature(REFERENCE_SECRET, dict(REFERENCE_PARAMS), timestamp=1, recv_window=5000)

    assert first == second


@pytest.mark.parametrize("key", sorted(REFERENCE_PARAMS))
def test_changing_any_parameter_changes_signature(key: str) -> None:
    baseline = build_signature(REFERENCE_SECRET, REFERENCE_PARAMS, timestamp=1)
    altered = dict(REFERENCE_PARAMS)
    altered[key] = f"{altered[key]}0"

    assert build_signature(REFERENCE_SECRET, altered, timestamp=1) != baseline


def test_timestamp_and_window_are_covered_by_signature() -> None:
    baseline = build_signature(REFERENCE_SECRET, REFERENCE_PARAMS, timestamp=1, recv_window=5000)

    assert build_signature(REFERENCE_SECRET, REFERENCE_PARAMS, timestamp=2, recv_window=5000) != baseline
    assert build_signature(REFERENCE_SECRET, REFERENCE_PARAMS, timestamp=1, recv_window=6000) != baseline


def test_canonical_order_follows_caller_insertion_order() -> None:
    payload = canonicalize([("b", 1), ("a", 2)], timestamp=10)

    assert payload == "b=1&a=2&timestamp=10"


def test_values_are_stringified_canonically() -> None:
    pairs = normalize_params(
        {
            "flag": True,
            "off": False,
            "qty": Decimal("1.500"),
            "price": 1e-7,
            "skipped": None,
            "symbols": ["BTCUSDT", "ETHUSDT"],
        }
    )

    assert pairs == (
        ("flag", "true"),
        ("off", "false"),
        ("qty", "1.5"),
        ("price", "0.0000001"),
        ("symbols", '["BTCUSDT","ETHUSDT"]'),
    )


def test_reserved_names_are_rejected() -> None:
    for name in ("timestamp", "recvWindow", "signature"):
        with pytest.raises(SigningError):
            canonicalize({name: 1}, timestamp=1)


def test_empty_secret_is_rejected() -> None:
    with pytest.raises(SigningError):
        sign(b"", "a=1")


def test_non_utf8_payload_is_rejected() -> None:
    with pytest.raises(SigningError):
        sign(REFERENCE_SECRET, b"\xff\xfe")


def test_signed_request_query_string_appends_signature() -> None:
    signed = sign_request(
        REFERENCE_SECRET,
        "post",
        "/api/v3/order",
        REFERENCE_PARAMS,
        timestamp=1499827319559,
        recv_window=5000,
    )

    assert signed.method == "POST"
    assert signed.query_string.startswith(signed.canonical_payload + "&signature=")
    assert signed.signature == "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def test_redact_signature_masks_hex_digest() -> None:
    text = "symbol=BTCUSDT&timestamp=1&signature=abcdef0123"

    assert redact_signature(text) == "symbol=BTCUSDT&timestamp=1&signature=<redacted>"
