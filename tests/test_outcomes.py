"""Tests for the REST response classifier."""

from __future__ import annotations

from email.utils import formatdate

import pytest

from binance_gateway.outcomes import (
    DEFAULT_RETRY_AFTER,
    ClientError,
    ServerFault,
    Success,
    Throttled,
    classify_response,
    parse_retry_after,
)


def test_success_carries_payload_and_used_weight() -> None:
    outcome = classify_response(200, {"X-MBX-USED-WEIGHT-1M": "12"}, {"serverTime": 1})

    assert outcome == Success({"serverTime": 1}, status_code=200, used_weight=12)
    assert outcome.ok


def test_429_with_retry_after_seconds_is_throttled() -> None:
    outcome = classify_response(429, {"Retry-After": "5"}, {"code": -1003, "msg": "Too many requests"})

    assert isinstance(outcome, Throttled)
    assert outcome.retry_after == 5.0
    assert outcome.code == -1003


def test_retry_after_http_date_is_converted_to_delay() -> None:
    now = 1_700_000_000.0
    header = formatdate(now + 30, usegmt=True)

    outcome = classify_response(429, {"Retry-After": header}, {}, now=now)

    assert isinstance(outcome, Throttled)
    assert outcome.retry_after == pytest.approx(30.0, abs=1.0)


def test_banned_until_hint_is_used_without_header() -> None:
    now = 1_700_000_000.0
    message = f"Way too many requests; IP banned until {int((now + 120) * 1000)}."

    outcome = classify_response(429, {}, {"code": -1003, "msg": message}, now=now)

    assert isinstance(outcome, Throttled)
    assert outcome.retry_after == pytest.approx(120.0)


def test_throttled_defaults_when_no_hint_is_present() -> None:
    outcome = classify_response(429, {}, {})

    assert isinstance(outcome, Throttled)
    assert outcome.retry_after == DEFAULT_RETRY_AFTER


def test_rate_limit_code_on_400_is_throttled() -> None:
    outcome = classify_response(400, {}, {"code": -1015, "msg": "Too many new orders"})

    assert isinstance(outcome, Throttled)


def test_418_ban_is_client_error_with_original_code() -> None:
    outcome = classify_response(418, {"Retry-After": "60"}, {"code": -1003, "msg": "IP banned"})

    assert outcome == ClientError(-1003, "IP banned", 418)


def test_403_waf_rejection_is_client_error() -> None:
    outcome = classify_response(403, {}, "<html>Forbidden</html>")

    assert isinstance(outcome, ClientError)
    assert outcome.code == 403


def test_other_4xx_passes_exchange_code_verbatim() -> None:
    outcome = classify_response(400, {}, {"code": -1121, "msg": "Invalid symbol."})

    assert outcome == ClientError(-1121, "Invalid symbol.", 400)


def test_error_envelope_on_200_is_not_success() -> None:
    outcome = classify_response(200, {}, {"code": -2010, "msg": "Account has insufficient balance"})

    assert isinstance(outcome, ClientError)
    assert outcome.code == -2010


def test_5xx_is_server_fault() -> None:
    outcome = classify_response(503, {}, "Service Unavailable")

    assert outcome == ServerFault(503, "Service Unavailable")
    assert not outcome.ok


def test_non_json_success_body_is_server_fault() -> None:
    assert isinstance(classify_response(200, {}, "<html>"), ServerFault)


@pytest.mark.parametrize("value", [None, "", "soon"])
def test_parse_retry_after_rejects_garbage(value) -> None:
    assert parse_retry_after(value) is None
