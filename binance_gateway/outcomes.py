"""Tagged REST outcomes and the response classifier that produces them."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Union

DEFAULT_RETRY_AFTER = 1.0

# Exchange error codes that mean "slow down" rather than "bad request".
RATE_LIMIT_CODES = frozenset({-1003, -1015})

SIGNING_ERROR_CODE = "SIGNING_ERROR"

_BANNED_UNTIL = re.compile(r"banned until (\d{10,})")


@dataclass(frozen=True)
class Success:
    payload: Any
    status_code: int = 200
    used_weight: int | None = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Throttled:
    """The exchange asked the caller to back off for ``retry_after`` seconds."""

    retry_after: float
    code: Any = None
    message: str = ""
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class ClientError:
    """The exchange rejected the request; ``code`` and ``message`` are verbatim."""

    code: Any
    message: str
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class ServerFault:
    """Transient infrastructure failure (5xx, timeout, connection error)."""

    code: int | None
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


ApiOutcome = Union[Success, Throttled, ClientError, ServerFault]


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def parse_retry_after(value: str | None, *, now: float | None = None) -> float | None:
    """Return the delay encoded in a ``Retry-After`` header (seconds or HTTP date)."""

    if value is None:
        return None
    token = value.strip()
    if not token:
        return None
    try:
        return max(0.0, float(token))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(token)
    except (TypeError, ValueError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    reference = now if now is not None else time.time()
    return max(0.0, moment.timestamp() - reference)


def _retry_after_from_message(message: str, *, now: float | None = None) -> float | None:
    match = _BANNED_UNTIL.search(message or "")
    if not match:
        return None
    until_ms = int(match.group(1))
    reference = now if now is not None else time.time()
    return max(0.0, until_ms / 1000 - reference)


def _error_fields(payload: Any, status_code: int) -> tuple[Any, str]:
    if isinstance(payload, Mapping):
        code = payload.get("code")
        message = payload.get("msg") or payload.get("message")
        return (
            code if code not in (None, "") else status_code,
            str(message) if message not in (None, "") else f"HTTP {status_code}",
        )
    if isinstance(payload, str) and payload.strip():
        return status_code, payload.strip()
    return status_code, f"HTTP {status_code}"


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_error_envelope(payload: Any) -> bool:
    if not isinstance(payload, Mapping) or "msg" not in payload:
        return False
    code = _as_int(payload.get("code"))
    return code is not None and code < 0


def classify_response(
    status_code: int,
    headers: Mapping[str, str] | None,
    payload: Any,
    *,
    now: float | None = None,
) -> ApiOutcome:
    """Interpret an exchange response as exactly one :data:`ApiOutcome`.

    ``payload`` is the decoded JSON body, or the raw text when the body was
    not JSON.  Success bodies that are not JSON are reported as a
    :class:`ServerFault` because the exchange contract promises JSON.
    """

    used_weight = _as_int(_header(headers, "X-MBX-USED-WEIGHT-1M"))

    if 200 <= status_code < 300 and not _is_error_envelope(payload):
        if isinstance(payload, str):
            return ServerFault(status_code, "Response body is not valid JSON")
        return Success(payload, status_code=status_code, used_weight=used_weight)

    if status_code >= 500:
        _, message = _error_fields(payload, status_code)
        return ServerFault(status_code, message)

    code, message = _error_fields(payload, status_code)

    # 418 is an IP ban: the caller must see the exchange code untouched.
    if status_code == 418:
        return ClientError(code, message, status_code)

    if status_code == 429 or _as_int(code) in RATE_LIMIT_CODES:
        retry_after = parse_retry_after(_header(headers, "Retry-After"), now=now)
        if retry_after is None:
            retry_after = _retry_after_from_message(message, now=now)
        if retry_after is None:
            retry_after = DEFAULT_RETRY_AFTER
        return Throttled(retry_after, code=code, message=message, status_code=status_code)

    return ClientError(code, message, status_code)


__all__ = [
    "ApiOutcome",
    "ClientError",
    "DEFAULT_RETRY_AFTER",
    "RATE_LIMIT_CODES",
    "SIGNING_ERROR_CODE",
    "ServerFault",
    "Success",
    "Throttled",
    "classify_response",
    "parse_retry_after",
]
