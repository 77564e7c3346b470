"""Exception taxonomy and message helpers for the Binance gateway."""

from __future__ import annotations

from typing import Any, Mapping


class GatewayError(RuntimeError):
    """Base exception for every error raised inside the gateway."""


class SigningError(GatewayError, ValueError):
    """Raised when a request cannot be signed (malformed input)."""


class TransportFault(GatewayError):
    """Connection-level failure on the streaming path."""


class DecodeError(GatewayError):
    """Raised when an inbound stream frame is not valid JSON."""


class SubscriptionRejected(GatewayError):
    """The exchange refused a SUBSCRIBE/UNSUBSCRIBE control message."""

    def __init__(self, message: str, *, code: Any | None = None, streams: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.code = code
        self.streams = streams


class ConfigurationError(GatewayError):
    """Unrecoverable setup problem, e.g. credentials rejected at handshake."""


class SessionClosed(GatewayError):
    """Raised to consumers once a stream session has been shut down."""


def _extract_details(payload: Mapping[str, Any] | str | None) -> tuple[str, str]:
    if isinstance(payload, Mapping):
        code = payload.get("code")
        message = payload.get("msg") or payload.get("message")
        return (
            "" if code in (None, "") else str(code),
            "" if message in (None, "") else str(message),
        )
    if payload in (None, ""):
        return "", ""
    return "", str(payload)


def format_error(
    method: str | None,
    target: str | None,
    payload: Mapping[str, Any] | str | None,
) -> str:
    """Return a human readable error string including method and path details."""

    method_token = (method or "").strip().upper() or "GET"
    code_text, message_text = _extract_details(payload)

    details = (code_text + " " + message_text).strip()
    base = f"Binance request failed: {method_token} {target or '<unknown>'}"
    if details:
        base = f"{base} → {details}"
    return base


__all__ = [
    "ConfigurationError",
    "DecodeError",
    "GatewayError",
    "SessionClosed",
    "SigningError",
    "SubscriptionRejected",
    "TransportFault",
    "format_error",
]
