"""Signing helpers for Binance REST requests."""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence, Tuple, Union
from urllib.parse import quote, urlencode

from .errors import SigningError

RESERVED_PARAMETERS = frozenset({"timestamp", "recvWindow", "signature"})

ParamPairs = Sequence[Tuple[str, Any]]
ParamsInput = Union[Mapping[str, Any], Iterable[Tuple[str, Any]], None]

_SIGNATURE_PATTERN = re.compile(r"(signature=)[0-9a-fA-F]+")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (float, Decimal)):
        # Decimal keeps the literal precision (1.95 instead of 1.9499...).
        try:
            decimal_value = value if isinstance(value, Decimal) else Decimal(str(value))
        except InvalidOperation:  # pragma: no cover - nan/inf guard
            return str(value)
        text = format(decimal_value.normalize(), "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text or "0"
    if isinstance(value, (list, tuple)):
        # Batch endpoints expect JSON-style arrays, e.g. symbols=["BTCUSDT","ETHUSDT"].
        return "[" + ",".join(f'"{item}"' for item in value) + "]"
    return str(value)


def normalize_params(params: ParamsInput) -> tuple[tuple[str, str], ...]:
    """Return *params* as an ordered tuple of string pairs, dropping ``None`` values."""

    if params is None:
        return ()
    items = params.items() if isinstance(params, Mapping) else params
    pairs: list[tuple[str, str]] = []
    for key, value in items:
        if value is None:
            continue
        token = str(key)
        if token in RESERVED_PARAMETERS:
            raise SigningError(f"{token!r} is managed by the signer and must not be supplied")
        pairs.append((token, _stringify(value)))
    return tuple(pairs)


def encode_pairs(pairs: Iterable[Tuple[str, str]]) -> str:
    """URL-encode *pairs* keeping the RFC 3986 unreserved characters literal."""

    return urlencode(list(pairs), safe="-_.~", quote_via=quote)


def canonicalize(
    params: ParamsInput,
    *,
    timestamp: int | None,
    recv_window: int | None = None,
) -> str:
    """Return the canonical query string that gets signed and transmitted.

    Caller parameters keep their insertion order; ``recvWindow`` (when set)
    and ``timestamp`` are appended last, in that order.  The order is part of
    the wire contract because the signature covers the exact byte sequence.
    """

    pairs = list(normalize_params(params))
    if recv_window:
        pairs.append(("recvWindow", str(int(recv_window))))
    if timestamp is not None:
        pairs.append(("timestamp", str(int(timestamp))))
    return encode_pairs(pairs)


def _secret_bytes(secret: bytes | str) -> bytes:
    if isinstance(secret, str):
        try:
            secret = secret.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise SigningError("secret is not valid UTF-8") from exc
    if not secret:
        raise SigningError("secret must not be empty")
    return bytes(secret)


def sign(secret: bytes | str, canonical_payload: str | bytes) -> str:
    """Return the hex HMAC-SHA256 signature of *canonical_payload*."""

    if isinstance(canonical_payload, (bytes, bytearray)):
        try:
            bytes(canonical_payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SigningError("canonical payload is not valid UTF-8") from exc
        message = bytes(canonical_payload)
    else:
        try:
            message = canonical_payload.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise SigningError("canonical payload is not valid UTF-8") from exc

    return hmac.new(_secret_bytes(secret), message, hashlib.sha256).hexdigest()


def build_signature(secret: bytes | str, params: ParamsInput, *, timestamp: int, recv_window: int | None = None) -> str:
    """Return the signature for *params* after canonicalisation."""

    return sign(secret, canonicalize(params, timestamp=timestamp, recv_window=recv_window))


@dataclass(frozen=True)
class SignedRequest:
    """A request whose parameters, timestamp and signature are fixed."""

    method: str
    path: str
    params: tuple[tuple[str, str], ...]
    timestamp: int
    recv_window: int | None
    signature: str

    @property
    def canonical_payload(self) -> str:
        pairs = list(self.params)
        if self.recv_window:
            pairs.append(("recvWindow", str(self.recv_window)))
        pairs.append(("timestamp", str(self.timestamp)))
        return encode_pairs(pairs)

    @property
    def query_string(self) -> str:
        return f"{self.canonical_payload}&signature={self.signature}"


def sign_request(
    secret: bytes | str,
    method: str,
    path: str,
    params: ParamsInput,
    *,
    timestamp: int,
    recv_window: int | None = None,
) -> SignedRequest:
    """Canonicalise and sign *params*, returning an immutable :class:`SignedRequest`."""

    pairs = normalize_params(params)
    window = int(recv_window) if recv_window else None
    signature = sign(secret, canonicalize(pairs, timestamp=timestamp, recv_window=window))
    return SignedRequest(
        method=method.upper(),
        path=path,
        params=pairs,
        timestamp=int(timestamp),
        recv_window=window,
        signature=signature,
    )


def redact_signature(text: str) -> str:
    """Mask signature values so query strings can be logged."""

    if not text:
        return ""
    return _SIGNATURE_PATTERN.sub(r"\1<redacted>", text)


__all__ = [
    "RESERVED_PARAMETERS",
    "SignedRequest",
    "build_signature",
    "canonicalize",
    "encode_pairs",
    "normalize_params",
    "redact_signature",
    "sign",
    "sign_request",
]
