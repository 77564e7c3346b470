"""Async REST dispatcher that signs, sends and classifies Binance requests."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import httpx

from .auth import ParamsInput, encode_pairs, normalize_params, redact_signature, sign_request
from .backoff import BackoffPolicy
from .constants import (
    API_KEY_HEADER,
    ORDER_COUNT_HEADER_PREFIX,
    REST_BASE_URLS,
    USED_WEIGHT_HEADER,
    Endpoint,
    Market,
    SecurityType,
)
from .credentials import Credentials
from .errors import SigningError, format_error
from .metrics import record_rest_outcome, record_rest_retry
from .outcomes import (
    SIGNING_ERROR_CODE,
    ApiOutcome,
    ClientError,
    ServerFault,
    Success,
    Throttled,
    classify_response,
)

LOGGER = logging.getLogger(__name__)

_QUERY_METHODS = frozenset({"GET", "DELETE"})
_IDEMPOTENT_METHODS = frozenset({"GET"})


@dataclass(frozen=True)
class RequestSpec:
    """Plain description of one REST call.

    ``params`` keeps the caller's order; it is canonicalised and signed only
    when the request is transmitted.  ``idempotent`` defaults to ``True`` for
    GET requests and ``False`` for everything else.
    """

    method: str
    path: str
    params: Any = ()
    security: SecurityType = SecurityType.NONE
    idempotent: bool | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        params: ParamsInput = self.params
        if params is None:
            pairs: tuple[tuple[str, Any], ...] = ()
        elif isinstance(params, Mapping):
            pairs = tuple(params.items())
        else:
            pairs = tuple((str(key), value) for key, value in params)
        object.__setattr__(self, "params", pairs)

    @classmethod
    def for_endpoint(
        cls,
        endpoint: Endpoint,
        params: ParamsInput = None,
        *,
        idempotent: bool | None = None,
    ) -> "RequestSpec":
        return cls(endpoint.method, endpoint.path, params, endpoint.security, idempotent)

    @property
    def is_idempotent(self) -> bool:
        if self.idempotent is not None:
            return self.idempotent
        return self.method in _IDEMPOTENT_METHODS


class RestDispatcher:
    """Small httpx-based dispatcher returning an :data:`ApiOutcome` per call.

    Exceptions never escape :meth:`send`: signing problems become a
    :class:`ClientError`, transport failures become a :class:`ServerFault`.
    Only idempotent calls are retried, and only on ``ServerFault`` (or on
    ``Throttled`` when the hint is within ``throttle_retry_ceiling``).
    """

    def __init__(
        self,
        credentials: Credentials | None = None,
        *,
        base_url: str = REST_BASE_URLS[Market.SPOT],
        recv_window: int | None = 5_000,
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        max_attempts: int = 3,
        throttle_retry_ceiling: float = 0.0,
        backoff: BackoffPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.max_attempts = max_attempts
        self.throttle_retry_ceiling = throttle_retry_ceiling
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._backoff = backoff or BackoffPolicy(base=0.5, cap=8.0, jitter=0.5)
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._sleep = sleep
        self._time_offset_ms = 0

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        credentials: Credentials | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "RestDispatcher":
        return cls(
            credentials if credentials is not None else Credentials.from_settings(settings),
            base_url=settings.rest_base_url,
            recv_window=settings.recv_window,
            timeout=settings.request_timeout,
            connect_timeout=settings.connect_timeout,
            max_attempts=settings.max_attempts,
            throttle_retry_ceiling=settings.throttle_retry_ceiling,
            client=client,
        )

    async def __aenter__(self) -> "RestDispatcher":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def has_credentials(self) -> bool:
        return self._credentials is not None

    @property
    def time_offset_ms(self) -> int:
        return self._time_offset_ms

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _timestamp(self) -> int:
        return int(self._clock() * 1000) + self._time_offset_ms

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def sync_time(self, path: str = "/api/v3/time") -> ApiOutcome:
        """Align request timestamps with the exchange server clock."""

        before = self._clock()
        outcome = await self.send(RequestSpec("GET", path))
        after = self._clock()
        if isinstance(outcome, Success) and isinstance(outcome.payload, Mapping):
            server_time = outcome.payload.get("serverTime")
            if server_time is not None:
                local_ms = int((before + after) / 2 * 1000)
                self._time_offset_ms = int(server_time) - local_ms
                LOGGER.info("Synchronised Binance server time (offset %d ms)", self._time_offset_ms)
        return outcome

    async def send(self, spec: RequestSpec) -> ApiOutcome:
        """Transmit *spec* and return exactly one classified outcome."""

        attempt = 0
        while True:
            attempt += 1
            outcome = await self._send_once(spec)
            delay = self._retry_delay(spec, outcome, attempt)
            if delay is None:
                record_rest_outcome(spec.path, outcome)
                return outcome

            reason = type(outcome).__name__
            record_rest_retry(spec.path, reason)
            LOGGER.warning(
                "Binance %s on %s %s (attempt %d/%d). Retrying in %.2fs",
                reason,
                spec.method,
                spec.path,
                attempt,
                self.max_attempts,
                delay,
            )
            await self._sleep(delay)

    # ------------------------------------------------------------------
    # Internal request helpers
    # ------------------------------------------------------------------
    def _retry_delay(self, spec: RequestSpec, outcome: ApiOutcome, attempt: int) -> float | None:
        if not spec.is_idempotent or attempt >= self.max_attempts:
            return None
        if isinstance(outcome, ServerFault):
            return self._backoff.next_delay(attempt)
        if (
            isinstance(outcome, Throttled)
            and self.throttle_retry_ceiling > 0
            and outcome.retry_after <= self.throttle_retry_ceiling
        ):
            return outcome.retry_after
        return None

    def _build_request(self, spec: RequestSpec) -> tuple[httpx.Request, str]:
        client = self._ensure_client()
        headers: dict[str, str] = {}

        if spec.security is not SecurityType.NONE:
            if self._credentials is None:
                raise SigningError("API credentials missing for authenticated endpoint")
            headers[API_KEY_HEADER] = self._credentials.api_key

        if spec.security is SecurityType.SIGNED:
            signed = sign_request(
                self._credentials.secret,  # type: ignore[union-attr]
                spec.method,
                spec.path,
                spec.params,
                timestamp=self._timestamp(),
                recv_window=self.recv_window,
            )
            query_string = signed.query_string
        else:
            query_string = encode_pairs(normalize_params(spec.params))

        if spec.method in _QUERY_METHODS:
            url = f"{spec.path}?{query_string}" if query_string else spec.path
            request = client.build_request(spec.method, url, headers=headers)
        else:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            request = client.build_request(
                spec.method,
                spec.path,
                headers=headers,
                content=query_string.encode("utf-8"),
            )
        return request, query_string

    async def _send_once(self, spec: RequestSpec) -> ApiOutcome:
        try:
            request, query_string = self._build_request(spec)
        except SigningError as exc:
            LOGGER.error("Refusing to send %s %s: %s", spec.method, spec.path, exc)
            return ClientError(SIGNING_ERROR_CODE, str(exc))

        LOGGER.info("→ %s %s%s", spec.method, self.base_url, spec.path)
        if query_string:
            LOGGER.debug("→ PARAMS: %s", redact_signature(query_string))

        try:
            response = await self._ensure_client().send(request)
        except httpx.TimeoutException as exc:
            return ServerFault(None, f"HTTP request to Binance timed out: {exc!r}")
        except httpx.RequestError as exc:
            # Transport failures and undecodable bodies alike.
            return ServerFault(None, f"HTTP request to Binance failed: {exc!r}")

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        self._log_usage(response.headers)
        outcome = classify_response(response.status_code, response.headers, payload, now=self._clock())

        if isinstance(outcome, Success):
            LOGGER.debug("Binance response %s %s status=%s", spec.method, spec.path, response.status_code)
        else:
            LOGGER.warning(
                "%s (status=%s outcome=%s)",
                format_error(spec.method, spec.path, payload if isinstance(payload, (Mapping, str)) else None),
                response.status_code,
                type(outcome).__name__,
            )
        return outcome

    @staticmethod
    def _log_usage(headers: httpx.Headers) -> None:
        used = headers.get(USED_WEIGHT_HEADER)
        if used is not None:
            LOGGER.debug("Used weights: %s", used)
        for name, value in headers.items():
            if name.lower().startswith(ORDER_COUNT_HEADER_PREFIX):
                LOGGER.debug("Order count %s: %s", name, value)


__all__ = ["RequestSpec", "RestDispatcher"]
