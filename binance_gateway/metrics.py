"""Prometheus metrics for REST dispatch and stream sessions."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

_rest_outcome_counter = Counter(
    "binance_gateway_rest_outcomes_total",
    "REST calls grouped by endpoint path and classified outcome",
    labelnames=("path", "outcome"),
)

_rest_retry_counter = Counter(
    "binance_gateway_rest_retries_total",
    "Transparent REST retries issued by the dispatcher",
    labelnames=("path", "reason"),
)

_stream_state_gauge = Gauge(
    "binance_gateway_stream_state",
    "1 for the current state of each stream session, 0 otherwise",
    labelnames=("session", "state"),
)

_stream_reconnect_counter = Counter(
    "binance_gateway_stream_reconnects_total",
    "Reconnect attempts performed by stream sessions",
    labelnames=("session",),
)

_frames_dispatched_counter = Counter(
    "binance_gateway_stream_frames_dispatched_total",
    "Frames delivered to at least one consumer",
    labelnames=("session",),
)

_frames_dropped_counter = Counter(
    "binance_gateway_stream_frames_dropped_total",
    "Inbound frames that were not delivered",
    labelnames=("session", "reason"),
)


def record_rest_outcome(path: str, outcome: object) -> None:
    _rest_outcome_counter.labels(path=path, outcome=type(outcome).__name__).inc()


def record_rest_retry(path: str, reason: str) -> None:
    _rest_retry_counter.labels(path=path, reason=reason).inc()


def record_stream_state(session: str, state: str, states: tuple[str, ...]) -> None:
    for candidate in states:
        _stream_state_gauge.labels(session=session, state=candidate).set(1 if candidate == state else 0)


def record_reconnect(session: str) -> None:
    _stream_reconnect_counter.labels(session=session).inc()


def record_frame_dispatched(session: str) -> None:
    _frames_dispatched_counter.labels(session=session).inc()


def record_frame_dropped(session: str, reason: str) -> None:
    _frames_dropped_counter.labels(session=session, reason=reason).inc()


__all__ = [
    "record_frame_dispatched",
    "record_frame_dropped",
    "record_reconnect",
    "record_rest_outcome",
    "record_rest_retry",
    "record_stream_state",
]
