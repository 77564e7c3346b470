"""Exponential backoff with jitter for reconnects and REST retries."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass
class BackoffPolicy:
    """Compute ``min(cap, base * factor**(attempt - 1)) + uniform(0, jitter)``.

    The jitter spreads reconnect storms across many client instances.  While
    ``jitter <= base`` the sequence is non-decreasing until it reaches the
    cap, and no delay ever exceeds ``cap + jitter``.
    """

    base: float = 1.0
    cap: float = 60.0
    factor: float = 2.0
    jitter: float = 1.0
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0 or self.jitter < 0:
            raise ValueError("backoff parameters must be non-negative")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        self.cap = max(self.cap, self.base)

    def raw_delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # Avoid float overflow for very long outages.
        exponent = min(attempt - 1, 64)
        return min(self.cap, self.base * (self.factor ** exponent))

    def next_delay(self, attempt: int) -> float:
        delay = self.raw_delay(attempt)
        if self.jitter:
            delay += self.rng.uniform(0, self.jitter)
        return delay

    @property
    def max_delay(self) -> float:
        return self.cap + self.jitter


class Backoff:
    """Attempt counter bound to a :class:`BackoffPolicy`.

    There is no attempt ceiling; :meth:`reset` starts the sequence over.
    """

    def __init__(self, policy: BackoffPolicy | None = None) -> None:
        self.policy = policy or BackoffPolicy()
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def next_delay(self) -> float:
        self._attempt += 1
        return self.policy.next_delay(self._attempt)

    def reset(self) -> None:
        self._attempt = 0


__all__ = ["Backoff", "BackoffPolicy"]
