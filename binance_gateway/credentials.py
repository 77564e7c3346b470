"""Immutable storage for the API key/secret pair."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import Settings


@dataclass(frozen=True)
class Credentials:
    """API key and secret used to identify and sign requests.

    Instances are frozen and never duplicated: ``copy``/``deepcopy`` return
    the same object and pickling is refused so the secret cannot leak into
    caches or multiprocessing queues by accident.
    """

    api_key: str = field(repr=False)
    secret: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.api_key, str) or not self.api_key.strip():
            raise ValueError("api_key must be a non-empty string")
        secret = self.secret
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not isinstance(secret, (bytes, bytearray)) or not secret:
            raise ValueError("secret must be non-empty bytes or str")
        object.__setattr__(self, "secret", bytes(secret))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Credentials | None":
        """Return credentials from *settings* or ``None`` when not configured."""

        if not settings.api_key or settings.api_secret is None:
            return None
        return cls(settings.api_key, settings.api_secret.get_secret_value())

    def __repr__(self) -> str:
        return "Credentials(api_key='***', secret='***')"

    def __copy__(self) -> "Credentials":
        return self

    def __deepcopy__(self, memo: dict[int, object]) -> "Credentials":
        return self

    def __reduce__(self):  # type: ignore[override]
        raise TypeError("Credentials cannot be pickled")


__all__ = ["Credentials"]
