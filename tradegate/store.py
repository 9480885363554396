"""Key-value store with time-to-live semantics.

Backs the trading manager's balance cache and per-symbol active-trade table.
Expiry is evaluated lazily against an injected clock, so behaviour is
testable without sleeping.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generic, Iterator, Optional, TypeVar

from tradegate.clock import Clock, SystemClock

V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    stored_at: datetime


class TTLStore(Generic[V]):
    """A dict-like store whose entries expire after ``ttl_seconds``.

    Args:
        ttl_seconds: Lifetime of an entry.  ``None`` means entries never
                     expire and are only removed by :meth:`delete`.
        clock: Time source.  Defaults to :class:`SystemClock`.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock or SystemClock()
        self._entries: dict[str, _Entry[V]] = {}

    @property
    def ttl_seconds(self) -> Optional[float]:
        return self._ttl

    def _expired(self, entry: _Entry[V]) -> bool:
        if self._ttl is None:
            return False
        return self._clock.now() - entry.stored_at >= timedelta(seconds=self._ttl)

    # ── Mutation ─────────────────────────────────────────────────────────

    def set(self, key: str, value: V) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock.now())

    def delete(self, key: str) -> bool:
        """Remove *key*.  Returns ``True`` if it was present."""
        return self._entries.pop(key, None) is not None

    def evict_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        stale = [k for k, e in self._entries.items() if self._expired(e)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    # ── Queries ──────────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for *key*, or *default* if missing or expired."""
        entry = self._entries.get(key)
        if entry is None or self._expired(entry):
            return default
        return entry.value

    def peek(self, key: str, default: Any = None) -> Any:
        """Return the last stored value for *key*, ignoring expiry."""
        entry = self._entries.get(key)
        if entry is None:
            return default
        return entry.value

    def age_seconds(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return (self._clock.now() - entry.stored_at).total_seconds()

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not self._expired(entry)

    def __len__(self) -> int:
        return sum(1 for e in self._entries.values() if not self._expired(e))

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def keys(self) -> list[str]:
        return [k for k, e in self._entries.items() if not self._expired(e)]

    def items(self) -> list[tuple[str, V]]:
        return [
            (k, e.value) for k, e in self._entries.items() if not self._expired(e)
        ]
