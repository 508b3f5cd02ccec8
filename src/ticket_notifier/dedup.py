"""Bounded de-duplication and rate-limit helpers."""

import collections
import time
from collections.abc import Callable


class BoundedIdSet:
    """Remembers the most recent ``maxlen`` identifiers.

    Membership is checked against a set; insertion order is kept in a bounded
    deque so the oldest identifier is forgotten once the cap is reached.
    """

    def __init__(self, maxlen: int = 2000) -> None:
        self._order: collections.deque[str] = collections.deque()
        self._ids: set[str] = set()
        self._maxlen = maxlen

    def __contains__(self, item: str) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, item: str) -> bool:
        """Record ``item``. Returns False if it was already present."""
        if item in self._ids:
            return False
        self._ids.add(item)
        self._order.append(item)
        while len(self._order) > self._maxlen:
            self._ids.discard(self._order.popleft())
        return True


class ExpiringSet:
    """Set whose entries expire ``ttl`` seconds after insertion."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def _prune(self) -> None:
        now = self._clock()
        for key in [k for k, exp in self._expiry.items() if exp <= now]:
            del self._expiry[key]

    def __contains__(self, item: str) -> bool:
        self._prune()
        return item in self._expiry

    def __len__(self) -> int:
        self._prune()
        return len(self._expiry)

    def add(self, item: str) -> bool:
        self._prune()
        if item in self._expiry:
            return False
        self._expiry[item] = self._clock() + self._ttl
        return True

    def discard(self, item: str) -> None:
        self._expiry.pop(item, None)


class Cooldown:
    """Per-key cooldown: ``hit(key)`` is True at most once per ``seconds``."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._seconds = seconds
        self._clock = clock
        self._last: dict[str, float] = {}

    def hit(self, key: str) -> bool:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last <= self._seconds:
            return False
        self._last[key] = now
        # Forget entries that can no longer block anything.
        if len(self._last) > 1000:
            self._last = {k: v for k, v in self._last.items() if now - v <= self._seconds}
        return True
