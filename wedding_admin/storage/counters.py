from __future__ import annotations

import math
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, Optional, Protocol

from wedding_admin.storage.models import Clock, utcnow


@dataclass(frozen=True)
class LockoutCounter:
    """Result of one atomic failure registration.

    ``count`` is the streak length after this failure, or 0 when the
    identifier was already locked and nothing was counted.
    """

    count: int
    locked: bool
    window_remaining: float = 0.0
    lock_remaining: float = 0.0


@dataclass(frozen=True)
class TokenBucketState:
    allowed: bool
    tokens: float
    retry_after: float = 0.0


@dataclass(frozen=True)
class SlidingWindowState:
    """Outcome of one sliding-log admission.

    ``count`` is the number of admitted requests inside the window after
    this call. ``reset_after`` is the time until the oldest of them leaves
    the window, which is when a denied caller may retry.
    """

    allowed: bool
    count: int
    reset_after: float = 0.0


class CounterStore(Protocol):
    """Atomic increment/expire key-value store shared by rate limiting and lockout.

    Every operation is atomic for the keys it touches. Implementations that
    back more than one process must share state between them.
    """

    async def increment_and_get(self, key: str, ttl_seconds: float) -> int: ...

    async def get(self, key: str) -> int: ...

    async def ttl(self, key: str) -> Optional[float]: ...

    async def reset(self, *keys: str) -> None: ...

    async def increment_and_lock(
        self,
        attempts_key: str,
        lock_key: str,
        *,
        threshold: int,
        window_seconds: float,
        lock_seconds: float,
    ) -> LockoutCounter: ...

    async def consume_token(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_second: float,
        now: float,
        cost: int = 1,
    ) -> TokenBucketState: ...

    async def record_in_window(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: float,
        now: float,
    ) -> SlidingWindowState:
        """Admit ``now`` into the key's request log if fewer than ``limit`` fall in the window.

        Denied requests are not logged.
        """
        ...

    async def purge_expired(self) -> int: ...

    async def close(self) -> None: ...


@dataclass
class _Entry:
    value: float
    expires_at: Optional[float]
    updated_at: float = 0.0

    def alive(self, now: float) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass
class _Log:
    window: float
    stamps: Deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        horizon = now - self.window
        while self.stamps and self.stamps[0] <= horizon:
            self.stamps.popleft()


class _KeyLock:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class MemoryCounterStore:
    """Single-process counter store guarded by per-key locks.

    Locks are reference counted so the lock table only holds keys that are
    currently being operated on. Multi-key operations take their locks in
    sorted key order. No lock is ever held across an ``await``. Inserts and
    removals on the key tables also take ``_table`` so purge can snapshot
    them without relying on the GIL.
    """

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._logs: Dict[str, _Log] = {}
        self._guard = threading.Lock()
        self._table = threading.Lock()
        self._locks: Dict[str, _KeyLock] = {}

    def _now(self) -> float:
        return self._clock().timestamp()

    def _put(self, key: str, entry: _Entry) -> None:
        with self._table:
            self._entries[key] = entry

    def _drop(self, key: str) -> None:
        with self._table:
            self._entries.pop(key, None)

    @contextmanager
    def _locked(self, *keys: str) -> Iterator[None]:
        ordered = sorted(set(keys))
        with self._guard:
            slots = []
            for key in ordered:
                slot = self._locks.get(key)
                if slot is None:
                    slot = self._locks[key] = _KeyLock()
                slot.refs += 1
                slots.append(slot)
        try:
            for slot in slots:
                slot.lock.acquire()
            try:
                yield
            finally:
                for slot in reversed(slots):
                    slot.lock.release()
        finally:
            with self._guard:
                for key, slot in zip(ordered, slots):
                    slot.refs -= 1
                    if slot.refs == 0:
                        self._locks.pop(key, None)

    def _live(self, key: str, now: float) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.alive(now):
            self._drop(key)
            return None
        return entry

    def _incr(self, key: str, ttl_seconds: float, now: float) -> _Entry:
        entry = self._live(key, now)
        if entry is None:
            # TTL is fixed when the key is created, later increments keep it
            entry = _Entry(value=0, expires_at=now + ttl_seconds, updated_at=now)
            self._put(key, entry)
        entry.value += 1
        entry.updated_at = now
        return entry

    async def increment_and_get(self, key: str, ttl_seconds: float) -> int:
        with self._locked(key):
            return int(self._incr(key, ttl_seconds, self._now()).value)

    async def get(self, key: str) -> int:
        with self._locked(key):
            entry = self._live(key, self._now())
            return int(entry.value) if entry else 0

    async def ttl(self, key: str) -> Optional[float]:
        with self._locked(key):
            now = self._now()
            entry = self._live(key, now)
            if entry is None or entry.expires_at is None:
                return None
            return max(0.0, entry.expires_at - now)

    async def reset(self, *keys: str) -> None:
        with self._locked(*keys):
            with self._table:
                for key in keys:
                    self._entries.pop(key, None)
                    self._logs.pop(key, None)

    async def increment_and_lock(
        self,
        attempts_key: str,
        lock_key: str,
        *,
        threshold: int,
        window_seconds: float,
        lock_seconds: float,
    ) -> LockoutCounter:
        with self._locked(attempts_key, lock_key):
            now = self._now()
            lock = self._live(lock_key, now)
            if lock is not None:
                return LockoutCounter(
                    count=0, locked=True, lock_remaining=lock.expires_at - now
                )
            attempts = self._incr(attempts_key, window_seconds, now)
            count = int(attempts.value)
            window_remaining = attempts.expires_at - now
            if count >= threshold:
                self._put(
                    lock_key, _Entry(value=1, expires_at=now + lock_seconds, updated_at=now)
                )
                self._drop(attempts_key)
                return LockoutCounter(
                    count=count,
                    locked=True,
                    window_remaining=window_remaining,
                    lock_remaining=float(lock_seconds),
                )
            return LockoutCounter(
                count=count, locked=False, window_remaining=window_remaining
            )

    async def consume_token(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_second: float,
        now: float,
        cost: int = 1,
    ) -> TokenBucketState:
        with self._locked(key):
            entry = self._live(key, now)
            if entry is None:
                tokens, last = float(capacity), now
            else:
                tokens, last = entry.value, entry.updated_at
            tokens = min(capacity, tokens + max(0.0, now - last) * refill_per_second)
            # Kept until a full refill; a missing key reads as a full bucket
            ttl = max(math.ceil(capacity / refill_per_second), 1)
            if tokens < cost:
                retry_after = math.ceil((cost - tokens) / refill_per_second)
                self._put(key, _Entry(value=tokens, expires_at=now + ttl, updated_at=now))
                return TokenBucketState(allowed=False, tokens=tokens, retry_after=retry_after)
            tokens -= cost
            self._put(key, _Entry(value=tokens, expires_at=now + ttl, updated_at=now))
            return TokenBucketState(allowed=True, tokens=tokens)

    async def record_in_window(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: float,
        now: float,
    ) -> SlidingWindowState:
        with self._locked(key):
            log = self._logs.get(key)
            if log is None:
                log = _Log(window=window_seconds)
                with self._table:
                    self._logs[key] = log
            log.window = window_seconds
            log.prune(now)
            allowed = len(log.stamps) < limit
            if allowed:
                log.stamps.append(now)
            reset_after = log.stamps[0] + window_seconds - now if log.stamps else 0.0
            return SlidingWindowState(
                allowed=allowed, count=len(log.stamps), reset_after=max(0.0, reset_after)
            )

    async def purge_expired(self) -> int:
        now = self._now()
        with self._table:
            stale = [k for k, e in self._entries.items() if not e.alive(now)]
            logs = list(self._logs)
        removed = 0
        for key in stale:
            with self._locked(key):
                entry = self._entries.get(key)
                if entry is not None and not entry.alive(now):
                    self._drop(key)
                    removed += 1
        for key in logs:
            with self._locked(key):
                log = self._logs.get(key)
                if log is None:
                    continue
                log.prune(now)
                if not log.stamps:
                    with self._table:
                        del self._logs[key]
                    removed += 1
        return removed

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._table:
            return len(self._entries) + len(self._logs)


__all__ = [
    "CounterStore",
    "LockoutCounter",
    "MemoryCounterStore",
    "SlidingWindowState",
    "TokenBucketState",
]
