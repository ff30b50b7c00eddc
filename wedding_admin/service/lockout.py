from __future__ import annotations

import math
from datetime import timedelta
from typing import TYPE_CHECKING, Optional, Tuple

from wedding_admin.logging import get_logger
from wedding_admin.service.errors import InternalError, LockoutError
from wedding_admin.storage.common import hashed_key, normalize_email
from wedding_admin.storage.counters import CounterStore
from wedding_admin.storage.errors import StoreUnavailableError
from wedding_admin.storage.models import ClientContext, Clock, LoginAttemptRecord, utcnow

if TYPE_CHECKING:
    from wedding_admin.service.audit import AuditLogger

logger = get_logger(__name__)


class AccountLockoutGuard:
    """Failed-login tracking per identifier.

    States: Active(count) and Locked(until). A streak's window starts at its
    first failure; failures after the window has elapsed start a new streak.
    Reaching ``threshold`` inside the window locks the identifier for
    ``lock_seconds`` and clears the streak, all in one atomic store call.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        threshold: int = 5,
        window_seconds: int = 15 * 60,
        lock_seconds: int = 15 * 60,
        key_by_ip: bool = False,
        audit: Optional["AuditLogger"] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.counters = counters
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self.key_by_ip = key_by_ip
        self.audit = audit
        self._clock = clock

    def identifier_for(self, email: str, client: ClientContext | None = None) -> str:
        identifier = normalize_email(email)
        if self.key_by_ip and client is not None and client.ip:
            return f"{identifier}|{client.ip}"
        return identifier

    @staticmethod
    def _keys(identifier: str) -> Tuple[str, str]:
        return (
            hashed_key("lockout:attempts", identifier),
            hashed_key("lockout:locked", identifier),
        )

    async def check(self, identifier: str) -> None:
        _, lock_key = self._keys(identifier)
        try:
            remaining = await self.counters.ttl(lock_key)
        except StoreUnavailableError as exc:
            logger.error("lockout_store_unavailable", operation="check", error=str(exc))
            raise InternalError() from exc
        if remaining is not None and remaining > 0:
            retry_after = max(1, math.ceil(remaining))
            raise LockoutError(retry_after, self._clock() + timedelta(seconds=remaining))

    async def register_failure(self, identifier: str) -> LoginAttemptRecord:
        attempts_key, lock_key = self._keys(identifier)
        try:
            result = await self.counters.increment_and_lock(
                attempts_key,
                lock_key,
                threshold=self.threshold,
                window_seconds=self.window_seconds,
                lock_seconds=self.lock_seconds,
            )
        except StoreUnavailableError as exc:
            logger.error("lockout_store_unavailable", operation="register_failure", error=str(exc))
            raise InternalError() from exc

        now = self._clock()
        window_started = None
        if result.count:
            window_started = now - timedelta(
                seconds=self.window_seconds - result.window_remaining
            )
        locked_until = now + timedelta(seconds=result.lock_remaining) if result.locked else None
        if result.locked and result.count:
            logger.warning("account_locked", attempts=result.count, lock_seconds=self.lock_seconds)
            if self.audit:
                self.audit.emit(
                    "lockout",
                    "denied",
                    identifier=identifier,
                    attempts=result.count,
                    locked_until=locked_until.isoformat(),
                )
        return LoginAttemptRecord(
            identifier=identifier,
            count=0 if result.locked else result.count,
            window_started_at=None if result.locked else window_started,
            locked_until=locked_until,
        )

    async def reset(self, identifier: str) -> None:
        attempts_key, _ = self._keys(identifier)
        try:
            await self.counters.reset(attempts_key)
        except StoreUnavailableError as exc:
            # A stale streak only makes lockout stricter
            logger.warning("lockout_reset_failed", error=str(exc))

    async def status(self, identifier: str) -> LoginAttemptRecord:
        attempts_key, lock_key = self._keys(identifier)
        now = self._clock()
        count = await self.counters.get(attempts_key)
        window_left = await self.counters.ttl(attempts_key)
        lock_left = await self.counters.ttl(lock_key)
        return LoginAttemptRecord(
            identifier=identifier,
            count=count,
            window_started_at=(
                now - timedelta(seconds=self.window_seconds - window_left)
                if count and window_left is not None
                else None
            ),
            locked_until=now + timedelta(seconds=lock_left) if lock_left else None,
        )
