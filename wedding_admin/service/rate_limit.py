from __future__ import annotations

import hmac
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping, Optional

from wedding_admin.config import RateLimitRule, RateLimitStrategy
from wedding_admin.logging import get_logger
from wedding_admin.service.errors import InternalError, RateLimitError, ValidationError
from wedding_admin.storage.common import hashed_key
from wedding_admin.storage.counters import CounterStore
from wedding_admin.storage.errors import StoreUnavailableError
from wedding_admin.storage.models import ClientContext, Clock, utcnow

if TYPE_CHECKING:
    from wedding_admin.service.audit import AuditLogger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int = 0
    retry_after_ms: int = 0
    reset_after_ms: int = 0
    bypassed: bool = False


class RateLimiter:
    """Per-identifier request quotas, one rule per route class.

    Each decision is a single atomic counter-store call for the key being
    charged, so concurrent requests cannot both slip under the limit.
    """

    def __init__(
        self,
        counters: CounterStore,
        rules: Mapping[str, RateLimitRule],
        *,
        bypass_token: Optional[str] = None,
        audit: Optional["AuditLogger"] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.counters = counters
        self.rules = dict(rules)
        self._bypass_token = bypass_token
        self.audit = audit
        self._clock = clock

    def rule_for(self, route_class: str) -> RateLimitRule:
        rule = self.rules.get(route_class)
        if rule is None:
            raise ValidationError(
                "unknown rate limit class", detail={"route_class": route_class}
            )
        return rule

    def _is_bypass(self, presented: Optional[str]) -> bool:
        if not self._bypass_token or not presented:
            return False
        return hmac.compare_digest(self._bypass_token.encode(), presented.encode())

    async def check(
        self,
        identifier: str,
        route_class: str,
        *,
        client: ClientContext | None = None,
        bypass_token: Optional[str] = None,
    ) -> RateLimitDecision:
        rule = self.rule_for(route_class)
        if self._is_bypass(bypass_token):
            if self.audit:
                self.audit.emit(
                    "rate_limit.bypass", "success", client=client, route_class=route_class
                )
            return RateLimitDecision(
                allowed=True, limit=rule.max_requests, remaining=rule.max_requests, bypassed=True
            )
        if bypass_token:
            logger.warning("rate_limit_bypass_rejected", route_class=route_class)

        key = hashed_key(f"rate:{route_class}", identifier)
        now = self._clock().timestamp()
        try:
            match rule.strategy:
                case RateLimitStrategy.FIXED_WINDOW:
                    decision = await self._fixed_window(key, rule, now)
                case RateLimitStrategy.SLIDING_WINDOW:
                    decision = await self._sliding_window(key, rule, now)
                case RateLimitStrategy.TOKEN_BUCKET:
                    decision = await self._token_bucket(key, rule, now)
        except StoreUnavailableError as exc:
            logger.error("rate_limit_store_unavailable", route_class=route_class, error=str(exc))
            raise InternalError() from exc

        if not decision.allowed:
            logger.warning(
                "rate_limit_denied",
                route_class=route_class,
                retry_after_ms=decision.retry_after_ms,
            )
            if self.audit:
                self.audit.emit(
                    "rate_limit",
                    "denied",
                    client=client,
                    route_class=route_class,
                    retry_after_ms=decision.retry_after_ms,
                )
        return decision

    async def enforce(
        self,
        identifier: str,
        route_class: str,
        *,
        client: ClientContext | None = None,
        bypass_token: Optional[str] = None,
    ) -> RateLimitDecision:
        decision = await self.check(
            identifier, route_class, client=client, bypass_token=bypass_token
        )
        if not decision.allowed:
            raise RateLimitError(decision.retry_after_ms)
        return decision

    async def _fixed_window(
        self, key: str, rule: RateLimitRule, now: float
    ) -> RateLimitDecision:
        window = rule.window_seconds
        index = int(now // window)
        count = await self.counters.increment_and_get(f"{key}:{index}", window)
        reset_ms = _ceil_ms((index + 1) * window - now)
        allowed = count <= rule.max_requests
        return RateLimitDecision(
            allowed=allowed,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            retry_after_ms=0 if allowed else reset_ms,
            reset_after_ms=reset_ms,
        )

    async def _sliding_window(
        self, key: str, rule: RateLimitRule, now: float
    ) -> RateLimitDecision:
        """Sliding log of admitted requests; denied requests are not charged."""
        state = await self.counters.record_in_window(
            key, limit=rule.max_requests, window_seconds=rule.window_seconds, now=now
        )
        reset_ms = _ceil_ms(state.reset_after)
        return RateLimitDecision(
            allowed=state.allowed,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - state.count),
            retry_after_ms=0 if state.allowed else reset_ms,
            reset_after_ms=reset_ms,
        )

    async def _token_bucket(
        self, key: str, rule: RateLimitRule, now: float
    ) -> RateLimitDecision:
        state = await self.counters.consume_token(
            key,
            capacity=rule.max_requests,
            refill_per_second=rule.refill_per_second,
            now=now,
        )
        retry_ms = 0 if state.allowed else _ceil_ms(state.retry_after)
        return RateLimitDecision(
            allowed=state.allowed,
            limit=rule.max_requests,
            remaining=max(0, int(state.tokens)),
            retry_after_ms=retry_ms,
            reset_after_ms=retry_ms,
        )


def _ceil_ms(seconds: float) -> int:
    return max(1, math.ceil(seconds * 1000))
