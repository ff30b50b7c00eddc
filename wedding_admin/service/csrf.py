from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from wedding_admin.logging import get_logger
from wedding_admin.service.errors import CSRFError
from wedding_admin.storage.common import SessionStore
from wedding_admin.storage.models import Clock, IssuedCSRFToken, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32


class CSRFProtector:
    """Double-submit CSRF tokens.

    The client receives a random token and echoes it in a header; the cookie
    carries ``"<issued_ts>.<hmac>"`` where the MAC covers token and issue
    time. Verification needs only the secret. When a binding key (a session
    id) is supplied the cookie value is also recorded server-side so a token
    can be revoked or rotated before it expires.
    """

    def __init__(
        self,
        secret: str,
        *,
        store: SessionStore | None = None,
        ttl: timedelta = timedelta(hours=24),
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("csrf secret must not be empty")
        self._secret = secret
        self.store = store
        self.ttl = ttl
        self._clock = clock

    @staticmethod
    def _mac(secret: str, token: str, issued_ts: int) -> str:
        message = f"{token}.{issued_ts}".encode("utf-8")
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def create(self) -> IssuedCSRFToken:
        """Generate an unbound token/cookie pair."""
        issued_at = self._clock().replace(microsecond=0)
        issued_ts = int(issued_at.timestamp())
        token = secrets.token_hex(TOKEN_BYTES)
        cookie_hash = f"{issued_ts}.{self._mac(self._secret, token, issued_ts)}"
        return IssuedCSRFToken(
            token=token,
            cookie_hash=cookie_hash,
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
        )

    async def issue(self, binding_key: Optional[str] = None) -> IssuedCSRFToken:
        issued = self.create()
        if binding_key and self.store is not None:
            await self.store.bind_csrf(binding_key, issued.cookie_hash, issued.expires_at)
        return issued

    async def rotate(self, binding_key: str) -> IssuedCSRFToken:
        """Replace the bound token after a successful state-changing request."""
        return await self.issue(binding_key)

    async def revoke(self, binding_key: str) -> None:
        if self.store is not None:
            await self.store.unbind_csrf(binding_key)

    def verify(
        self,
        presented_token: Optional[str],
        cookie_hash: Optional[str],
        secret: Optional[str] = None,
    ) -> bool:
        if not presented_token or not cookie_hash:
            return False
        ts_part, sep, mac = cookie_hash.partition(".")
        if not sep or not mac:
            return False
        try:
            issued_ts = int(ts_part)
        except ValueError:
            return False
        expected = self._mac(secret or self._secret, presented_token, issued_ts)
        if not hmac.compare_digest(expected, mac):
            return False
        issued_at = datetime.fromtimestamp(issued_ts, tz=timezone.utc)
        now = self._clock()
        if now - issued_at > self.ttl or issued_at - now > timedelta(minutes=5):
            return False
        return True

    async def verify_bound(
        self,
        binding_key: str,
        presented_token: Optional[str],
        cookie_hash: Optional[str],
    ) -> bool:
        if not self.verify(presented_token, cookie_hash):
            return False
        if self.store is None:
            return True
        bound = await self.store.get_csrf(binding_key)
        if bound is None:
            return False
        return hmac.compare_digest(bound, cookie_hash)

    def require(self, presented_token: Optional[str], cookie_hash: Optional[str]) -> None:
        if not self.verify(presented_token, cookie_hash):
            logger.warning(
                "csrf_rejected",
                has_token=bool(presented_token),
                has_cookie=bool(cookie_hash),
            )
            raise CSRFError()

    async def require_bound(
        self,
        binding_key: str,
        presented_token: Optional[str],
        cookie_hash: Optional[str],
    ) -> None:
        if not await self.verify_bound(binding_key, presented_token, cookie_hash):
            logger.warning(
                "csrf_rejected",
                bound=True,
                has_token=bool(presented_token),
                has_cookie=bool(cookie_hash),
            )
            raise CSRFError()
