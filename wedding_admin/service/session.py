from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional

from wedding_admin.logging import get_logger
from wedding_admin.service.audit import AuditLogger
from wedding_admin.service.csrf import CSRFProtector
from wedding_admin.service.errors import (
    AuthorizationError,
    CSRFError,
    InternalError,
    InvalidCredentialsError,
    LockoutError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from wedding_admin.service.identity import (
    IdentityProvider,
    IdentityProviderUnavailable,
    InvalidCredentials,
    UserDirectory,
)
from wedding_admin.service.lockout import AccountLockoutGuard
from wedding_admin.service.rate_limit import RateLimiter
from wedding_admin.service.rbac import Permission, RBACEvaluator
from wedding_admin.storage.common import SessionStore, normalize_email
from wedding_admin.storage.counters import CounterStore
from wedding_admin.storage.errors import StoreUnavailableError
from wedding_admin.storage.models import (
    AdminUser,
    ClientContext,
    Clock,
    IssuedCSRFToken,
    Session,
    utcnow,
)

logger = get_logger(__name__)

LOGIN_ROUTE_CLASS = "login"


@dataclass(frozen=True)
class LoginResult:
    session: Session
    user: AdminUser
    csrf: IssuedCSRFToken


class SessionManager:
    """Owns the admin session lifecycle.

    The only component that creates or destroys sessions. Login runs the
    checks in a fixed order: input validation, CSRF (fail closed), rate
    limit, lockout, then the identity provider. Every outcome is audited.
    """

    def __init__(
        self,
        store: SessionStore,
        identity: IdentityProvider,
        directory: UserDirectory,
        csrf: CSRFProtector,
        rate_limiter: RateLimiter,
        lockout: AccountLockoutGuard,
        rbac: RBACEvaluator,
        audit: AuditLogger,
        *,
        session_secret: str,
        session_ttl: timedelta = timedelta(hours=24),
        remember_me_ttl: timedelta = timedelta(days=7),
        inactivity_timeout: timedelta = timedelta(hours=24),
        counters: CounterStore | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.identity = identity
        self.directory = directory
        self.csrf = csrf
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.rbac = rbac
        self.audit = audit
        self.session_ttl = session_ttl
        self.remember_me_ttl = remember_me_ttl
        self.inactivity_timeout = inactivity_timeout
        self.counters = counters
        self._session_secret = session_secret.encode("utf-8")
        self._clock = clock

    def _now(self):
        return self._clock()

    # -- cookie value signing -------------------------------------------------

    def _cookie_mac(self, session_id: str) -> str:
        return hmac.new(self._session_secret, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_session_id(self, session_id: str) -> str:
        return f"{session_id}.{self._cookie_mac(session_id)}"

    def unsign_session_id(self, value: Optional[str]) -> Optional[str]:
        """Return the session id from a cookie value, or None if it was tampered with."""
        if not value:
            return None
        session_id, sep, mac = value.rpartition(".")
        if not sep or not session_id:
            return None
        if not hmac.compare_digest(self._cookie_mac(session_id), mac):
            return None
        return session_id

    # -- store access -----------------------------------------------------------

    async def _read_session(self, session_id: str) -> Optional[Session]:
        # Read-only path: one retry on a transient store failure
        try:
            return await self.store.get_session(session_id)
        except StoreUnavailableError as exc:
            logger.warning("session_read_retry", error=str(exc))
        try:
            return await self.store.get_session(session_id)
        except StoreUnavailableError as exc:
            logger.error("session_store_unavailable", operation="get_session", error=str(exc))
            raise InternalError() from exc

    async def _write_session(self, session: Session) -> None:
        try:
            await self.store.put_session(session)
        except StoreUnavailableError as exc:
            logger.error("session_store_unavailable", operation="put_session", error=str(exc))
            raise InternalError() from exc

    async def _touch_session(self, session: Session) -> bool:
        try:
            return await self.store.touch_session(session)
        except StoreUnavailableError as exc:
            logger.error("session_store_unavailable", operation="touch_session", error=str(exc))
            raise InternalError() from exc

    async def _discard(self, session: Session) -> None:
        try:
            await self.store.delete_session(session.id)
            await self.csrf.revoke(session.id)
        except StoreUnavailableError as exc:
            # Expiry is re-checked on every access, so a leftover record is harmless
            logger.warning("session_discard_failed", error=str(exc))

    # -- operations -------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        csrf_token: Optional[str],
        csrf_cookie: Optional[str],
        client: ClientContext | None = None,
        *,
        remember_me: bool = False,
        bypass_token: Optional[str] = None,
    ) -> LoginResult:
        client = client or ClientContext()
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized or not password:
            self.audit.emit("login", "failure", client=client, reason="validation")
            raise ValidationError("email and password are required")

        if not self.csrf.verify(csrf_token, csrf_cookie):
            self.audit.emit("login", "denied", client=client, reason="csrf")
            raise CSRFError()

        await self.rate_limiter.enforce(
            client.identifier, LOGIN_ROUTE_CLASS, client=client, bypass_token=bypass_token
        )

        identifier = self.lockout.identifier_for(normalized, client)
        try:
            await self.lockout.check(identifier)
        except LockoutError as exc:
            self.audit.emit(
                "login",
                "denied",
                client=client,
                email=normalized,
                reason="locked_out",
                retry_after_seconds=exc.retry_after_seconds,
            )
            raise

        try:
            assertion = await self.identity.verify_credentials(normalized, password)
        except InvalidCredentials:
            record = await self.lockout.register_failure(identifier)
            locked = record.locked_until is not None
            logger.info("login_failed", attempts=record.count, locked=locked)
            self.audit.emit(
                "login",
                "failure",
                client=client,
                email=normalized,
                reason="invalid_credentials",
                locked=locked,
            )
            raise InvalidCredentialsError()
        except IdentityProviderUnavailable as exc:
            # Not a credential failure: no lockout accounting, no retry
            logger.error("identity_provider_failed", error=str(exc))
            self.audit.emit(
                "login", "failure", client=client, email=normalized, reason="identity_unavailable"
            )
            raise InternalError() from exc

        await self.lockout.reset(identifier)

        user = self.directory.get_user(assertion.subject_id)
        if user is None:
            logger.error("identity_subject_unknown", subject_id=assertion.subject_id)
            self.audit.emit(
                "login", "failure", client=client, email=normalized, reason="unknown_subject"
            )
            raise InvalidCredentialsError()
        if not user.is_active:
            self.audit.emit(
                "login", "denied", actor=user.id, client=client, reason="inactive"
            )
            raise AuthorizationError("access denied")

        now = self._now()
        session = Session.new(
            user.id,
            user.role,
            user.permissions,
            now=now,
            ttl=self.remember_me_ttl if remember_me else self.session_ttl,
            remember_me=remember_me,
            ip_addr=client.ip,
            user_agent=client.user_agent,
        )
        await self._write_session(session)
        try:
            self.directory.touch_last_login(user.id, now)
        except Exception as exc:
            logger.warning("touch_last_login_failed", user_id=user.id, error=str(exc))
        try:
            issued = await self.csrf.issue(session.id)
        except StoreUnavailableError as exc:
            logger.error("csrf_bind_failed", error=str(exc))
            await self._discard(session)
            raise InternalError() from exc

        logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        self.audit.emit(
            "login", "success", actor=user.id, client=client, remember_me=remember_me
        )
        return LoginResult(session=session, user=user, csrf=issued)

    async def logout(
        self,
        session_id: Optional[str],
        client: ClientContext | None = None,
        *,
        csrf_token: Optional[str] = None,
        csrf_cookie: Optional[str] = None,
        require_csrf: bool = False,
    ) -> None:
        """Destroy a session. Logging out an absent session is a no-op."""
        session = await self._read_session(session_id) if session_id else None
        if session is None:
            self.audit.emit("logout", "success", client=client, reason="no_session")
            return
        if require_csrf and not await self.csrf.verify_bound(session.id, csrf_token, csrf_cookie):
            self.audit.emit("logout", "denied", actor=session.subject_id, client=client, reason="csrf")
            raise CSRFError()
        try:
            await self.store.delete_session(session.id)
            await self.csrf.revoke(session.id)
        except StoreUnavailableError as exc:
            logger.error("session_store_unavailable", operation="logout", error=str(exc))
            raise InternalError() from exc
        self.audit.emit("logout", "success", actor=session.subject_id, client=client)

    async def validate(
        self,
        session_id: Optional[str],
        client: ClientContext | None = None,
        *,
        reload_user: bool = False,
    ) -> Session:
        session, _ = await self._check(session_id, client, reload_user=reload_user)
        return session

    async def resolve(
        self, session_id: Optional[str], client: ClientContext | None = None
    ) -> tuple[Session, AdminUser]:
        """Validate with a directory reload and return the user read for it."""
        session, user = await self._check(session_id, client, reload_user=True)
        return session, user

    async def _check(
        self,
        session_id: Optional[str],
        client: ClientContext | None,
        *,
        reload_user: bool,
    ) -> tuple[Session, Optional[AdminUser]]:
        if not session_id:
            raise SessionNotFoundError()
        session = await self._read_session(session_id)
        if session is None:
            self.audit.emit("session.validate", "failure", client=client, reason="not_found")
            raise SessionNotFoundError()

        now = self._now()
        if session.is_expired(now) or session.is_idle(now, self.inactivity_timeout):
            await self._discard(session)
            reason = "expired" if session.is_expired(now) else "inactive"
            self.audit.emit(
                "session.validate", "failure", actor=session.subject_id, client=client, reason=reason
            )
            raise SessionExpiredError()

        user = None
        if reload_user:
            user = self.directory.get_user(session.subject_id)
            if user is None or not user.is_active:
                await self._discard(session)
                self.audit.emit(
                    "session.validate",
                    "denied",
                    actor=session.subject_id,
                    client=client,
                    reason="user_unavailable",
                )
                raise SessionNotFoundError()
            if user.role != session.role:
                logger.info("session_role_refreshed", user_id=user.id, role=user.role)
                session = replace(session, role=user.role, permissions=user.permissions)

        session = session.touched(now)
        if not await self._touch_session(session):
            # Logged out or revoked while this request was in flight
            self.audit.emit(
                "session.validate", "failure", actor=session.subject_id, client=client, reason="revoked"
            )
            raise SessionNotFoundError()
        return session, user

    async def authorize(
        self,
        session_id: Optional[str],
        permission: Permission | str,
        client: ClientContext | None = None,
        *,
        mutating: bool = False,
        csrf_token: Optional[str] = None,
        csrf_cookie: Optional[str] = None,
    ) -> Session:
        """Validate the session, enforce CSRF for mutations, then check permission."""
        session = await self.validate(session_id, client)
        if mutating and not await self.csrf.verify_bound(session.id, csrf_token, csrf_cookie):
            self.audit.emit(
                "csrf", "denied", actor=session.subject_id, client=client
            )
            raise CSRFError()
        self.rbac.require(session, permission, client)
        return session

    async def rotate_csrf(self, session: Session) -> IssuedCSRFToken:
        try:
            return await self.csrf.rotate(session.id)
        except StoreUnavailableError as exc:
            logger.error("csrf_rotate_failed", error=str(exc))
            raise InternalError() from exc

    async def revoke_subject_sessions(
        self,
        subject_id: str,
        *,
        actor: Optional[str] = None,
        client: ClientContext | None = None,
        except_session_id: Optional[str] = None,
    ) -> int:
        try:
            revoked = await self.store.delete_subject_sessions(subject_id, except_session_id)
        except StoreUnavailableError as exc:
            logger.error("session_store_unavailable", operation="revoke_subject", error=str(exc))
            raise InternalError() from exc
        self.audit.emit(
            "session.revoke_all",
            "success",
            actor=actor,
            client=client,
            subject_id=subject_id,
            revoked=revoked,
        )
        return revoked

    async def reclaim_expired(self) -> int:
        """Drop expired sessions and counters. Only bounds memory; expiry is also checked lazily."""
        removed = await self.store.purge_expired(
            self._now(), self.inactivity_timeout.total_seconds()
        )
        if self.counters is not None:
            removed += await self.counters.purge_expired()
        if removed:
            logger.info("expired_state_reclaimed", removed=removed)
        return removed
