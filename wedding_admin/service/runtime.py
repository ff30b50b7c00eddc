from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from wedding_admin.config import IdentityBackend, Settings
from wedding_admin.logging import get_logger
from wedding_admin.service.audit import AuditLogger, AuditSink
from wedding_admin.service.csrf import CSRFProtector
from wedding_admin.service.identity import (
    HttpIdentityProvider,
    IdentityProvider,
    LocalIdentityProvider,
)
from wedding_admin.service.lockout import AccountLockoutGuard
from wedding_admin.service.rate_limit import RateLimiter
from wedding_admin.service.rbac import RBACEvaluator
from wedding_admin.service.session import SessionManager
from wedding_admin.storage.common import SessionStore
from wedding_admin.storage.counters import CounterStore, MemoryCounterStore
from wedding_admin.storage.errors import ConstraintViolation
from wedding_admin.storage.memory import MemorySessionStore, MemoryStore
from wedding_admin.storage.models import Clock, utcnow
from wedding_admin.storage.redis_cache import (
    RedisCounterStore,
    RedisSessionStore,
    verify_connection,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Wires the access-control services together.

    Created once at process start and handed to the HTTP layer explicitly
    (``create_app(runtime=...)``); nothing reaches it through module globals.
    Collaborators can be injected for tests or alternative deployments.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock = utcnow,
        counters: CounterStore | None = None,
        session_store: SessionStore | None = None,
        directory: MemoryStore | None = None,
        identity: IdentityProvider | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        logger.info(
            "runtime_init_started",
            test_mode=settings.test_mode,
            identity_provider=settings.identity_provider.value,
        )

        self.redis_enabled = False
        if counters is None or session_store is None:
            counters, session_store = self._build_stores(settings, counters, session_store)
        self.counters = counters
        self.session_store = session_store

        self.store = directory or MemoryStore(settings.state_path, clock=clock)
        self.audit = AuditLogger(
            buffer_size=settings.audit_buffer_size, sink=audit_sink, clock=clock
        )
        if identity is None:
            identity = self._build_identity(settings)
        self.identity = identity

        self.rbac = RBACEvaluator(audit=self.audit)
        self.csrf = CSRFProtector(
            settings.csrf_secret,
            store=self.session_store,
            ttl=timedelta(minutes=settings.csrf_token_ttl_minutes),
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            self.counters,
            settings.rate_limits,
            bypass_token=settings.rate_limit_bypass_token,
            audit=self.audit,
            clock=clock,
        )
        self.lockout = AccountLockoutGuard(
            self.counters,
            threshold=settings.lockout_threshold,
            window_seconds=settings.lockout_window_seconds,
            lock_seconds=settings.lockout_duration_seconds,
            key_by_ip=settings.lockout_key_by_ip,
            audit=self.audit,
            clock=clock,
        )
        self.sessions = SessionManager(
            self.session_store,
            self.identity,
            self.store,
            self.csrf,
            self.rate_limiter,
            self.lockout,
            self.rbac,
            self.audit,
            session_secret=settings.session_secret,
            session_ttl=timedelta(minutes=settings.session_ttl_minutes),
            remember_me_ttl=timedelta(minutes=settings.remember_me_ttl_minutes),
            inactivity_timeout=timedelta(minutes=settings.inactivity_timeout_minutes),
            counters=self.counters,
            clock=clock,
        )
        self.seed_bootstrap_admin()
        logger.info("runtime_init_completed", redis_enabled=self.redis_enabled)

    def _build_stores(
        self,
        settings: Settings,
        counters: CounterStore | None,
        session_store: SessionStore | None,
    ) -> tuple[CounterStore, SessionStore]:
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                verify_connection(settings.redis_url)
                counters = counters or RedisCounterStore(
                    settings.redis_url, socket_timeout=settings.redis_socket_timeout
                )
                session_store = session_store or RedisSessionStore(
                    settings.redis_url,
                    socket_timeout=settings.redis_socket_timeout,
                    clock=self.clock,
                )
                self.redis_enabled = True
                return counters, session_store
            except Exception as exc:
                redis_error = exc
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error),
                mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )
        logger.warning(
            "memory_backends_single_process",
            message="Sessions, rate limits and lockout state are local to this process.",
        )
        return (
            counters or MemoryCounterStore(clock=self.clock),
            session_store or MemorySessionStore(clock=self.clock),
        )

    def _build_identity(self, settings: Settings) -> IdentityProvider:
        if settings.identity_provider == IdentityBackend.HTTP:
            return HttpIdentityProvider(
                settings.identity_verify_url,
                api_key=settings.identity_api_key,
                timeout=settings.identity_timeout_seconds,
            )
        return LocalIdentityProvider(self.store)

    def seed_bootstrap_admin(self) -> None:
        """Create the configured bootstrap admin if it does not exist yet."""
        email = self.settings.bootstrap_admin_email
        password = self.settings.bootstrap_admin_password
        if not email or not password:
            return
        if not isinstance(self.identity, LocalIdentityProvider):
            logger.info("bootstrap_admin_skipped", reason="external_identity_provider")
            return
        if self.store.get_user_by_email(email):
            return
        try:
            user = self.store.create_user(email, self.settings.bootstrap_admin_role)
        except ConstraintViolation:
            return
        self.identity.set_password(user.id, password)
        logger.info("bootstrap_admin_created", user_id=user.id, role=user.role)

    async def close(self) -> None:
        await self.audit.stop()
        await self.counters.close()
        await self.session_store.close()
        if isinstance(self.identity, HttpIdentityProvider):
            await self.identity.aclose()
