"""Tests for the session lifecycle: login, validate, authorize, logout."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import ADMIN_PASSWORD
from wedding_admin.config import RateLimitRule, RateLimitStrategy, Settings
from wedding_admin.service.errors import (
    AuthorizationError,
    CSRFError,
    InternalError,
    InvalidCredentialsError,
    LockoutError,
    RateLimitError,
    SessionExpiredError,
    SessionNotFoundError,
    ValidationError,
)
from wedding_admin.service.identity import IdentityProviderUnavailable
from wedding_admin.service.rbac import Permission
from wedding_admin.service.runtime import Runtime
from wedding_admin.storage.errors import StoreUnavailableError
from wedding_admin.storage.models import ClientContext

CLIENT = ClientContext(ip="203.0.113.7", user_agent="pytest")


async def _login(runtime, email, password=ADMIN_PASSWORD, **kwargs):
    csrf = runtime.csrf.create()
    return await runtime.sessions.login(
        email, password, csrf.token, csrf.cookie_hash, kwargs.pop("client", CLIENT), **kwargs
    )


class TestLogin:
    async def test_successful_login(self, runtime, make_admin, clock):
        """Valid credentials create a session with the role's permissions."""
        user = make_admin("couple@example.com", role="super_admin")

        result = await _login(runtime, "Couple@Example.com")

        session = result.session
        assert session.subject_id == user.id
        assert session.role == "super_admin"
        assert "manage_users" in session.permissions
        assert session.expires_at == clock() + timedelta(hours=24)
        assert session.ip_addr == "203.0.113.7"
        assert not session.remember_me
        assert await runtime.session_store.get_session(session.id) == session
        assert runtime.store.get_user(user.id).last_login_at == clock()

        event = runtime.audit.recent(action="login")[0]
        assert event.outcome == "success"
        assert event.actor == user.id

    async def test_login_issues_bound_csrf(self, runtime, make_admin):
        """The CSRF pair returned by login is bound to the new session."""
        make_admin("couple@example.com")
        result = await _login(runtime, "couple@example.com")

        assert await runtime.csrf.verify_bound(
            result.session.id, result.csrf.token, result.csrf.cookie_hash
        )

    async def test_remember_me_extends_lifetime(self, runtime, make_admin, clock):
        """remember_me sessions last seven days."""
        make_admin("couple@example.com")
        result = await _login(runtime, "couple@example.com", remember_me=True)

        assert result.session.remember_me
        assert result.session.expires_at == clock() + timedelta(days=7)

    async def test_unknown_email_and_wrong_password_look_identical(self, runtime, make_admin):
        """The two failure causes raise the same error with the same message."""
        make_admin("couple@example.com")

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await _login(runtime, "couple@example.com", "Wrong-Password-1!")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await _login(runtime, "nobody@example.com", "Wrong-Password-1!")

        assert type(wrong_password.value) is type(unknown_email.value)
        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401

    async def test_lockout_after_five_failures(self, runtime, make_admin):
        """After five wrong passwords even the correct one is refused."""
        make_admin("couple@example.com")

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(runtime, "couple@example.com", "Wrong-Password-1!")

        with pytest.raises(LockoutError) as exc_info:
            await _login(runtime, "couple@example.com")

        assert exc_info.value.retry_after_seconds == 900
        denied = runtime.audit.recent(action="login", outcome="denied")
        assert denied[0].detail["reason"] == "locked_out"

    async def test_lock_expires(self, runtime, make_admin, clock):
        """Once the lock lapses the correct password works again."""
        make_admin("couple@example.com")
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(runtime, "couple@example.com", "Wrong-Password-1!")

        clock.advance(seconds=901)
        result = await _login(runtime, "couple@example.com")
        assert result.session.id

    async def test_success_resets_failure_streak(self, runtime, make_admin):
        """A successful login clears earlier failures."""
        make_admin("couple@example.com")
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await _login(runtime, "couple@example.com", "Wrong-Password-1!")
        await _login(runtime, "couple@example.com")

        status = await runtime.lockout.status("couple@example.com")
        assert status.count == 0

    async def test_missing_csrf_rejected_before_credentials(self, runtime, make_admin):
        """Login without a valid CSRF pair fails and does not count as a failed attempt."""
        make_admin("couple@example.com")

        with pytest.raises(CSRFError):
            await runtime.sessions.login(
                "couple@example.com", "Wrong-Password-1!", None, None, CLIENT
            )

        status = await runtime.lockout.status("couple@example.com")
        assert status.count == 0

    async def test_blank_credentials_are_validation_errors(self, runtime):
        """Empty email or password is rejected before anything else runs."""
        with pytest.raises(ValidationError):
            await _login(runtime, "", ADMIN_PASSWORD)
        with pytest.raises(ValidationError):
            await _login(runtime, "couple@example.com", "")

    async def test_inactive_user_denied(self, runtime, make_admin):
        """A deactivated admin with the right password is refused."""
        make_admin("former@example.com", active=False)

        with pytest.raises(AuthorizationError):
            await _login(runtime, "former@example.com")

        assert runtime.session_store.sessions == {}

    async def test_identity_outage_is_internal_and_not_counted(self, runtime, make_admin):
        """A provider outage is a 500 and never feeds the lockout counter."""
        make_admin("couple@example.com")
        provider = Mock()
        provider.verify_credentials = AsyncMock(side_effect=IdentityProviderUnavailable("down"))
        runtime.sessions.identity = provider

        for _ in range(6):
            with pytest.raises(InternalError):
                await _login(runtime, "couple@example.com")

        status = await runtime.lockout.status("couple@example.com")
        assert status.count == 0
        assert status.locked_until is None

    async def test_login_rate_limited_per_client(self, tmp_path, clock):
        """The login rate limit answers before lockout and is keyed by client."""
        settings = Settings(
            test_mode=True,
            session_secret="s" * 48,
            csrf_secret="c" * 48,
            state_path=str(tmp_path / "other.json"),
            rate_limits={
                "login": RateLimitRule(
                    strategy=RateLimitStrategy.FIXED_WINDOW, max_requests=2, window_seconds=60
                )
            },
        )
        runtime = Runtime(settings, clock=clock)
        user = runtime.store.create_user("couple@example.com", "admin")
        runtime.identity.set_password(user.id, ADMIN_PASSWORD)

        await _login(runtime, "couple@example.com")
        await _login(runtime, "couple@example.com")
        with pytest.raises(RateLimitError):
            await _login(runtime, "couple@example.com")

        other = ClientContext(ip="198.51.100.1")
        assert (await _login(runtime, "couple@example.com", client=other)).session


class TestValidate:
    async def test_validate_touches_activity(self, runtime, make_admin, clock):
        """A valid session gets its last activity refreshed."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session

        clock.advance(hours=1)
        validated = await runtime.sessions.validate(session.id, CLIENT)

        assert validated.last_activity_at == clock()
        assert (await runtime.session_store.get_session(session.id)).last_activity_at == clock()

    async def test_unknown_session(self, runtime):
        """Unknown and missing ids are authentication failures."""
        with pytest.raises(SessionNotFoundError):
            await runtime.sessions.validate("does-not-exist", CLIENT)
        with pytest.raises(SessionNotFoundError):
            await runtime.sessions.validate(None, CLIENT)

    async def test_absolute_expiry(self, runtime, make_admin, clock):
        """A session past expires_at is rejected and removed."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session

        clock.advance(hours=24, seconds=1)
        with pytest.raises(SessionExpiredError):
            await runtime.sessions.validate(session.id, CLIENT)

        assert await runtime.session_store.get_session(session.id) is None

    async def test_activity_does_not_extend_absolute_expiry(self, runtime, make_admin, clock):
        """Regular use keeps a session alive only until its absolute expiry."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com", remember_me=True)).session

        for _ in range(10):
            clock.advance(hours=20)
            if clock() > session.expires_at:
                break
            await runtime.sessions.validate(session.id, CLIENT)

        with pytest.raises(SessionExpiredError):
            await runtime.sessions.validate(session.id, CLIENT)

    async def test_inactivity_timeout(self, runtime, make_admin, clock):
        """A remember_me session idle past the inactivity timeout is rejected."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com", remember_me=True)).session

        clock.advance(hours=24, minutes=1)
        with pytest.raises(SessionExpiredError):
            await runtime.sessions.validate(session.id, CLIENT)

        event = runtime.audit.recent(action="session.validate")[0]
        assert event.detail["reason"] == "inactive"

    async def test_reload_user_refreshes_role(self, runtime, make_admin):
        """Role changes reach live sessions when the user is reloaded."""
        user = make_admin("couple@example.com", role="moderator")
        session = (await _login(runtime, "couple@example.com")).session
        runtime.store.update_user_role(user.id, "super_admin")

        refreshed = await runtime.sessions.validate(session.id, CLIENT, reload_user=True)

        assert refreshed.role == "super_admin"
        assert "manage_users" in refreshed.permissions

    async def test_resolve_returns_reloaded_user(self, runtime, make_admin):
        """resolve hands back the user it read, so callers need no second lookup."""
        user = make_admin("couple@example.com", role="moderator")
        session = (await _login(runtime, "couple@example.com")).session
        runtime.store.update_user_role(user.id, "admin")

        resolved, current = await runtime.sessions.resolve(session.id, CLIENT)

        assert current.id == user.id
        assert current.role == "admin"
        assert resolved.role == "admin"

    async def test_reload_user_rejects_deactivated(self, runtime, make_admin):
        """A deactivated user's session stops validating."""
        user = make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session
        runtime.store.set_user_active(user.id, False)

        with pytest.raises(SessionNotFoundError):
            await runtime.sessions.validate(session.id, CLIENT, reload_user=True)
        assert await runtime.session_store.get_session(session.id) is None

    async def test_read_retried_once(self, runtime, make_admin):
        """One transient store failure on read is retried."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session
        real_get = runtime.session_store.get_session
        flaky = AsyncMock(
            side_effect=[StoreUnavailableError("blip", operation="get_session"), await real_get(session.id)]
        )
        runtime.session_store.get_session = flaky

        assert (await runtime.sessions.validate(session.id, CLIENT)).id == session.id
        assert flaky.await_count == 2

    async def test_persistent_store_failure(self, runtime):
        """Two failures in a row surface as InternalError."""
        runtime.session_store.get_session = AsyncMock(
            side_effect=StoreUnavailableError("down", operation="get_session")
        )

        with pytest.raises(InternalError):
            await runtime.sessions.validate("some-id", CLIENT)


class TestAuthorize:
    async def test_read_only_access_needs_no_csrf(self, runtime, make_admin):
        """Non-mutating checks only need a session and the permission."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session

        authorized = await runtime.sessions.authorize(
            session.id, Permission.VIEW_ANALYTICS, CLIENT
        )
        assert authorized.id == session.id

    async def test_mutation_requires_bound_csrf(self, runtime, make_admin):
        """Mutations need the CSRF pair bound to the session."""
        make_admin("couple@example.com", role="super_admin")
        result = await _login(runtime, "couple@example.com")

        with pytest.raises(CSRFError):
            await runtime.sessions.authorize(
                result.session.id, Permission.MANAGE_USERS, CLIENT, mutating=True
            )

        foreign = runtime.csrf.create()
        with pytest.raises(CSRFError):
            await runtime.sessions.authorize(
                result.session.id,
                Permission.MANAGE_USERS,
                CLIENT,
                mutating=True,
                csrf_token=foreign.token,
                csrf_cookie=foreign.cookie_hash,
            )

        await runtime.sessions.authorize(
            result.session.id,
            Permission.MANAGE_USERS,
            CLIENT,
            mutating=True,
            csrf_token=result.csrf.token,
            csrf_cookie=result.csrf.cookie_hash,
        )

    async def test_missing_permission(self, runtime, make_admin):
        """An admin cannot manage users."""
        make_admin("couple@example.com", role="admin")
        session = (await _login(runtime, "couple@example.com")).session

        with pytest.raises(AuthorizationError):
            await runtime.sessions.authorize(session.id, Permission.MANAGE_USERS, CLIENT)


class TestLogout:
    async def test_logout_destroys_session(self, runtime, make_admin):
        """After logout the session no longer validates."""
        make_admin("couple@example.com")
        result = await _login(runtime, "couple@example.com")

        await runtime.sessions.logout(result.session.id, CLIENT)

        with pytest.raises(SessionNotFoundError):
            await runtime.sessions.validate(result.session.id, CLIENT)
        assert not await runtime.csrf.verify_bound(
            result.session.id, result.csrf.token, result.csrf.cookie_hash
        )

    async def test_logout_is_idempotent(self, runtime, make_admin):
        """Logging out twice, or without a session, is not an error."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session

        await runtime.sessions.logout(session.id, CLIENT)
        await runtime.sessions.logout(session.id, CLIENT)
        await runtime.sessions.logout(None, CLIENT)

    async def test_logout_with_required_csrf(self, runtime, make_admin):
        """When CSRF is required, a missing token keeps the session alive."""
        make_admin("couple@example.com")
        result = await _login(runtime, "couple@example.com")

        with pytest.raises(CSRFError):
            await runtime.sessions.logout(result.session.id, CLIENT, require_csrf=True)
        assert await runtime.session_store.get_session(result.session.id)

        await runtime.sessions.logout(
            result.session.id,
            CLIENT,
            csrf_token=result.csrf.token,
            csrf_cookie=result.csrf.cookie_hash,
            require_csrf=True,
        )
        assert await runtime.session_store.get_session(result.session.id) is None

    async def test_logout_during_validate_is_not_undone(self, runtime, make_admin):
        """A logout landing while validate is suspended keeps the session destroyed."""
        make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session
        store = runtime.session_store
        real_get = store.get_session

        async def slow_get(session_id):
            found = await real_get(session_id)
            await asyncio.sleep(0.01)
            return found

        store.get_session = slow_get

        validated, _ = await asyncio.gather(
            runtime.sessions.validate(session.id, CLIENT),
            store.delete_session(session.id),
            return_exceptions=True,
        )

        assert isinstance(validated, SessionNotFoundError)
        assert await real_get(session.id) is None
        event = runtime.audit.recent(action="session.validate")[0]
        assert event.detail["reason"] == "revoked"

    async def test_revocation_during_validate_is_not_undone(self, runtime, make_admin):
        """Revoking a subject's sessions mid-validate leaves none behind."""
        user = make_admin("couple@example.com")
        session = (await _login(runtime, "couple@example.com")).session
        store = runtime.session_store
        real_get = store.get_session

        async def slow_get(session_id):
            found = await real_get(session_id)
            await asyncio.sleep(0.01)
            return found

        store.get_session = slow_get

        await asyncio.gather(
            runtime.sessions.validate(session.id, CLIENT, reload_user=True),
            runtime.sessions.revoke_subject_sessions(user.id),
            return_exceptions=True,
        )

        assert store.sessions == {}


class TestHousekeeping:
    async def test_revoke_subject_sessions(self, runtime, make_admin):
        """All of a subject's sessions can be revoked, optionally keeping one."""
        make_admin("couple@example.com")
        first = (await _login(runtime, "couple@example.com")).session
        second = (await _login(runtime, "couple@example.com")).session
        third = (await _login(runtime, "couple@example.com")).session

        revoked = await runtime.sessions.revoke_subject_sessions(
            first.subject_id, except_session_id=third.id
        )

        assert revoked == 2
        for gone in (first, second):
            with pytest.raises(SessionNotFoundError):
                await runtime.sessions.validate(gone.id, CLIENT)
        assert (await runtime.sessions.validate(third.id, CLIENT)).id == third.id

    async def test_reclaim_expired(self, runtime, make_admin, clock):
        """Expired sessions and counters are dropped by the reclaimer."""
        make_admin("couple@example.com")
        await _login(runtime, "couple@example.com")
        await _login(runtime, "couple@example.com", remember_me=True)

        clock.advance(hours=24, minutes=1)
        removed = await runtime.sessions.reclaim_expired()

        assert removed >= 2
        assert runtime.session_store.sessions == {}

    def test_cookie_signing(self, runtime):
        """Signed cookie values round-trip and reject tampering."""
        signed = runtime.sessions.sign_session_id("abc123")

        assert runtime.sessions.unsign_session_id(signed) == "abc123"
        assert runtime.sessions.unsign_session_id("abc123") is None
        assert runtime.sessions.unsign_session_id(signed[:-1] + "x") is None
        assert runtime.sessions.unsign_session_id("") is None
