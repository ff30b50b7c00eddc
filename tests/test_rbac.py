"""Tests for the role/permission table and the RBAC evaluator."""

from datetime import timedelta

import pytest

from wedding_admin.service.audit import AuditLogger
from wedding_admin.service.errors import AuthorizationError
from wedding_admin.service.rbac import Permission, RBACEvaluator, Role, role_to_permissions
from wedding_admin.storage.models import ClientContext, Session


def _session(clock, role: str) -> Session:
    return Session.new(
        "subject-1",
        role,
        frozenset(),
        now=clock(),
        ttl=timedelta(hours=1),
    )


class TestRoleTable:
    """Static role -> permission mapping."""

    def test_super_admin_has_every_permission(self):
        """super_admin is granted all ten permissions."""
        assert role_to_permissions(Role.SUPER_ADMIN) == frozenset(Permission)
        assert len(role_to_permissions("super_admin")) == 10

    def test_admin_lacks_user_and_settings_management(self):
        """admin gets eight permissions, without manage_users or manage_settings."""
        perms = role_to_permissions(Role.ADMIN)
        assert len(perms) == 8
        assert Permission.MANAGE_USERS not in perms
        assert Permission.MANAGE_SETTINGS not in perms
        assert Permission.EXPORT_DATA in perms

    def test_moderator_permissions(self):
        """moderator covers guestbook moderation and analytics only."""
        assert role_to_permissions(Role.MODERATOR) == {
            Permission.MANAGE_GUESTBOOK,
            Permission.MODERATE_CONTENT,
            Permission.VIEW_ANALYTICS,
        }

    def test_unknown_role_rejected(self):
        """A value outside the role enum is an error, not an empty grant."""
        with pytest.raises(ValueError):
            role_to_permissions("owner")


class TestRBACEvaluator:
    """Authorization answers for a session."""

    def test_has_permission_follows_role(self, clock):
        """Answers come from the session's role."""
        rbac = RBACEvaluator()
        moderator = _session(clock, "moderator")

        assert rbac.has_permission(moderator, Permission.MODERATE_CONTENT)
        assert rbac.has_permission(moderator, "view_analytics")
        assert not rbac.has_permission(moderator, Permission.EXPORT_DATA)

    def test_snapshot_is_not_authoritative(self, clock):
        """A stale permission snapshot on the session grants nothing extra."""
        rbac = RBACEvaluator()
        session = _session(clock, "moderator")
        session.permissions = frozenset({"manage_users"})

        assert not rbac.has_permission(session, Permission.MANAGE_USERS)

    def test_unknown_permission_is_denied(self, clock):
        """Unknown permission names answer False instead of raising."""
        rbac = RBACEvaluator()
        assert not rbac.has_permission(_session(clock, "super_admin"), "launch_rockets")

    def test_unknown_session_role_has_no_permissions(self, clock):
        """A corrupted role on a session yields the empty set."""
        rbac = RBACEvaluator()
        assert rbac.permissions(_session(clock, "owner")) == frozenset()

    def test_role_checks(self, clock):
        """has_role and has_any_role compare against the session role."""
        rbac = RBACEvaluator()
        admin = _session(clock, "admin")

        assert rbac.has_role(admin, Role.ADMIN)
        assert not rbac.has_role(admin, "super_admin")
        assert rbac.has_any_role(admin, ["moderator", "admin"])
        assert not rbac.has_any_role(admin, [Role.SUPER_ADMIN, Role.MODERATOR])
        assert not rbac.has_role(admin, "owner")

    def test_require_raises_and_audits(self, clock):
        """A failed require is audited as denied and raises AuthorizationError."""
        audit = AuditLogger(clock=clock)
        rbac = RBACEvaluator(audit=audit)
        admin = _session(clock, "admin")

        with pytest.raises(AuthorizationError) as exc_info:
            rbac.require(admin, Permission.MANAGE_USERS, ClientContext(ip="10.0.0.1"))

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "insufficient permissions"
        event = audit.recent(1)[0]
        assert event.action == "authorization"
        assert event.outcome == "denied"
        assert event.actor == "subject-1"
        assert event.ip == "10.0.0.1"
        assert event.detail["permission"] == "manage_users"

    def test_require_passes_silently(self, clock):
        """A granted permission returns None and records nothing."""
        audit = AuditLogger(clock=clock)
        rbac = RBACEvaluator(audit=audit)

        assert rbac.require(_session(clock, "super_admin"), Permission.MANAGE_SETTINGS) is None
        assert audit.recent() == []

    def test_require_any_role(self, clock):
        """require_any_role denies when none of the roles match."""
        rbac = RBACEvaluator()
        moderator = _session(clock, "moderator")

        rbac.require_any_role(moderator, ["moderator"])
        with pytest.raises(AuthorizationError):
            rbac.require_any_role(moderator, [Role.ADMIN, Role.SUPER_ADMIN])

    def test_custom_permission_table(self, clock):
        """The evaluator can be built around an injected role table."""
        rbac = RBACEvaluator(lambda role: frozenset({Permission.EXPORT_DATA}))

        assert rbac.has_permission(_session(clock, "moderator"), Permission.EXPORT_DATA)
