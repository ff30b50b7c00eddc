from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Callable, FrozenSet, Iterable, Optional

from wedding_admin.logging import get_logger
from wedding_admin.service.errors import AuthorizationError
from wedding_admin.storage.models import ClientContext, Session

if TYPE_CHECKING:
    from wedding_admin.service.audit import AuditLogger

logger = get_logger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"


class Permission(str, Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_CONTENT = "manage_content"
    MANAGE_RSVP = "manage_rsvp"
    MANAGE_GUESTBOOK = "manage_guestbook"
    MANAGE_GALLERY = "manage_gallery"
    MANAGE_NOTIFICATIONS = "manage_notifications"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_SETTINGS = "manage_settings"
    MODERATE_CONTENT = "moderate_content"
    EXPORT_DATA = "export_data"


_ADMIN_PERMISSIONS: FrozenSet[Permission] = frozenset(
    {
        Permission.MANAGE_CONTENT,
        Permission.MANAGE_RSVP,
        Permission.MANAGE_GUESTBOOK,
        Permission.MANAGE_GALLERY,
        Permission.MANAGE_NOTIFICATIONS,
        Permission.VIEW_ANALYTICS,
        Permission.MODERATE_CONTENT,
        Permission.EXPORT_DATA,
    }
)

_MODERATOR_PERMISSIONS: FrozenSet[Permission] = frozenset(
    {
        Permission.MANAGE_GUESTBOOK,
        Permission.MODERATE_CONTENT,
        Permission.VIEW_ANALYTICS,
    }
)


def role_to_permissions(role: Role | str) -> FrozenSet[Permission]:
    """Static role table. Each role lists its permissions explicitly; there is no hierarchy.

    Raises ``ValueError`` for a value that is not a known role.
    """
    match Role(role):
        case Role.SUPER_ADMIN:
            return frozenset(Permission)
        case Role.ADMIN:
            return _ADMIN_PERMISSIONS
        case Role.MODERATOR:
            return _MODERATOR_PERMISSIONS


PermissionTable = Callable[[Role | str], FrozenSet[Permission]]


class RBACEvaluator:
    """Answers authorization questions for a session.

    Answers always come from the role table applied to the session's current
    role; the permission snapshot stored on the session is informational.
    """

    def __init__(
        self,
        permissions_for: PermissionTable = role_to_permissions,
        *,
        audit: Optional["AuditLogger"] = None,
    ) -> None:
        self._permissions_for = permissions_for
        self.audit = audit

    def permissions(self, session: Session) -> FrozenSet[Permission]:
        try:
            return self._permissions_for(session.role)
        except ValueError:
            logger.warning("unknown_role", role=session.role, subject_id=session.subject_id)
            return frozenset()

    def has_permission(self, session: Session, permission: Permission | str) -> bool:
        try:
            wanted = Permission(permission)
        except ValueError:
            return False
        return wanted in self.permissions(session)

    def has_role(self, session: Session, role: Role | str) -> bool:
        try:
            return Role(session.role) == Role(role)
        except ValueError:
            return False

    def has_any_role(self, session: Session, roles: Iterable[Role | str]) -> bool:
        return any(self.has_role(session, role) for role in roles)

    def require(
        self,
        session: Session,
        permission: Permission | str,
        client: ClientContext | None = None,
    ) -> None:
        if self.has_permission(session, permission):
            return
        self._deny(session, client, permission=str(getattr(permission, "value", permission)))

    def require_any_role(
        self,
        session: Session,
        roles: Iterable[Role | str],
        client: ClientContext | None = None,
    ) -> None:
        roles = list(roles)
        if self.has_any_role(session, roles):
            return
        self._deny(session, client, roles=[str(getattr(r, "value", r)) for r in roles])

    def _deny(self, session: Session, client: ClientContext | None, **detail) -> None:
        if self.audit:
            self.audit.emit(
                "authorization", "denied", actor=session.subject_id, client=client, **detail
            )
        # Same message whether or not the target resource exists
        raise AuthorizationError("insufficient permissions")
