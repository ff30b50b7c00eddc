from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AdminUser:
    id: str
    email: str
    role: str = "moderator"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    display_name: Optional[str] = None

    @classmethod
    def new(cls, email: str, role: str, *, display_name: str | None = None) -> "AdminUser":
        return cls(id=str(uuid.uuid4()), email=email, role=role, display_name=display_name)

    @property
    def permissions(self) -> FrozenSet[str]:
        """Permissions always come from the role table, never from storage."""
        from wedding_admin.service.rbac import role_to_permissions

        return frozenset(p.value for p in role_to_permissions(self.role))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "last_login_at": _iso(self.last_login_at),
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdminUser":
        return cls(
            id=data["id"],
            email=data["email"],
            role=data.get("role", "moderator"),
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            last_login_at=_parse_dt(data.get("last_login_at")),
            display_name=data.get("display_name"),
        )


@dataclass
class AdminCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    subject_id: str
    role: str
    permissions: FrozenSet[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    remember_me: bool = False
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        subject_id: str,
        role: str,
        permissions: FrozenSet[str],
        *,
        now: datetime,
        ttl: timedelta,
        remember_me: bool = False,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        return cls(
            # 256 bits of entropy, URL-safe so it can travel in a cookie
            id=secrets.token_urlsafe(32),
            subject_id=subject_id,
            role=role,
            permissions=frozenset(permissions),
            created_at=now,
            last_activity_at=now,
            expires_at=now + ttl,
            remember_me=remember_me,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_idle(self, now: datetime, inactivity_timeout: timedelta) -> bool:
        return now - self.last_activity_at > inactivity_timeout

    def is_valid(self, now: datetime, inactivity_timeout: timedelta) -> bool:
        return not self.is_expired(now) and not self.is_idle(now, inactivity_timeout)

    def touched(self, now: datetime) -> "Session":
        return replace(self, last_activity_at=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "role": self.role,
            "permissions": sorted(self.permissions),
            "created_at": _iso(self.created_at),
            "last_activity_at": _iso(self.last_activity_at),
            "expires_at": _iso(self.expires_at),
            "remember_me": self.remember_me,
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            role=data["role"],
            permissions=frozenset(data.get("permissions") or ()),
            created_at=_parse_dt(data["created_at"]),
            last_activity_at=_parse_dt(data["last_activity_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            remember_me=bool(data.get("remember_me", False)),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )


@dataclass(frozen=True)
class IssuedCSRFToken:
    """A double-submit pair: ``token`` goes to the client, ``cookie_hash`` into the cookie."""

    token: str
    cookie_hash: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LoginAttemptRecord:
    identifier: str
    count: int = 0
    window_started_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class ClientContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.ip or "unknown"


@dataclass(frozen=True)
class AuditEvent:
    timestamp: datetime
    action: str
    outcome: str
    actor: str = "anonymous"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "actor": self.actor,
            "action": self.action,
            "outcome": self.outcome,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "detail": dict(self.detail),
        }
