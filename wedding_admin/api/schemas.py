from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from wedding_admin.storage.common import normalize_email
from wedding_admin.storage.models import AdminUser, AuditEvent, IssuedCSRFToken, Session


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "csrf_invalid",
    "not_found",
    "rate_limited",
    "locked_out",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body: stable code, taxonomy kind and a client-safe message."""

    code: str
    kind: str = "InternalError"
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_INVISIBLE = frozenset(
    "\u200b\u200c\u200d\ufeff"
    + "".join(chr(c) for c in range(0x202A, 0x202F))
    + "".join(chr(c) for c in range(0x2066, 0x206A))
)

# local@label.label..., each DNS label 1-63 chars without leading/trailing hyphen
_EMAIL_RE = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})"
    r"@(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)


def _validate_email(value: str) -> str:
    # Zero-width and bidi override characters would make lookalike accounts
    normalized = normalize_email("".join(ch for ch in value if ch not in _INVISIBLE))
    if len(normalized) > 254 or not _EMAIL_RE.match(normalized):
        raise ValueError("invalid email address")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminUserResponse(BaseModel):
    id: str
    email: str
    role: str
    display_name: Optional[str] = None
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: AdminUser) -> "AdminUserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            display_name=user.display_name,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class SessionInfo(BaseModel):
    expires_at: datetime
    last_activity_at: datetime
    remember_me: bool

    @classmethod
    def from_session(cls, session: Session) -> "SessionInfo":
        return cls(
            expires_at=session.expires_at,
            last_activity_at=session.last_activity_at,
            remember_me=session.remember_me,
        )


class LoginResponse(BaseModel):
    user: AdminUserResponse
    permissions: List[str]
    session: SessionInfo
    csrf_token: str


class CurrentSessionResponse(BaseModel):
    user: AdminUserResponse
    permissions: List[str]
    session: SessionInfo


class CSRFTokenResponse(BaseModel):
    token: str
    expires_at: datetime

    @classmethod
    def from_issued(cls, issued: IssuedCSRFToken) -> "CSRFTokenResponse":
        return cls(token=issued.token, expires_at=issued.expires_at)


class AuditEventResponse(BaseModel):
    timestamp: datetime
    actor: str
    action: str
    outcome: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    detail: dict = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            timestamp=event.timestamp,
            actor=event.actor,
            action=event.action,
            outcome=event.outcome,
            ip=event.ip,
            user_agent=event.user_agent,
            detail=dict(event.detail),
        )


class UserStatusResponse(BaseModel):
    user: AdminUserResponse
    revoked_sessions: int = 0
    csrf_token: str
