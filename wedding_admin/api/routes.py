from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from wedding_admin.api.schemas import (
    AdminUserResponse,
    AuditEventResponse,
    CSRFTokenResponse,
    CurrentSessionResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    SessionInfo,
    UserStatusResponse,
)
from wedding_admin.logging import get_logger
from wedding_admin.service.errors import AuthenticationError, ValidationError
from wedding_admin.service.rate_limit import RateLimitDecision
from wedding_admin.service.rbac import Permission
from wedding_admin.service.runtime import Runtime
from wedding_admin.storage.models import ClientContext, IssuedCSRFToken, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin-auth"])

BYPASS_HEADER = "X-Rate-Limit-Bypass"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_context(request: Request, runtime: Runtime) -> ClientContext:
    ip: Optional[str] = None
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        ip = (
            request.headers.get("cf-connecting-ip")
            or request.headers.get("x-real-ip")
            or forwarded.split(",")[0].strip()
            or None
        )
    if not ip and request.client:
        ip = request.client.host
    return ClientContext(ip=ip, user_agent=request.headers.get("user-agent"))


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, -(-decision.reset_after_ms // 1000))

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    request: Request,
    response: Response,
    route_class: str,
    client: ClientContext,
) -> None:
    decision = await runtime.rate_limiter.enforce(
        client.identifier,
        route_class,
        client=client,
        bypass_token=request.headers.get(BYPASS_HEADER),
    )
    if not decision.bypassed:
        RateLimitInfo.from_decision(decision).apply_headers(response)


def _session_id(request: Request, runtime: Runtime) -> Optional[str]:
    raw = request.cookies.get(runtime.settings.session_cookie_name)
    return runtime.sessions.unsign_session_id(raw)


def _csrf_pair(request: Request, runtime: Runtime) -> tuple[Optional[str], Optional[str]]:
    return (
        request.headers.get(runtime.settings.csrf_header_name),
        request.cookies.get(runtime.settings.csrf_cookie_name),
    )


def _set_session_cookie(response: Response, runtime: Runtime, session: Session) -> None:
    ttl = runtime.sessions.remember_me_ttl if session.remember_me else runtime.sessions.session_ttl
    response.set_cookie(
        runtime.settings.session_cookie_name,
        runtime.sessions.sign_session_id(session.id),
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        max_age=int(ttl.total_seconds()),
        path="/",
    )


def _set_csrf_cookie(response: Response, runtime: Runtime, issued: IssuedCSRFToken) -> None:
    response.set_cookie(
        runtime.settings.csrf_cookie_name,
        issued.cookie_hash,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        max_age=int(runtime.csrf.ttl.total_seconds()),
        path="/",
    )


def _clear_auth_cookies(response: Response, runtime: Runtime) -> None:
    for name in (runtime.settings.session_cookie_name, runtime.settings.csrf_cookie_name):
        response.delete_cookie(
            name,
            path="/",
            secure=runtime.settings.cookie_secure,
            httponly=True,
            samesite="strict",
        )


def _permissions(runtime: Runtime, session: Session) -> list[str]:
    return sorted(p.value for p in runtime.rbac.permissions(session))


@router.get("/csrf-token", response_model=Envelope)
async def csrf_token(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    """Issue a CSRF token; bound to the caller's session when one is present."""
    client = _client_context(request, runtime)
    await _enforce_rate_limit(runtime, request, response, "general_api", client)
    session_id = _session_id(request, runtime)
    issued: IssuedCSRFToken | None = None
    if session_id:
        try:
            session = await runtime.sessions.validate(session_id, client)
            issued = await runtime.sessions.rotate_csrf(session)
        except AuthenticationError:
            issued = None
    if issued is None:
        issued = runtime.csrf.create()
    _set_csrf_cookie(response, runtime, issued)
    return Envelope(status="ok", data=CSRFTokenResponse.from_issued(issued))


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate an administrator.

    Raises:
        400: malformed body
        401: invalid credentials (same response for unknown email and wrong password)
        403: missing/invalid CSRF token or inactive account
        429: rate limited or account locked; ``Retry-After`` is set
    """
    client = _client_context(request, runtime)
    token, cookie = _csrf_pair(request, runtime)
    result = await runtime.sessions.login(
        body.email,
        body.password,
        token,
        cookie,
        client,
        remember_me=body.remember_me,
        bypass_token=request.headers.get(BYPASS_HEADER),
    )
    _set_session_cookie(response, runtime, result.session)
    _set_csrf_cookie(response, runtime, result.csrf)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=AdminUserResponse.from_user(result.user),
            permissions=_permissions(runtime, result.session),
            session=SessionInfo.from_session(result.session),
            csrf_token=result.csrf.token,
        ),
    )


@router.delete("/session", response_model=Envelope)
async def logout(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    client = _client_context(request, runtime)
    token, cookie = _csrf_pair(request, runtime)
    await runtime.sessions.logout(
        _session_id(request, runtime),
        client,
        csrf_token=token,
        csrf_cookie=cookie,
        require_csrf=True,
    )
    _clear_auth_cookies(response, runtime)
    response.headers["Clear-Site-Data"] = '"cookies", "storage"'
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/session", response_model=Envelope)
async def current_session(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    client = _client_context(request, runtime)
    await _enforce_rate_limit(runtime, request, response, "admin_api", client)
    session, user = await runtime.sessions.resolve(_session_id(request, runtime), client)
    return Envelope(
        status="ok",
        data=CurrentSessionResponse(
            user=AdminUserResponse.from_user(user),
            permissions=_permissions(runtime, session),
            session=SessionInfo.from_session(session),
        ),
    )


@router.get("/audit", response_model=Envelope)
async def audit_events(
    request: Request,
    response: Response,
    limit: int = Query(50, ge=1, le=500),
    actor: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    outcome: Optional[str] = Query(None, pattern="^(success|failure|denied)$"),
    runtime: Runtime = Depends(get_runtime),
):
    client = _client_context(request, runtime)
    await _enforce_rate_limit(runtime, request, response, "admin_api", client)
    await runtime.sessions.authorize(
        _session_id(request, runtime), Permission.MANAGE_USERS, client
    )
    events = runtime.audit.recent(limit, actor=actor, action=action, outcome=outcome)
    return Envelope(
        status="ok",
        data={
            "events": [AuditEventResponse.from_event(e) for e in events],
            "dropped": runtime.audit.dropped,
        },
    )


async def _set_user_active(
    subject_id: str,
    is_active: bool,
    request: Request,
    response: Response,
    runtime: Runtime,
) -> Envelope:
    client = _client_context(request, runtime)
    await _enforce_rate_limit(runtime, request, response, "admin_api", client)
    token, cookie = _csrf_pair(request, runtime)
    session = await runtime.sessions.authorize(
        _session_id(request, runtime),
        Permission.MANAGE_USERS,
        client,
        mutating=True,
        csrf_token=token,
        csrf_cookie=cookie,
    )
    if not is_active and subject_id == session.subject_id:
        raise ValidationError("cannot deactivate your own account")
    user = runtime.store.set_user_active(subject_id, is_active)
    if user is None:
        raise ValidationError("user not found", status_code=404, error_code="not_found")
    revoked = 0
    if not is_active:
        revoked = await runtime.sessions.revoke_subject_sessions(
            subject_id, actor=session.subject_id, client=client
        )
    runtime.audit.emit(
        "user.activate" if is_active else "user.deactivate",
        "success",
        actor=session.subject_id,
        client=client,
        subject_id=subject_id,
    )
    issued = await runtime.sessions.rotate_csrf(session)
    _set_csrf_cookie(response, runtime, issued)
    return Envelope(
        status="ok",
        data=UserStatusResponse(
            user=AdminUserResponse.from_user(user),
            revoked_sessions=revoked,
            csrf_token=issued.token,
        ),
    )


@router.post("/users/{subject_id}/deactivate", response_model=Envelope)
async def deactivate_user(
    subject_id: str,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    return await _set_user_active(subject_id, False, request, response, runtime)


@router.post("/users/{subject_id}/activate", response_model=Envelope)
async def activate_user(
    subject_id: str,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    return await _set_user_active(subject_id, True, request, response, runtime)
