from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from wedding_admin.logging import get_logger
from wedding_admin.storage.common import normalize_email
from wedding_admin.storage.errors import ConstraintViolation
from wedding_admin.storage.models import AdminCredential, AdminUser, Clock, Session, utcnow


class MemoryStore:
    """In-process admin user directory with optional JSON persistence.

    Holds admin users and their password hashes. When ``state_path`` is set
    every mutation is written atomically to that file so that the directory
    survives restarts of a single-instance deployment.
    """

    def __init__(self, state_path: str | None = None, *, clock: Clock = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, AdminUser] = {}
        self.credentials: Dict[str, AdminCredential] = {}
        self._clock = clock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self._load_state()

    def create_user(
        self,
        email: str,
        role: str,
        *,
        display_name: str | None = None,
        is_active: bool = True,
    ) -> AdminUser:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = AdminUser.new(normalized, role, display_name=display_name)
            user.created_at = self._clock()
            user.is_active = is_active
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, subject_id: str) -> Optional[AdminUser]:
        with self._data_lock:
            return self.users.get(subject_id)

    def get_user_by_email(self, email: str) -> Optional[AdminUser]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(self, *, role: str | None = None) -> List[AdminUser]:
        with self._data_lock:
            users = list(self.users.values())
        if role:
            users = [u for u in users if u.role == role]
        return sorted(users, key=lambda u: u.created_at)

    def update_user_role(self, subject_id: str, role: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = self.users.get(subject_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def set_user_active(self, subject_id: str, is_active: bool) -> Optional[AdminUser]:
        with self._data_lock:
            user = self.users.get(subject_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def touch_last_login(self, subject_id: str, at: datetime | None = None) -> None:
        with self._data_lock:
            user = self.users.get(subject_id)
            if not user:
                return
            user.last_login_at = at or self._clock()
            self._persist_state()

    def save_password(self, subject_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if subject_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": subject_id}
                )
            existing = self.credentials.get(subject_id)
            now = self._clock()
            self.credentials[subject_id] = AdminCredential(
                user_id=subject_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else now,
                last_updated_at=now if existing else None,
            )
            self._persist_state()

    def get_password_record(self, subject_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(subject_id)
            return (cred.password_hash, cred.password_algo) if cred else None

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [u.to_dict() for u in self.users.values()],
            "credentials": [
                {
                    "user_id": cred.user_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "created_at": cred.created_at.isoformat(),
                }
                for cred in self.credentials.values()
            ],
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".admin_state_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.state_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: AdminUser.from_dict(u) for u in data.get("users", [])}
        self.credentials = {}
        for entry in data.get("credentials", []):
            created = entry.get("created_at")
            self.credentials[entry["user_id"]] = AdminCredential(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                created_at=datetime.fromisoformat(created) if created else self._clock(),
            )
        self.logger.info("admin_state_loaded", users=len(self.users))
        return True


class MemorySessionStore:
    """Session and CSRF-binding store for single-process deployments."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self.sessions: Dict[str, Session] = {}
        self._csrf: Dict[str, tuple[str, datetime]] = {}
        self._data_lock = threading.RLock()

    async def put_session(self, session: Session) -> None:
        with self._data_lock:
            self.sessions[session.id] = session

    async def touch_session(self, session: Session) -> bool:
        with self._data_lock:
            if session.id not in self.sessions:
                return False
            self.sessions[session.id] = session
            return True

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    async def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    async def delete_subject_sessions(
        self, subject_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.subject_id == subject_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
                self._csrf.pop(sid, None)
            return len(stale)

    async def bind_csrf(self, binding_key: str, cookie_hash: str, expires_at: datetime) -> None:
        with self._data_lock:
            self._csrf[binding_key] = (cookie_hash, expires_at)

    async def get_csrf(self, binding_key: str) -> Optional[str]:
        with self._data_lock:
            entry = self._csrf.get(binding_key)
            if entry is None:
                return None
            cookie_hash, expires_at = entry
            if self._clock() > expires_at:
                self._csrf.pop(binding_key, None)
                return None
            return cookie_hash

    async def unbind_csrf(self, binding_key: str) -> None:
        with self._data_lock:
            self._csrf.pop(binding_key, None)

    async def purge_expired(self, now: datetime, inactivity_seconds: float) -> int:
        idle = timedelta(seconds=inactivity_seconds)
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if not sess.is_valid(now, idle)]
            for sid in stale:
                self.sessions.pop(sid, None)
                self._csrf.pop(sid, None)
            expired_csrf = [key for key, (_, exp) in self._csrf.items() if now > exp]
            for key in expired_csrf:
                self._csrf.pop(key, None)
            return len(stale)

    async def close(self) -> None:
        return None
