"""Contracts and helpers shared between the memory and Redis storage backends."""

from __future__ import annotations

import hashlib
import unicodedata
from datetime import datetime
from typing import Optional, Protocol

from wedding_admin.storage.models import Session


class SessionStore(Protocol):
    """Authoritative store for sessions and their bound CSRF hashes.

    Only the session manager writes to it. Backends shared by several
    processes must be reachable from all of them.
    """

    async def put_session(self, session: Session) -> None: ...

    async def touch_session(self, session: Session) -> bool:
        """Overwrite an existing session record; False if it is already gone."""
        ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def delete_subject_sessions(
        self, subject_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    async def bind_csrf(self, binding_key: str, cookie_hash: str, expires_at: datetime) -> None: ...

    async def get_csrf(self, binding_key: str) -> Optional[str]: ...

    async def unbind_csrf(self, binding_key: str) -> None: ...

    async def purge_expired(self, now: datetime, inactivity_seconds: float) -> int: ...

    async def close(self) -> None: ...


def normalize_email(email: str) -> str:
    """Canonical form used as directory key and lockout identifier."""
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def hashed_key(prefix: str, identifier: str) -> str:
    """Hash identifiers before they become store keys.

    Hashing keeps client-controlled input (emails, forwarded IPs) out of the
    key space so delimiters cannot collide.
    """
    digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"
