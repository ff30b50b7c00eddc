from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from wedding_admin.logging import get_logger
from wedding_admin.storage.common import normalize_email
from wedding_admin.storage.memory import MemoryStore
from wedding_admin.storage.models import AdminUser

logger = get_logger(__name__)


class InvalidCredentials(Exception):
    """The identity backend rejected the email/password pair."""


class IdentityProviderUnavailable(Exception):
    """The identity backend could not give an answer."""


@dataclass(frozen=True)
class IdentityAssertion:
    subject_id: str
    email: str


class IdentityProvider(Protocol):
    async def verify_credentials(self, email: str, password: str) -> IdentityAssertion: ...


class UserDirectory(Protocol):
    def get_user(self, subject_id: str) -> Optional[AdminUser]: ...

    def touch_last_login(self, subject_id: str, at: datetime | None = None) -> None: ...


class PasswordService:
    """argon2id hashing for locally stored admin credentials."""

    ALGO = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("unused-dummy-password")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), self.ALGO

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn(self, password: str) -> None:
        self.verify(self._dummy_hash, password)


def validate_password(password: str) -> None:
    """Admin password policy used when seeding or resetting credentials."""
    if len(password) < 12:
        raise ValueError("password must be at least 12 characters")
    if not any(c.isupper() for c in password):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.islower() for c in password):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        raise ValueError("password must contain a digit")
    if all(c.isalnum() for c in password):
        raise ValueError("password must contain a special character")


class LocalIdentityProvider:
    """Verifies passwords against argon2 hashes held by the directory store."""

    def __init__(self, store: MemoryStore, passwords: PasswordService | None = None) -> None:
        self.store = store
        self.passwords = passwords or PasswordService()

    async def verify_credentials(self, email: str, password: str) -> IdentityAssertion:
        user = self.store.get_user_by_email(email)
        record = self.store.get_password_record(user.id) if user else None
        if not user or not record:
            self.passwords.burn(password)
            raise InvalidCredentials()
        stored_hash, algo = record
        if algo != PasswordService.ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            raise InvalidCredentials()
        if not self.passwords.verify(stored_hash, password):
            raise InvalidCredentials()
        return IdentityAssertion(subject_id=user.id, email=user.email)

    def set_password(self, subject_id: str, password: str) -> None:
        validate_password(password)
        digest, algo = self.passwords.hash_password(password)
        self.store.save_password(subject_id, digest, algo)


class HttpIdentityProvider:
    """Delegates password checks to a REST verification endpoint.

    Expects ``POST {verify_url}`` with ``{"email", "password"}`` and a JSON
    body ``{"subject_id", "email"}`` on success. 400/401/403/404 mean the
    credentials were rejected; anything else is treated as an outage.
    """

    _REJECTED = frozenset({400, 401, 403, 404})

    def __init__(
        self,
        verify_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.verify_url = verify_url
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def verify_credentials(self, email: str, password: str) -> IdentityAssertion:
        try:
            resp = await self._client.post(
                self.verify_url,
                json={"email": email, "password": password},
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            logger.error("identity_provider_unreachable", error=str(exc))
            raise IdentityProviderUnavailable("identity provider unreachable") from exc
        if resp.status_code in self._REJECTED:
            raise InvalidCredentials()
        if resp.status_code >= 300:
            logger.error("identity_provider_error", status_code=resp.status_code)
            raise IdentityProviderUnavailable(f"identity provider returned {resp.status_code}")
        try:
            body = resp.json()
            return IdentityAssertion(
                subject_id=str(body["subject_id"]),
                email=normalize_email(body.get("email") or email),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("identity_provider_bad_response", error=str(exc))
            raise IdentityProviderUnavailable("identity provider response malformed") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
