"""Identity provider: accounts, sessions and password resets.

``IdentityProvider`` is the server-side authority (bcrypt password hashes,
HS256 session tokens).  ``AuthClient`` is the per-client view of it: it
holds the current session and pushes every change to its listeners, which
is what the session monitor observes.
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable

import bcrypt
from jose import JWTError, jwt
from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy import select

from pitchroom.models import PasswordReset, User
from pitchroom.store import SERVER_TIMESTAMP, DocumentStore

log = logging.getLogger(__name__)

ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6

AUTH_MESSAGES = {
    "invalid-credentials": "The email or password is incorrect.",
    "email-in-use": "An account already exists for this email.",
    "weak-password": f"Password should be at least {MIN_PASSWORD_LENGTH} characters.",
    "invalid-email": "The email address is badly formatted.",
    "user-not-found": "There is no account for this email.",
    "invalid-action-code": "This reset link is invalid or has expired.",
}

_PROVIDER_PREFIX_RE = re.compile(r"^auth/[a-z-]+:\s*")
_email_adapter = TypeAdapter(EmailStr)


class AuthError(Exception):
    """Identity provider failure identified by a short ``code``."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"auth/{code}: {AUTH_MESSAGES.get(code, code)}")


def friendly_message(exc: Exception) -> str:
    """Strip the provider prefix from an auth error for display."""
    return _PROVIDER_PREFIX_RE.sub("", str(exc))


@dataclass(frozen=True)
class UserSession:
    uid: str
    email: str
    token: str


def _log_reset(email: str, token: str) -> None:
    log.info("Password reset link issued for %s", email)


class IdentityProvider:
    def __init__(
        self,
        store: DocumentStore,
        secret: str,
        token_ttl_minutes: int = 60 * 24,
        reset_ttl_minutes: int = 60,
        deliver_reset: Callable[[str, str], None] = _log_reset,
        bcrypt_rounds: int = 12,
    ):
        self.store = store
        self._secret = secret
        self._token_ttl = timedelta(minutes=token_ttl_minutes)
        self._reset_ttl = timedelta(minutes=reset_ttl_minutes)
        self._deliver_reset = deliver_reset
        self._rounds = bcrypt_rounds

    # --- hashing / tokens -------------------------------------------------

    def _hash(self, password: str) -> str:
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=self._rounds)).decode()

    @staticmethod
    def _check(password: str, hashed: str) -> bool:
        return bcrypt.checkpw(password.encode(), hashed.encode())

    def _encode(self, claims: dict, ttl: timedelta) -> str:
        now = datetime.now(UTC)
        return jwt.encode({**claims, "iat": now, "exp": now + ttl}, self._secret, algorithm=ALGORITHM)

    def _issue(self, uid: str, email: str) -> UserSession:
        token = self._encode({"sub": uid, "email": email, "purpose": "session"}, self._token_ttl)
        return UserSession(uid=uid, email=email, token=token)

    def verify(self, token: str) -> UserSession | None:
        """Return the session a token stands for, or None if it is invalid or expired."""
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError as exc:
            log.debug("Rejected session token: %s", exc)
            return None
        if claims.get("purpose") != "session" or not claims.get("sub"):
            return None
        return UserSession(uid=claims["sub"], email=claims.get("email", ""), token=token)

    # --- lookups ------------------------------------------------------------

    @staticmethod
    def _normalize_email(email: str) -> str:
        try:
            return _email_adapter.validate_python((email or "").strip()).lower()
        except ValidationError:
            raise AuthError("invalid-email") from None

    async def _find_user(self, email: str) -> dict | None:
        rows = await self.store.query(select(User).where(User.email == email))
        return rows[0] if rows else None

    # --- operations --------------------------------------------------------

    async def sign_up(self, email: str, password: str) -> UserSession:
        email = self._normalize_email(email)
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError("weak-password")
        if await self._find_user(email) is not None:
            raise AuthError("email-in-use")
        uid = uuid.uuid4().hex
        password_hash = await asyncio.to_thread(self._hash, password)
        await self.store.upsert(User, uid, {
            "email": email, "password_hash": password_hash, "created_at": SERVER_TIMESTAMP,
        })
        log.info("Created account %s", uid)
        return self._issue(uid, email)

    async def sign_in(self, email: str, password: str) -> UserSession:
        try:
            email = self._normalize_email(email)
        except AuthError:
            raise AuthError("invalid-credentials") from None
        user = await self._find_user(email)
        if user is None or not await asyncio.to_thread(self._check, password or "", user["password_hash"]):
            raise AuthError("invalid-credentials")
        return self._issue(user["id"], user["email"])

    async def send_password_reset(self, email: str) -> None:
        email = self._normalize_email(email)
        user = await self._find_user(email)
        if user is None:
            raise AuthError("user-not-found")
        expires_at = datetime.now(UTC).replace(tzinfo=None) + self._reset_ttl
        reset_id = await self.store.add(PasswordReset, {
            "uid": user["id"], "expires_at": expires_at, "used": False,
        })
        token = self._encode({"sub": user["id"], "rid": reset_id, "purpose": "reset"}, self._reset_ttl)
        self._deliver_reset(email, token)

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError:
            raise AuthError("invalid-action-code") from None
        if claims.get("purpose") != "reset":
            raise AuthError("invalid-action-code")
        reset = await self.store.get(PasswordReset, claims.get("rid", ""))
        if reset is None or reset["used"] or reset["uid"] != claims.get("sub"):
            raise AuthError("invalid-action-code")
        if reset["expires_at"] < datetime.now(UTC).replace(tzinfo=None):
            raise AuthError("invalid-action-code")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError("weak-password")
        password_hash = await asyncio.to_thread(self._hash, new_password)
        await self.store.upsert(User, reset["uid"], {"password_hash": password_hash})
        await self.store.upsert(PasswordReset, reset["id"], {"used": True})


class AuthClient:
    """One client's session state, pushed to listeners on every change."""

    def __init__(self, provider: IdentityProvider):
        self.provider = provider
        self._current: UserSession | None = None
        self._listeners: list[Callable[[UserSession | None], None]] = []

    def current_session(self) -> UserSession | None:
        return self._current

    def on_session_change(self, callback: Callable[[UserSession | None], None]) -> Callable[[], None]:
        """Register *callback*; it fires now with the current value and on every change.

        Returns a function that removes the listener.
        """
        self._listeners.append(callback)
        callback(self._current)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _set(self, session: UserSession | None) -> None:
        self._current = session
        for listener in list(self._listeners):
            listener(session)

    def restore(self, token: str | None) -> UserSession | None:
        """Resume a session from a stored token (cookie or header)."""
        self._set(self.provider.verify(token) if token else None)
        return self._current

    async def sign_in(self, email: str, password: str) -> UserSession:
        session = await self.provider.sign_in(email, password)
        self._set(session)
        return session

    async def sign_up(self, email: str, password: str) -> UserSession:
        session = await self.provider.sign_up(email, password)
        self._set(session)
        return session

    def sign_out(self) -> None:
        self._set(None)

    async def send_password_reset(self, email: str) -> None:
        await self.provider.send_password_reset(email)
