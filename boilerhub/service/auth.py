from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, Protocol, Tuple, TypeVar

from boilerhub.config import Settings
from boilerhub.logging import get_logger
from boilerhub.service.credentials import CredentialValidator
from boilerhub.service.errors import (
    AuthenticationError,
    ConflictError,
    ServerError,
    ServiceError,
    StoreUnavailableError,
)
from boilerhub.service.tokens import RefreshClaims, TokenIssuer, TokenPair
from boilerhub.storage.errors import ConstraintViolation, SessionStoreUnavailable
from boilerhub.storage.models import User
from boilerhub.storage.session_store import SessionRecord

logger = get_logger(__name__)

T = TypeVar("T")

ROLES = ("user", "admin")


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(Protocol):
    async def put(
        self, user_id: str, session_id: str, refresh_token: str, ttl_seconds: int
    ) -> SessionRecord: ...

    async def get_by_refresh_value(self, refresh_token: str) -> Optional[SessionRecord]: ...

    async def consume(self, record: SessionRecord) -> bool: ...

    async def session_exists(self, user_id: str, session_id: str) -> bool: ...

    async def delete_session(self, user_id: str, session_id: str) -> bool: ...

    async def delete_all_sessions(self, user_id: str) -> int: ...


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_TOKEN = "invalid_token"
    USER_NOT_FOUND = "user_not_found"
    EMAIL_IN_USE = "email_in_use"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL_ERROR = "internal_error"


_INVALID_TOKEN_MESSAGE = "invalid or expired token"

_ERROR_MAP: dict[AuthErrorKind, Tuple[type[ServiceError], str]] = {
    AuthErrorKind.INVALID_CREDENTIALS: (AuthenticationError, "invalid credentials"),
    AuthErrorKind.INVALID_TOKEN: (AuthenticationError, _INVALID_TOKEN_MESSAGE),
    # Same message as INVALID_TOKEN so responses do not reveal account state
    AuthErrorKind.USER_NOT_FOUND: (AuthenticationError, _INVALID_TOKEN_MESSAGE),
    AuthErrorKind.EMAIL_IN_USE: (ConflictError, "email already exists"),
    AuthErrorKind.STORE_UNAVAILABLE: (StoreUnavailableError, "service temporarily unavailable"),
    AuthErrorKind.INTERNAL_ERROR: (ServerError, "internal server error"),
}


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """Outcome of an auth operation: either ``value`` or an ``error`` kind."""

    value: Optional[T] = None
    error: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthErrorKind) -> "AuthResult[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the ``ServiceError`` matching ``error``."""
        if self.error is None:
            return self.value  # type: ignore[return-value]
        exc_cls, message = _ERROR_MAP[self.error]
        raise exc_cls(message)


@dataclass(frozen=True)
class IssuedSession:
    user: User
    tokens: TokenPair


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    session_id: str


class AuthService:
    """Signup, login, refresh rotation, logout and request authentication."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        credentials: Optional[CredentialValidator] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.issuer = issuer or TokenIssuer(settings)
        self.credentials = credentials or CredentialValidator(store)
        self.logger = logger

    async def _open_session(self, user: User) -> TokenPair:
        tokens = self.issuer.issue(user)
        await self.sessions.put(
            user.id,
            tokens.session_id,
            tokens.refresh_token,
            self.issuer.refresh_ttl_seconds,
        )
        return tokens

    async def signup(
        self, email: str, password: str, name: Optional[str] = None
    ) -> AuthResult[IssuedSession]:
        """Create an account and open its first session.

        The store is pinged before anything is written. If it fails later,
        after the account is saved, the account stays and login works once
        the store recovers.
        """
        normalized = email.strip().lower()
        # Nothing is persisted while the session store cannot open a session
        try:
            await self.sessions.ping()
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="signup")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        try:
            user = self.store.create_user(normalized, name)
        except ConstraintViolation:
            return AuthResult.failure(AuthErrorKind.EMAIL_IN_USE)
        try:
            self.credentials.set_password(user.id, password)
        except ConstraintViolation as exc:
            self.logger.error("signup_password_save_failed", user_id=user.id, error=str(exc))
            return AuthResult.failure(AuthErrorKind.INTERNAL_ERROR)
        try:
            tokens = await self._open_session(user)
        except SessionStoreUnavailable as exc:
            self.logger.error(
                "session_store_unavailable", operation=exc.operation, stage="signup", user_id=user.id
            )
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info("user_signed_up", user_id=user.id)
        return AuthResult.success(IssuedSession(user=user, tokens=tokens))

    async def login(self, email: str, password: str) -> AuthResult[IssuedSession]:
        user = self.credentials.validate(email, password)
        if user is None:
            return AuthResult.failure(AuthErrorKind.INVALID_CREDENTIALS)
        try:
            tokens = await self._open_session(user)
        except SessionStoreUnavailable as exc:
            self.logger.error(
                "session_store_unavailable", operation=exc.operation, stage="login", user_id=user.id
            )
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info("user_logged_in", user_id=user.id, session_id=tokens.session_id)
        return AuthResult.success(IssuedSession(user=user, tokens=tokens))

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult[IssuedSession]:
        """Rotate a refresh token.

        Steps run strictly in order: signature and expiry, store lookup,
        subject/session match, user load, atomic consume, reissue. Nothing is
        mutated before the consume step, so every rejection leaves the store
        untouched.
        """
        if not refresh_token:
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

        claims: Optional[RefreshClaims] = self.issuer.decode_refresh(refresh_token)
        if claims is None:
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

        try:
            record = await self.sessions.get_by_refresh_value(refresh_token)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="refresh_lookup")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        if record is None:
            self.logger.info("refresh_token_unknown", user_id=claims.sub)
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

        if record.user_id != claims.sub or record.session_id != claims.sid:
            self.logger.warning(
                "refresh_token_subject_mismatch", user_id=claims.sub, record_user=record.user_id
            )
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            return AuthResult.failure(AuthErrorKind.USER_NOT_FOUND)

        try:
            won = await self.sessions.consume(record)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="refresh_consume")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        if not won:
            self.logger.warning("refresh_token_replayed", user_id=user.id, session_id=record.session_id)
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

        try:
            tokens = await self._open_session(user)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="refresh_write")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info(
            "session_rotated",
            user_id=user.id,
            old_session_id=record.session_id,
            session_id=tokens.session_id,
        )
        return AuthResult.success(IssuedSession(user=user, tokens=tokens))

    async def logout(self, user_id: str) -> AuthResult[int]:
        try:
            removed = await self.sessions.delete_all_sessions(user_id)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="logout")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info("user_logged_out", user_id=user_id, sessions_removed=removed)
        return AuthResult.success(removed)

    def subject_from_refresh(self, refresh_token: Optional[str]) -> Optional[str]:
        """User id of a signature-valid refresh token, used to scope logout."""
        if not refresh_token:
            return None
        claims = self.issuer.decode_refresh(refresh_token)
        return claims.sub if claims else None

    async def authenticate(self, authorization: Optional[str]) -> AuthResult[AuthContext]:
        """Resolve a bearer access token to a live session of an active user."""
        token = self._extract_bearer(authorization)
        if not token:
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)
        claims = self.issuer.decode_access(token)
        if claims is None:
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)
        try:
            live = await self.sessions.session_exists(claims.sub, claims.sid)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="authenticate")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        if not live:
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)
        user = self.store.get_user(claims.sub)
        if user is None or not user.is_active:
            return AuthResult.failure(AuthErrorKind.USER_NOT_FOUND)
        return AuthResult.success(AuthContext(user.id, user.email, user.role, claims.sid))

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> AuthResult[IssuedSession]:
        """Revoke every session, replace the password and open a fresh session.

        Sessions go first: if the store is down the account is left exactly as
        it was.
        """
        user = self.store.get_user(user_id)
        if user is None:
            return AuthResult.failure(AuthErrorKind.USER_NOT_FOUND)
        if not self.credentials.verify_password(user_id, current_password):
            return AuthResult.failure(AuthErrorKind.INVALID_CREDENTIALS)
        try:
            revoked = await self.sessions.delete_all_sessions(user_id)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="password_revoke")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.credentials.set_password(user_id, new_password)
        try:
            tokens = await self._open_session(user)
        except SessionStoreUnavailable as exc:
            self.logger.error("session_store_unavailable", operation=exc.operation, stage="password_change")
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return AuthResult.success(IssuedSession(user=user, tokens=tokens))

    @staticmethod
    def role_allows(role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required in ROLES

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
