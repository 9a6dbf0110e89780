from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http.cookies import CookieError, SimpleCookie
from typing import Any, Callable, Dict, Mapping, Optional

import jwt

from swifttravel.logging import get_logger, token_prefix
from swifttravel.service.errors import (
    AuthenticationError,
    InternalError,
    InvalidTokenError,
    NoTokenError,
    TokenExpiredError,
    TokenRevokedError,
)
from swifttravel.service.revocation import RevocationRegistry
from swifttravel.storage.models import User, utcnow

SESSION_COOKIE = "session"
_REQUIRED_CLAIMS = ["userId", "email", "expiresAt", "exp", "iat"]


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    email: str


@dataclass(frozen=True)
class AuthContext:
    user: SessionUser
    session_token: str


@dataclass(frozen=True)
class IssuedSession:
    token: str
    jti: str
    expires_at: datetime
    max_age_seconds: int


@dataclass
class IncomingAuthRequest:
    """Headers of an incoming request, keyed by lower-case name."""

    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "IncomingAuthRequest":
        return cls(headers={str(k).lower(): v for k, v in headers.items()})


def extract_session_token(request: IncomingAuthRequest) -> Optional[str]:
    """Bearer token from ``Authorization``, else the ``session`` cookie."""
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    raw_cookie = request.headers.get("cookie")
    if raw_cookie:
        cookies = SimpleCookie()
        try:
            cookies.load(raw_cookie)
        except CookieError:
            return None
        morsel = cookies.get(SESSION_COOKIE)
        if morsel is not None and morsel.value:
            return morsel.value
    return None


def session_identifier(token: str, claims: Mapping[str, Any]) -> str:
    """Revocation key for a session: its ``jti`` or the first 16 token chars."""
    jti = claims.get("jti")
    if isinstance(jti, str) and jti:
        return jti
    return token[:16]


def _parse_iso(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError("expiresAt must be an ISO-8601 string")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionTokenSigner:
    """Mints and decodes HS256 session JWTs."""

    def __init__(
        self,
        secret: str,
        *,
        expiration_hours: int = 24,
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.secret = secret
        self.expiration_hours = expiration_hours
        self.algorithm = algorithm
        self._clock = clock

    @property
    def max_age_seconds(self) -> int:
        return self.expiration_hours * 3600

    def mint(self, user: User) -> IssuedSession:
        now = self._clock()
        expires_at = now + timedelta(hours=self.expiration_hours)
        jti = uuid.uuid4().hex
        payload = {
            "userId": user.id,
            "email": user.email,
            "expiresAt": expires_at.isoformat(),
            "exp": int(expires_at.timestamp()),
            "iat": int(now.timestamp()),
            "jti": jti,
        }
        token = jwt.encode(payload, self.secret, algorithm=self.algorithm)
        return IssuedSession(
            token=token,
            jti=jti,
            expires_at=expires_at,
            max_age_seconds=self.max_age_seconds,
        )

    def decode(self, token: str, *, verify_exp: bool = True) -> Dict[str, Any]:
        """Verify the signature and return the claims.

        Raises ``jwt.ExpiredSignatureError`` or another ``jwt.InvalidTokenError``.
        """
        return jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            options={"require": _REQUIRED_CLAIMS, "verify_exp": verify_exp},
        )


class SessionValidator:
    """Turns an incoming request into an ``AuthContext`` or raises.

    Checks run in order: token presence, signature and ``exp``, revocation,
    then the explicit ``expiresAt`` claim against the injected clock.
    """

    def __init__(
        self,
        signer: SessionTokenSigner,
        revocations: RevocationRegistry,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.signer = signer
        self.revocations = revocations
        self._clock = clock
        self.logger = get_logger(__name__)

    async def validate(self, request: IncomingAuthRequest) -> AuthContext:
        token = extract_session_token(request)
        if not token:
            raise NoTokenError("No authentication token provided")
        try:
            return await self._validate_token(token)
        except (AuthenticationError, InternalError):
            raise
        except Exception as exc:
            self.logger.error(
                "session_validation_error",
                error_type=type(exc).__name__,
                error=str(exc),
                token=token_prefix(token),
            )
            raise InternalError("Failed to validate session") from exc

    async def _validate_token(self, token: str) -> AuthContext:
        try:
            claims = self.signer.decode(token)
        except jwt.ExpiredSignatureError:
            self.logger.info("session_expired", token=token_prefix(token))
            raise TokenExpiredError("Session token has expired")
        except jwt.InvalidTokenError as exc:
            self.logger.info(
                "session_invalid", token=token_prefix(token), reason=type(exc).__name__
            )
            raise InvalidTokenError("Invalid session token")

        user_id = claims.get("userId")
        email = claims.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise InvalidTokenError("Invalid session token")
        try:
            expires_at = _parse_iso(claims.get("expiresAt"))
        except ValueError:
            raise InvalidTokenError("Invalid session token")

        if await self.revocations.is_revoked(session_identifier(token, claims)):
            self.logger.info("session_revoked", token=token_prefix(token))
            raise TokenRevokedError("Session token has been revoked")

        if expires_at <= self._clock():
            self.logger.info("session_expired", token=token_prefix(token))
            raise TokenExpiredError("Session token has expired")

        return AuthContext(
            user=SessionUser(user_id=user_id, email=email), session_token=token
        )

    async def revoke_session(self, token: str) -> str:
        """Mark ``token`` revoked for the rest of its lifetime; returns its identifier."""
        try:
            claims = self.signer.decode(token, verify_exp=False)
        except jwt.InvalidTokenError:
            raise InvalidTokenError("Invalid session token")
        identifier = session_identifier(token, claims)
        now = int(self._clock().timestamp())
        exp = claims.get("exp")
        ttl = int(exp) - now if isinstance(exp, (int, float)) else self.signer.max_age_seconds
        await self.revocations.revoke(identifier, max(1, ttl))
        self.logger.info("session_revoked_on_logout", token=token_prefix(token), ttl_seconds=max(1, ttl))
        return identifier
