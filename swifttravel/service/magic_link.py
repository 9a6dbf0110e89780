from __future__ import annotations

import asyncio
import re
import secrets
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlencode

from swifttravel.logging import get_logger, token_prefix
from swifttravel.service.email import EmailService, render_magic_link_email
from swifttravel.service.errors import (
    DeliveryFailedError,
    InternalError,
    InvalidOrExpiredTokenError,
    InvalidRequestError,
    RateLimitedError,
)
from swifttravel.service.rate_limit import MagicLinkRateLimiter, TokenStore
from swifttravel.service.sessions import IssuedSession, SessionTokenSigner
from swifttravel.service.users import UserService
from swifttravel.storage.models import MagicToken, User, utcnow

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """Validate an email address and return its canonical lower-case form.

    Raises ValueError with a client-facing message when the address is invalid.
    """
    if not isinstance(value, str):
        raise ValueError("Email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip()).lower()
    if not normalized:
        raise ValueError("Email is required")
    if len(normalized) > 254:
        raise ValueError("Email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email address")
    return normalized


def magic_token_key(token: str) -> str:
    return f"magic_token:{token}"


@dataclass(frozen=True)
class IssueResult:
    email: str
    remaining: int
    expires_in_minutes: int
    message_id: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    user: User
    session: IssuedSession


class MagicLinkIssuer:
    """Rate-checks, mints, stores and emails single-use sign-in tokens."""

    def __init__(
        self,
        store: TokenStore,
        rate_limiter: MagicLinkRateLimiter,
        email: EmailService,
        *,
        frontend_url: str,
        expiration_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.email = email
        self.frontend_url = frontend_url.rstrip("/")
        self.expiration_minutes = expiration_minutes
        self._clock = clock
        self.logger = get_logger(__name__)

    def build_link(self, token: str) -> str:
        return f"{self.frontend_url}/auth/verify?{urlencode({'token': token})}"

    async def issue(self, email: str) -> IssueResult:
        try:
            normalized = normalize_email(email)
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc

        limit = await self.rate_limiter.check_and_increment(normalized)
        if not limit.allowed:
            reset_at_ms = int(self._clock().timestamp() * 1000) + limit.reset_seconds * 1000
            window_minutes = max(1, self.rate_limiter.window_seconds // 60)
            raise RateLimitedError(
                "Rate limit exceeded. Please wait "
                f"{window_minutes} minutes before requesting another magic link.",
                detail={"retryAfter": limit.reset_seconds},
                headers={
                    "X-RateLimit-Limit": str(limit.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset_at_ms),
                    "Retry-After": str(limit.reset_seconds),
                },
            )

        token = secrets.token_hex(32)
        record = MagicToken(email=normalized, created_at=self._clock())
        try:
            await self.store.set_with_expiry(
                magic_token_key(token), record.to_json(), self.expiration_minutes * 60
            )
        except Exception as exc:
            self.logger.error(
                "magic_token_store_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("Failed to create magic link") from exc

        template = render_magic_link_email(
            normalized, self.build_link(token), self.expiration_minutes
        )
        result = await asyncio.to_thread(self.email.send, normalized, template)
        if not result.success:
            # The stored token stays valid until its TTL; a retry mints a new one.
            raise DeliveryFailedError(
                "Failed to send magic link email",
                detail={"provider": result.provider},
            )

        self.logger.info(
            "magic_link_sent",
            token=token_prefix(token),
            remaining=limit.remaining,
            message_id=result.message_id,
            provider=result.provider,
        )
        return IssueResult(
            email=normalized,
            remaining=limit.remaining,
            expires_in_minutes=self.expiration_minutes,
            message_id=result.message_id,
        )


class MagicTokenVerifier:
    """Consumes a magic token exactly once and opens a session for its owner."""

    def __init__(
        self,
        store: TokenStore,
        users: UserService,
        signer: SessionTokenSigner,
    ) -> None:
        self.store = store
        self.users = users
        self.signer = signer
        self.logger = get_logger(__name__)

    async def verify(self, token: str) -> VerificationResult:
        if not token:
            raise InvalidOrExpiredTokenError("The magic link token is invalid or has expired")
        try:
            raw = await self.store.get_and_delete(magic_token_key(token))
        except Exception as exc:
            self.logger.error(
                "magic_token_consume_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("Failed to verify magic link") from exc

        if raw is None:
            self.logger.info("magic_token_unknown", token=token_prefix(token))
            raise InvalidOrExpiredTokenError("The magic link token is invalid or has expired")
        try:
            record = MagicToken.from_json(raw)
        except ValueError:
            self.logger.warning("magic_token_corrupt", token=token_prefix(token))
            raise InvalidOrExpiredTokenError("The magic link token is invalid or has expired")

        user = self.users.upsert_by_email(record.email)
        session = self.signer.mint(user)
        self.logger.info("magic_link_verified", user_id=user.id, token=token_prefix(token))
        return VerificationResult(user=user, session=session)
