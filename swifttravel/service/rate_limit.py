from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from swifttravel.logging import get_logger
from swifttravel.service.errors import InternalError


class TokenStore(Protocol):
    """Key/value store with per-key expiry shared by the auth services."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def get_and_delete(self, key: str) -> Optional[str]: ...

    async def increment_if_below(
        self, key: str, limit: int, ttl_seconds: int, *, refresh_ttl: bool = True
    ) -> Tuple[bool, int, int]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_seconds: int


def rate_limit_key(email: str) -> str:
    return f"rate_limit:magic_link:{email}"


class MagicLinkRateLimiter:
    """Per-email counter bounding magic-link requests inside a window.

    The check and the increment run as one store operation, so concurrent
    requests for the same email can never push the counter past
    ``max_per_window``. With ``refresh_window`` every allowed request restarts
    the window; otherwise the window is anchored at the first request.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        max_per_window: int = 5,
        window_minutes: int = 15,
        refresh_window: bool = True,
        fail_open: bool = False,
    ) -> None:
        self.store = store
        self.max_per_window = max_per_window
        self.window_seconds = window_minutes * 60
        self.refresh_window = refresh_window
        self.fail_open = fail_open
        self.logger = get_logger(__name__)

    async def check_and_increment(self, email: str) -> RateLimitResult:
        key = rate_limit_key(email)
        try:
            allowed, count, ttl = await self.store.increment_if_below(
                key,
                self.max_per_window,
                self.window_seconds,
                refresh_ttl=self.refresh_window,
            )
        except Exception as exc:
            if self.fail_open:
                self.logger.warning(
                    "rate_limit_store_unavailable_fail_open",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return RateLimitResult(
                    allowed=True,
                    remaining=self.max_per_window - 1,
                    limit=self.max_per_window,
                    reset_seconds=self.window_seconds,
                )
            self.logger.error(
                "rate_limit_store_unavailable",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("Rate limit check failed") from exc

        reset_seconds = ttl if ttl > 0 else self.window_seconds
        if not allowed:
            self.logger.info("rate_limit_exceeded", count=count, limit=self.max_per_window)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=self.max_per_window,
                reset_seconds=reset_seconds,
            )
        return RateLimitResult(
            allowed=True,
            remaining=max(0, self.max_per_window - count),
            limit=self.max_per_window,
            reset_seconds=reset_seconds,
        )
