from __future__ import annotations

from swifttravel.logging import get_logger
from swifttravel.service.errors import InternalError
from swifttravel.service.rate_limit import TokenStore

REVOKED_SENTINEL = "revoked"


def revocation_key(identifier: str) -> str:
    return f"revoked_token:{identifier}"


class RevocationRegistry:
    """Markers for sessions ended before their natural expiry.

    Writes always fail closed: a logout that cannot be recorded is reported
    as an error. Reads follow ``fail_open``.
    """

    def __init__(self, store: TokenStore, *, fail_open: bool = True) -> None:
        self.store = store
        self.fail_open = fail_open
        self.logger = get_logger(__name__)

    async def revoke(self, identifier: str, ttl_seconds: int) -> None:
        try:
            await self.store.set_with_expiry(
                revocation_key(identifier), REVOKED_SENTINEL, max(1, int(ttl_seconds))
            )
        except Exception as exc:
            self.logger.error(
                "revocation_write_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("Failed to revoke session") from exc

    async def is_revoked(self, identifier: str) -> bool:
        try:
            value = await self.store.get(revocation_key(identifier))
        except Exception as exc:
            if not self.fail_open:
                self.logger.error(
                    "revocation_lookup_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise InternalError("Failed to validate session") from exc
            self.logger.warning(
                "revocation_lookup_failed_fail_open",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return value == REVOKED_SENTINEL
