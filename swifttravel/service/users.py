from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from swifttravel.logging import get_logger
from swifttravel.service.errors import InternalError, NotFoundError
from swifttravel.storage.errors import ConstraintViolation
from swifttravel.storage.models import User, default_preferences, utcnow


class UserDirectory(Protocol):
    """User record storage implemented by MemoryStore and PostgresStore."""

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...


class UserService:
    def __init__(
        self, store: UserDirectory, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = get_logger(__name__)

    def _directory(self, failure: str, operation: str, *args: Any, **kwargs: Any) -> Any:
        """Run a directory call, surfacing backend failures as InternalError."""
        try:
            return getattr(self.store, operation)(*args, **kwargs)
        except ConstraintViolation:
            raise
        except Exception as exc:
            self.logger.error(
                "user_directory_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError(failure) from exc

    def upsert_by_email(self, email: str) -> User:
        """Return the user for ``email``, creating it on first sign-in.

        An existing record gets ``last_active_at`` touched. Losing a concurrent
        insert on the unique email re-reads and touches the winner's record.
        """
        failure = "Failed to create user"
        existing = self._directory(failure, "get_user_by_email", email)
        if existing is None:
            try:
                user = self._directory(
                    failure, "create_user", email, preferences=default_preferences()
                )
            except ConstraintViolation:
                existing = self._directory(failure, "get_user_by_email", email)
                if existing is None:
                    raise InternalError(failure)
            else:
                self.logger.info("user_created", user_id=user.id)
                return user
        touched = self._directory(
            failure, "update_user", existing.id, last_active_at=self._clock()
        )
        return touched or existing

    def get_profile(self, user_id: str) -> User:
        user = self._directory("Failed to load profile", "get_user", user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        """Apply a partial profile update.

        ``preferences`` is merged key by key into the stored document; keys not
        supplied keep their current value. ``last_active_at`` is always touched.
        """
        user = self.get_profile(user_id)
        fields: Dict[str, Any] = {"last_active_at": self._clock()}
        if name is not None:
            fields["name"] = name
        if preferences:
            merged = dict(user.preferences or {})
            merged.update(preferences)
            fields["preferences"] = merged
        updated = self._directory("Failed to update profile", "update_user", user_id, **fields)
        if updated is None:
            raise NotFoundError("User not found")
        self.logger.info(
            "profile_updated",
            user_id=user_id,
            fields=sorted(k for k in fields if k != "last_active_at"),
        )
        return updated
