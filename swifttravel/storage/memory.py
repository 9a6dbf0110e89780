from __future__ import annotations

import copy
import json
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from swifttravel.logging import get_logger
from swifttravel.storage.errors import ConstraintViolation
from swifttravel.storage.models import User, default_preferences, utcnow

_UNSET: Any = object()


class MemoryStore:
    """In-memory user directory for tests and local development.

    When ``fs_root`` is given the users are written to ``state/users.json`` after
    every change and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "preferences": user.preferences,
            "created_at": user.created_at.isoformat(),
            "last_active_at": user.last_active_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            preferences=data.get("preferences") or default_preferences(),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_active_at=datetime.fromisoformat(data["last_active_at"]),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def verify_connection(self) -> None:
        """Nothing to check for the in-process store."""

    def close(self) -> None:
        self._persist_state()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                preferences=copy.deepcopy(preferences) if preferences else default_preferences(),
                created_at=now,
                last_active_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return copy.deepcopy(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = _UNSET,
        preferences: Optional[Dict[str, Any]] = None,
        last_active_at: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not _UNSET:
                user.name = name
            if preferences is not None:
                user.preferences = copy.deepcopy(preferences)
            if last_active_at is not None:
                user.last_active_at = last_active_at
            self._persist_state()
            return copy.deepcopy(user)


class MemoryTokenStore:
    """In-process key/value store with per-key TTL, used when Redis is unavailable.

    Only suitable for a single process: counters, magic tokens and revocation
    markers are not shared between workers. ``clock`` returns seconds and can be
    replaced in tests to fast-forward expiry.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return value

    def verify_connection(self) -> None:
        """Nothing to check for the in-process store."""

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    async def get_and_delete(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key)
            self._data.pop(key, None)
            return value

    async def increment_if_below(
        self, key: str, limit: int, ttl_seconds: int, *, refresh_ttl: bool = True
    ) -> Tuple[bool, int, int]:
        """Increment ``key`` unless it already reached ``limit``.

        Returns ``(allowed, count, ttl_remaining)``; a denied call leaves the
        counter and its expiry untouched.
        """
        with self._lock:
            current_raw = self._live_value(key)
            current = int(current_raw) if current_raw is not None else 0
            if current >= limit:
                return (False, current, self._remaining(key))
            count = current + 1
            expires_at = self._data[key][1] if current_raw is not None else None
            if count == 1 or refresh_ttl or expires_at is None:
                expires_at = self._clock() + max(1, int(ttl_seconds))
            self._data[key] = (str(count), expires_at)
            return (True, count, self._remaining(key))

    def _remaining(self, key: str) -> int:
        entry = self._data.get(key)
        if entry is None or entry[1] is None:
            return 0
        return max(0, int(round(entry[1] - self._clock())))

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
