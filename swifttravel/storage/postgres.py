from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from swifttravel.logging import get_logger
from swifttravel.storage.errors import ConstraintViolation
from swifttravel.storage.models import User, default_preferences, utcnow

_UNSET: Any = object()


class PostgresStore:
    """Postgres-backed user directory."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_user_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_user_table(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_active_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        preferences = row.get("preferences")
        if isinstance(preferences, str):
            preferences = json.loads(preferences)
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            preferences=preferences or default_preferences(),
            created_at=row.get("created_at") or utcnow(),
            last_active_at=row.get("last_active_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        prefs = preferences if preferences is not None else default_preferences()
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, preferences, created_at, last_active_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user_id, email, name, json.dumps(prefs), now, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            name=name,
            preferences=prefs,
            created_at=now,
            last_active_at=now,
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = _UNSET,
        preferences: Optional[Dict[str, Any]] = None,
        last_active_at: Optional[datetime] = None,
    ) -> Optional[User]:
        assignments = []
        params: list[Any] = []
        if name is not _UNSET:
            assignments.append("name = %s")
            params.append(name)
        if preferences is not None:
            assignments.append("preferences = %s")
            params.append(json.dumps(preferences))
        if last_active_at is not None:
            assignments.append("last_active_at = %s")
            params.append(last_active_at)
        if not assignments:
            return self.get_user(user_id)
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)
