"""Tests for the user directory backends and the profile service."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from swifttravel.service.errors import NotFoundError
from swifttravel.service.users import UserService
from swifttravel.storage.errors import ConstraintViolation
from swifttravel.storage.memory import MemoryStore
from swifttravel.storage.models import MagicToken
from swifttravel.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Connection:
    """Context-managed connection stub returning a canned row."""

    def __init__(self, row=None, error=None):
        self.row = row
        self.error = error
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        if self.error:
            raise self.error
        cursor = MagicMock()
        cursor.fetchone.return_value = self.row
        return cursor


def _postgres_store(conn: _Connection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.logger = MagicMock()
    store._connect = lambda: conn
    return store


class TestMemoryStore:
    def test_create_and_lookup(self, memory_store):
        user = memory_store.create_user("user@example.com")
        assert memory_store.get_user(user.id).email == "user@example.com"
        assert memory_store.get_user_by_email("user@example.com").id == user.id
        assert user.preferences["travelStyle"] == "balanced"

    def test_duplicate_email_raises(self, memory_store):
        memory_store.create_user("user@example.com")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("user@example.com")
        assert excinfo.value.detail == {"field": "email"}

    def test_returned_records_are_copies(self, memory_store):
        user = memory_store.create_user("user@example.com")
        user.preferences["budgetRange"] = "luxury"
        assert memory_store.get_user(user.id).preferences["budgetRange"] == "mid-range"

    def test_update_unknown_user(self, memory_store):
        assert memory_store.update_user("missing", name="x") is None

    def test_persists_users_between_instances(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("persist@example.com")
        store.update_user(user.id, name="Persisted")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_user(user.id)
        assert restored.name == "Persisted"
        assert restored.email == "persist@example.com"


class TestPostgresStore:
    def test_create_user_maps_unique_violation(self):
        store = _postgres_store(_Connection(error=errors.UniqueViolation("duplicate")))
        with pytest.raises(ConstraintViolation):
            store.create_user("user@example.com")

    def test_create_user_inserts_default_preferences(self):
        conn = _Connection()
        store = _postgres_store(conn)
        user = store.create_user("user@example.com")
        sql, params = conn.executed[0]
        assert "INSERT INTO app_user" in sql
        assert params[1] == "user@example.com"
        assert json.loads(params[3])["budgetRange"] == "mid-range"
        assert user.email == "user@example.com"

    def test_get_user_by_email_parses_row(self):
        now = datetime.now(timezone.utc)
        row = {
            "id": "5c1e6a4e-0000-4000-8000-000000000001",
            "email": "user@example.com",
            "name": None,
            "preferences": json.dumps({"travelStyle": "packed"}),
            "created_at": now,
            "last_active_at": now,
        }
        store = _postgres_store(_Connection(row=row))
        user = store.get_user_by_email("user@example.com")
        assert user.preferences == {"travelStyle": "packed"}
        assert user.last_active_at == now

    def test_update_user_builds_partial_update(self):
        now = datetime.now(timezone.utc)
        row = {"id": "u1", "email": "user@example.com", "preferences": {}, "created_at": now, "last_active_at": now}
        conn = _Connection(row=row)
        store = _postgres_store(conn)
        store.update_user("u1", last_active_at=now)
        sql, params = conn.executed[0]
        assert "last_active_at = %s" in sql
        assert "name" not in sql.split("WHERE")[0]
        assert params == (now, "u1")


class TestUserService:
    def test_update_profile_merges_preferences(self, memory_store, clock):
        user = memory_store.create_user("user@example.com")
        service = UserService(memory_store, clock=clock)
        updated = service.update_profile(
            user.id, name="Ada", preferences={"travelStyle": "relaxed"}
        )
        assert updated.name == "Ada"
        assert updated.preferences["travelStyle"] == "relaxed"
        assert updated.preferences["budgetRange"] == "mid-range"
        assert updated.last_active_at == clock()

    def test_profile_of_missing_user(self, memory_store):
        with pytest.raises(NotFoundError):
            UserService(memory_store).get_profile("missing")


class TestMagicTokenRecord:
    def test_round_trip(self):
        record = MagicToken(email="user@example.com")
        assert MagicToken.from_json(record.to_json()).email == "user@example.com"

    @pytest.mark.parametrize("raw", ["{", "[]", '{"createdAt": "x"}'])
    def test_corrupt_payload(self, raw):
        with pytest.raises(ValueError):
            MagicToken.from_json(raw)
