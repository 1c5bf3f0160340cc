"""Unit tests for the Postgres and Redis backends with their clients stubbed out."""

import json
from datetime import timedelta
from pathlib import Path

import pytest
from psycopg import errors

from photofilter.logging import get_logger
from photofilter.storage.errors import ConstraintViolation
from photofilter.storage.models import ShareGrant, utcnow
from photofilter.storage.postgres import PostgresStore
from photofilter.storage.redis_cache import RedisShareStore


class FakeCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.raise_on_execute:
            raise self.pool.raise_on_execute
        return FakeCursor(self.pool.rows.pop(0) if self.pool.rows else None)


class DummyPool:
    def __init__(self, rows=None, raise_on_execute=None):
        self.rows = list(rows or [])
        self.executed = []
        self.raise_on_execute = raise_on_execute

    def connection(self):
        return FakeConnection(self)


def _store(tmp_path: Path, pool: DummyPool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "id": "7b7c",
        "username": "alice",
        "password_hash": "h",
        "email": None,
        "email_verified": False,
        "email_verification_token": None,
        "email_verification_issued_at": None,
        "email_verification_expires_at": None,
        "refresh_tokens": [],
        "created_at": utcnow(),
    }
    row.update(overrides)
    return row


class TestPostgresStore:
    def test_create_user_maps_unique_violation(self, tmp_path):
        store = _store(tmp_path, DummyPool(raise_on_execute=errors.UniqueViolation()))

        with pytest.raises(ConstraintViolation):
            store.create_user("alice", password_hash="h")

    def test_row_mapping(self, tmp_path):
        store = _store(tmp_path, DummyPool(rows=[_row(refresh_tokens=["fp"])]))

        user = store.get_user_by_username("alice")

        assert user.subject_id == "7b7c"
        assert user.refresh_tokens == ["fp"]

    def test_rotate_is_conditional_update(self, tmp_path):
        pool = DummyPool(rows=[{"id": "7b7c"}])
        store = _store(tmp_path, pool)

        assert store.rotate_refresh_token("alice", "old", "new", keep=10) is True
        sql, params = pool.executed[0]
        assert sql.startswith("UPDATE app_user SET refresh_tokens")
        assert "%(old)s = ANY(refresh_tokens)" in sql
        assert params == {"keep": 10, "old": "old", "new": "new", "username": "alice"}

    def test_rotate_lost_race_returns_false(self, tmp_path):
        store = _store(tmp_path, DummyPool(rows=[]))

        assert store.rotate_refresh_token("alice", "old", "new") is False

    def test_consume_checks_expiry_in_sql(self, tmp_path):
        pool = DummyPool(rows=[_row(email_verified=True)])
        store = _store(tmp_path, pool)
        now = utcnow()

        user = store.consume_email_verification_token("tok", now=now)

        assert user.email_verified is True
        sql, params = pool.executed[0]
        assert "email_verification_expires_at > %s" in sql
        assert params == ("tok", now)

    def test_consume_empty_token_skips_query(self, tmp_path):
        pool = DummyPool()
        store = _store(tmp_path, pool)

        assert store.consume_email_verification_token("") is None
        assert pool.executed == []


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    async def get(self, key):
        return self.values.get(key)

    async def delete(self, key):
        self.values.pop(key, None)


class TestRedisShareStore:
    async def test_put_get_delete(self):
        client = FakeRedis()
        store = RedisShareStore(client=client)
        grant = ShareGrant(
            token="tok",
            resource_id="img-1",
            resource_variant="sepia",
            owner_subject_id="owner",
            expires_at=utcnow() + timedelta(hours=2),
        )

        await store.put(grant)
        assert 7100 < client.ttls["share:tok"] <= 7200
        assert json.loads(client.values["share:tok"])["resource_id"] == "img-1"

        loaded = await store.get("tok")
        assert loaded == grant

        await store.delete("tok")
        assert await store.get("tok") is None

    async def test_ttl_clamped_for_expired_grant(self):
        client = FakeRedis()
        store = RedisShareStore(client=client)
        grant = ShareGrant(
            token="tok",
            resource_id="img-1",
            resource_variant="sepia",
            owner_subject_id="owner",
            expires_at=utcnow(),
        )

        await store.put(grant)
        assert client.ttls["share:tok"] == 1

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisShareStore()
