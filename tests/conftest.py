"""Pytest configuration: an in-memory stand-in for the asyncpg pool."""

from __future__ import annotations

import copy
import itertools
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import asyncpg
import jwt
import pytest

from auth import security
from core import db


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeStore:
    """Rows for the three image tables plus knobs to inject failures."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {
            "local_image": [],
            "remote_image": [],
            "image_details": [],
        }
        self._ids = itertools.count(1)
        self.commits = 0
        self.rollbacks = 0
        self.fail_details_insert = False
        self.statements: list[str] = []

    def next_id(self) -> int:
        return next(self._ids)

    def rows(self, table: str) -> list[dict]:
        return self.tables[table]


class FakeTransaction:
    def __init__(self, store: FakeStore):
        self.store = store
        self._snapshot: dict[str, list[dict]] | None = None

    async def __aenter__(self):
        self._snapshot = copy.deepcopy(self.store.tables)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.store.commits += 1
        else:
            self.store.tables = self._snapshot
            self.store.rollbacks += 1
        return False


class FakeConnection:
    """Understands exactly the statements issued by `images.repository`."""

    def __init__(self, store: FakeStore):
        self.store = store

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self.store)

    def _record(self, sql: str) -> str:
        normalized = " ".join(sql.split())
        self.store.statements.append(normalized)
        return normalized

    async def fetchrow(self, sql: str, *args):
        rows = await self.fetch(sql, *args)
        return rows[0] if rows else None

    async def fetch(self, sql: str, *args) -> list[dict]:
        q = self._record(sql)
        local = self.store.rows("local_image")

        if q.startswith("INSERT INTO local_image"):
            user_id, alias = args
            if any(r["alias"] == alias for r in local):
                raise asyncpg.UniqueViolationError(
                    f'duplicate key value violates unique constraint "local_image_alias_key" ({alias})'
                )
            row = {"id": self.store.next_id(), "local_user_id": user_id, "alias": alias, "published": _now()}
            local.append(row)
            return [dict(row)]

        if q.startswith("DELETE FROM local_image WHERE alias = $1 AND local_user_id = $2"):
            matched = [r for r in local if r["alias"] == args[0] and r["local_user_id"] == args[1]]
        elif q.startswith("DELETE FROM local_image WHERE alias = $1"):
            matched = [r for r in local if r["alias"] == args[0]]
        elif q.startswith("DELETE FROM local_image WHERE local_user_id = $1"):
            matched = [r for r in local if r["local_user_id"] == args[0]]
        elif q.startswith("SELECT") and "FROM local_image" in q:
            user_id, limit, offset = args
            owned = [r for r in local if r["local_user_id"] == user_id]
            owned.sort(key=lambda r: (r["published"], r["id"]), reverse=True)
            return [dict(r) for r in owned[offset : offset + limit]]
        elif q.startswith("SELECT") and "FROM image_details" in q:
            return [dict(r) for r in self.store.rows("image_details") if r["link"] == args[0]]
        else:
            raise AssertionError(f"unexpected statement: {q}")

        for row in matched:
            local.remove(row)
        return [dict(r) for r in matched]

    async def fetchval(self, sql: str, *args):
        q = self._record(sql)
        if q.startswith("SELECT EXISTS") and "FROM remote_image" in q:
            return any(r["link"] == args[0] for r in self.store.rows("remote_image"))
        raise AssertionError(f"unexpected statement: {q}")

    async def execute(self, sql: str, *args) -> str:
        q = self._record(sql)

        if q.startswith("INSERT INTO remote_image"):
            remote = self.store.rows("remote_image")
            inserted = 0
            for link in args[0]:
                if any(r["link"] == link for r in remote):
                    continue
                remote.append({"id": self.store.next_id(), "link": link, "published": _now()})
                inserted += 1
            return f"INSERT 0 {inserted}"

        if q.startswith("INSERT INTO image_details"):
            if self.store.fail_details_insert:
                raise asyncpg.ForeignKeyViolationError("insert on table \"image_details\" violates foreign key")
            details = self.store.rows("image_details")
            link, width, height, content_type, blurhash = args
            if any(r["link"] == link for r in details):
                return "INSERT 0 0"
            details.append(
                {
                    "id": self.store.next_id(),
                    "link": link,
                    "width": width,
                    "height": height,
                    "content_type": content_type,
                    "blurhash": blurhash,
                    "published": _now(),
                }
            )
            return "INSERT 0 1"

        raise AssertionError(f"unexpected statement: {q}")


class FakePool:
    def __init__(self, store: FakeStore):
        self.store = store
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield FakeConnection(self.store)

    async def close(self) -> None:
        return None


class UnreachablePool:
    @asynccontextmanager
    async def acquire(self):
        raise ConnectionRefusedError(111, "Connect call failed")
        yield  # pragma: no cover


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    monkeypatch.setattr(db, "_pool", FakePool(fake))
    return fake


@pytest.fixture
def unreachable_db(monkeypatch) -> None:
    monkeypatch.setattr(db, "_pool", UnreachablePool())


def mint_access_token(local_user_id: int, **claims) -> str:
    """Sign a token the way the account service does."""
    issued_at = int(time.time())
    payload = {
        "sub": str(local_user_id),
        "type": "access",
        "iat": issued_at,
        "exp": issued_at + 15 * 60,
    }
    payload.update(claims)
    return jwt.encode(payload, security.jwt_secret(), algorithm=security.jwt_algorithm())


@pytest.fixture
def make_access_token():
    return mint_access_token
