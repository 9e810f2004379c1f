# tests/conftest.py

import os
from collections.abc import AsyncIterator, Sequence
from typing import Any

import orjson
import pytest
import sqlalchemy as sa

# Point the app engine at a process-local in-memory DB before any app module
# creates it. StaticPool keeps the one connection (and so the schema) alive.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("INKPORT_SQLITE_STATIC_POOL", "1")

# TOML has lower precedence than env, but db.py resolved DATABASE_URL at import
# time, so override the module-level constant before any engine is created.
import Inkport.db as _db

_db.DATABASE_URL = os.environ["DATABASE_URL"]
_db._engine = None
_db._sessionmaker = None
_db._schema_initialized = False

from Inkport import models as _models  # noqa: F401,E402
from Inkport.db import Base, get_engine  # noqa: E402
from Inkport.errors import FatalConnectionError  # noqa: E402
from Inkport.metrics import reset_counters  # noqa: E402


def _reset_engine_globals() -> None:
    _db._engine = None
    _db._sessionmaker = None
    _db._schema_initialized = False


# Every test gets a brand new in-memory database: the engine is rebuilt, the
# schema created, and the engine disposed afterwards (which drops the DB).
@pytest.fixture(autouse=True)
async def _fresh_db() -> AsyncIterator[None]:
    _reset_engine_globals()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(sa.text("PRAGMA foreign_keys=ON"))
        await conn.run_sync(Base.metadata.create_all)
    _db._schema_initialized = True
    try:
        yield None
    finally:
        await engine.dispose()
        _reset_engine_globals()


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    reset_counters()


@pytest.fixture
def write_json(tmp_path):
    """Write a JSON payload under tmp_path and return the path."""

    def _write(name: str, payload: Any):
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(orjson.dumps(payload))
        return p

    return _write


class MemoryCatalogStore:
    """Dict-backed CatalogStore used where a real database is in the way."""

    def __init__(self, *, reachable: bool = True) -> None:
        self.reachable = reachable
        self.rows: dict[str, dict[int, dict[str, Any]]] = {
            "users": {},
            "works": {},
            "episodes": {},
        }
        self.links: dict[tuple[str, int], list[Any]] = {}
        self.named: dict[tuple[str, str], int] = {}
        self.calls: list[str] = []
        self._next_id = 1

    def _new_id(self) -> int:
        nid = self._next_id
        self._next_id += 1
        return nid

    async def ping(self) -> None:
        self.calls.append("ping")
        if not self.reachable:
            raise FatalConnectionError("cannot reach store: connection refused")

    def _key_of(self, entity: str, values: dict[str, Any]) -> tuple:
        if entity == "users":
            return (values["email"],)
        if entity == "works":
            return (values["slug"],)
        return (values["work_id"], values["slug"])

    async def find_by_natural_key(self, entity: str, key: tuple) -> int | None:
        self.calls.append(f"find:{entity}")
        for row_id, values in self.rows[entity].items():
            if self._key_of(entity, values) == tuple(key):
                return row_id
        return None

    async def insert(
        self, entity: str, values: dict[str, Any], links: Sequence[Any] | None = None
    ) -> int:
        self.calls.append(f"insert:{entity}")
        row_id = self._new_id()
        self.rows[entity][row_id] = dict(values)
        if links is not None:
            self.links[(entity, row_id)] = list(links)
        return row_id

    async def update(
        self,
        entity: str,
        row_id: int,
        values: dict[str, Any],
        links: Sequence[Any] | None = None,
    ) -> None:
        self.calls.append(f"update:{entity}")
        self.rows[entity][row_id].update(values)
        if links is not None:
            self.links[(entity, row_id)] = list(links)

    async def delete_all(self, entity: str) -> int:
        self.calls.append(f"delete:{entity}")
        n = len(self.rows[entity])
        self.rows[entity].clear()
        if entity == "works":
            self.rows["episodes"].clear()
        return n

    async def find_work_by_title(self, title: str):
        self.calls.append("find_title:works")
        for row_id, values in self.rows["works"].items():
            if values.get("title") == title:
                return (row_id, values["slug"])
        return None

    async def find_named(self, kind: str, name: str, *, case_insensitive: bool = False):
        self.calls.append(f"find_named:{kind}")
        for (k, n), row_id in self.named.items():
            if k == kind and (n.lower() == name.lower() if case_insensitive else n == name):
                return row_id
        return None

    async def create_named(self, kind: str, name: str) -> int:
        self.calls.append(f"create_named:{kind}")
        row_id = self._new_id()
        self.named[(kind, name)] = row_id
        return row_id


@pytest.fixture
def memory_store() -> MemoryCatalogStore:
    return MemoryCatalogStore()
