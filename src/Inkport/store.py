"""Repository interface the seeding pipeline talks to.

The pipeline only knows ``CatalogStore``; ``SqlCatalogStore`` binds it to the
SQLAlchemy models. Every call is its own unit of work, so a record's row and its
association rows commit together and a failure never leaks into other records.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from Inkport import db, models, repos
from Inkport.errors import FatalConnectionError, PersistenceError

log = structlog.get_logger()

NaturalKey = tuple[Any, ...]

ENTITY_MODELS: dict[str, type[models.Base]] = {
    "users": models.User,
    "works": models.Work,
    "episodes": models.Episode,
}


class CatalogStore(Protocol):
    async def ping(self) -> None: ...

    async def find_by_natural_key(self, entity: str, key: NaturalKey) -> int | None: ...

    async def insert(
        self, entity: str, values: dict[str, Any], links: Sequence[Any] | None = None
    ) -> int: ...

    async def update(
        self,
        entity: str,
        row_id: int,
        values: dict[str, Any],
        links: Sequence[Any] | None = None,
    ) -> None: ...

    async def find_work_by_title(self, title: str) -> tuple[int, str] | None: ...

    async def delete_all(self, entity: str) -> int: ...

    async def find_named(
        self, kind: str, name: str, *, case_insensitive: bool = False
    ) -> int | None: ...

    async def create_named(self, kind: str, name: str) -> int: ...


class SqlCatalogStore:
    """``CatalogStore`` over the async SQLAlchemy session factory.

    ``links`` is entity specific: genre ids for works, ordered page URLs for
    episodes, ignored for users. ``None`` leaves existing links untouched.
    """

    def __init__(self, *, serialize: bool | None = None) -> None:
        # SQLite has a single writer; interleaved sessions on one connection
        # would commit or roll back each other's work.
        if serialize is None:
            serialize = db.is_sqlite()
        self._guard: asyncio.Lock | None = asyncio.Lock() if serialize else None

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[Any]:
        if self._guard is None:
            async with db.session_scope() as s:
                yield s
            return
        async with self._guard:
            async with db.session_scope() as s:
                yield s

    async def ping(self) -> None:
        try:
            await db.ping()
            await db.ensure_schema()
        except (SQLAlchemyError, OSError) as exc:
            raise FatalConnectionError(f"cannot reach store: {exc}") from exc

    async def find_by_natural_key(self, entity: str, key: NaturalKey) -> int | None:
        try:
            async with self._session() as s:
                row = await self._find(s, entity, key)
                return row.id if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"lookup of {entity} {key!r} failed: {exc}") from exc

    async def _find(self, s: Any, entity: str, key: NaturalKey) -> Any:
        if entity == "users":
            return await repos.get_user_by_email(s, key[0])
        if entity == "works":
            return await repos.get_work_by_slug(s, key[0])
        if entity == "episodes":
            if not isinstance(key[0], int):
                # Parent work not persisted (dry run)
                return None
            return await repos.get_episode(s, key[0], key[1])
        raise ValueError(f"unknown entity: {entity}")

    async def insert(
        self, entity: str, values: dict[str, Any], links: Sequence[Any] | None = None
    ) -> int:
        model = ENTITY_MODELS[entity]
        try:
            async with self._session() as s:
                obj = await repos.add_row(s, model, values)
                await self._write_links(s, entity, obj.id, links)
                return obj.id
        except SQLAlchemyError as exc:
            raise PersistenceError(f"insert into {entity} failed: {exc}") from exc

    async def update(
        self,
        entity: str,
        row_id: int,
        values: dict[str, Any],
        links: Sequence[Any] | None = None,
    ) -> None:
        model = ENTITY_MODELS[entity]
        try:
            async with self._session() as s:
                obj = await s.get(model, row_id)
                if obj is None:
                    raise PersistenceError(f"{entity} row {row_id} vanished before update")
                await repos.update_row(s, obj, values)
                await self._write_links(s, entity, row_id, links)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"update of {entity} #{row_id} failed: {exc}") from exc

    async def find_work_by_title(self, title: str) -> tuple[int, str] | None:
        try:
            async with self._session() as s:
                work = await repos.get_work_by_title(s, title)
                return (work.id, work.slug) if work is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"lookup of work titled {title!r} failed: {exc}") from exc

    async def _write_links(
        self, s: Any, entity: str, row_id: int, links: Sequence[Any] | None
    ) -> None:
        if links is None:
            return
        if entity == "works":
            await repos.replace_work_genres(s, row_id, links)
        elif entity == "episodes":
            await repos.replace_episode_images(s, row_id, links)

    async def delete_all(self, entity: str) -> int:
        deleters = {
            "episodes": repos.delete_episodes,
            "works": repos.delete_works,
            "users": repos.delete_users,
        }
        if entity not in deleters:
            raise ValueError(f"unknown entity: {entity}")
        try:
            async with self._session() as s:
                return await deleters[entity](s)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"clearing {entity} failed: {exc}") from exc

    async def find_named(
        self, kind: str, name: str, *, case_insensitive: bool = False
    ) -> int | None:
        async with self._session() as s:
            return await repos.find_named_id(s, kind, name, case_insensitive=case_insensitive)

    async def create_named(self, kind: str, name: str) -> int:
        async with self._session() as s:
            new_id = await repos.create_named(s, kind, name)
        log.debug("store.named.created", kind=kind, name=name, id=new_id)
        return new_id
