"""Get-or-create for referenced names (author, artist, genre, type).

One ``RelationshipResolver`` is built per run and shared by every worker of the
works stage. Creation is single-flight per ``(kind, name)``: concurrent misses
for the same new name wait on one lock, and only the first creates the row.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from Inkport.errors import PersistenceError, RelationshipResolutionError
from Inkport.metrics import inc_counter
from Inkport.pool import KeyedLocks
from Inkport.store import CatalogStore

log = structlog.get_logger()

SENTINEL_NAMES: dict[str, str] = {
    "author": "Unknown Author",
    "artist": "Unknown Artist",
    "genre": "Unknown Genre",
    "type": "Unknown Type",
}

PLACEHOLDER_NAMES = frozenset({"", "_", "-", "unknown", "n/a", "na", "none", "null"})


def canonical_name(kind: str, name: Any) -> str:
    """Map empty and placeholder names to the per-kind sentinel."""
    if kind not in SENTINEL_NAMES:
        raise ValueError(f"unknown relationship kind: {kind}")
    if name is None:
        return SENTINEL_NAMES[kind]
    text = " ".join(str(name).split())
    if text.lower() in PLACEHOLDER_NAMES:
        return SENTINEL_NAMES[kind]
    return text


class RelationshipResolver:
    def __init__(
        self,
        store: CatalogStore,
        *,
        dry_run: bool = False,
        case_insensitive: bool = False,
    ) -> None:
        self._store = store
        self._dry_run = dry_run
        self._case_insensitive = case_insensitive
        self._memo: dict[tuple[str, str], int | None] = {}
        self._locks = KeyedLocks()
        self.created = 0
        self.reused = 0
        self.hits = 0

    def _key(self, kind: str, name: str) -> tuple[str, str]:
        return (kind, name.casefold() if self._case_insensitive else name)

    async def get_or_create(self, kind: str, name: Any) -> int | None:
        """Return the row id for ``name``, creating it on first use.

        Returns ``None`` only in dry-run mode for a name that does not exist yet.
        """
        resolved = canonical_name(kind, name)
        key = self._key(kind, resolved)
        if key in self._memo:
            self.hits += 1
            inc_counter("resolver.hit")
            return self._memo[key]

        async with self._locks.hold(key):
            # Another worker may have finished while we waited
            if key in self._memo:
                self.hits += 1
                inc_counter("resolver.hit")
                return self._memo[key]
            try:
                row_id = await self._store.find_named(
                    kind, resolved, case_insensitive=self._case_insensitive
                )
                if row_id is not None:
                    self.reused += 1
                    inc_counter("resolver.reused")
                elif self._dry_run:
                    log.debug("resolver.would_create", kind=kind, name=resolved)
                else:
                    row_id = await self._store.create_named(kind, resolved)
                    self.created += 1
                    inc_counter("resolver.created")
                    log.info("resolver.created", kind=kind, name=resolved, id=row_id)
            except (SQLAlchemyError, PersistenceError) as exc:
                raise RelationshipResolutionError(
                    f"cannot resolve {kind} {resolved!r}: {exc}"
                ) from exc
            self._memo[key] = row_id
            return row_id

    async def get_or_create_many(self, kind: str, names: list[str]) -> list[int]:
        ids: list[int] = []
        for name in names:
            row_id = await self.get_or_create(kind, name)
            if row_id is not None and row_id not in ids:
                ids.append(row_id)
        return ids

    def stats(self) -> dict[str, int]:
        return {
            "cached": len(self._memo),
            "hits": self.hits,
            "created": self.created,
            "reused": self.reused,
        }
