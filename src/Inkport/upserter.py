"""Bounded-concurrency, idempotent insert-or-update keyed by natural key."""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Any, Protocol

import structlog

from Inkport.errors import ParentNotFound
from Inkport.metrics import inc_counter, observe_histogram
from Inkport.normalizer import ValidatedRecord
from Inkport.pool import KeyedLocks, run_bounded
from Inkport.reporting import SeedResult
from Inkport.store import CatalogStore, NaturalKey

log = structlog.get_logger()

EXISTS_REASON = "already exists"


class EntitySeeder(Protocol):
    """Entity-specific glue the upserter calls for each record."""

    entity: str

    def label(self, record: ValidatedRecord) -> str: ...

    async def locate(self, record: ValidatedRecord) -> NaturalKey: ...

    async def prepare(
        self, record: ValidatedRecord, key: NaturalKey
    ) -> tuple[dict[str, Any], list[Any] | None]: ...


def _chunks(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchUpserter:
    def __init__(
        self,
        store: CatalogStore,
        *,
        batch_size: int = 100,
        concurrency: int = 4,
        dry_run: bool = False,
        force_overwrite: bool = False,
    ) -> None:
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be >= 1")
        self.store = store
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.dry_run = dry_run
        self.force_overwrite = force_overwrite

    async def run(
        self,
        seeder: EntitySeeder,
        records: Sequence[ValidatedRecord],
        result: SeedResult | None = None,
    ) -> SeedResult:
        entity = seeder.entity
        result = result or SeedResult(entity=entity, dry_run=self.dry_run)
        locks = KeyedLocks()
        # Keys "written" so far in dry-run, so in-stage duplicates report as existing
        planned: set[NaturalKey] = set()
        start = time.perf_counter()

        async def _process(record: ValidatedRecord) -> None:
            await self._process(seeder, record, result, locks, planned)

        batches = _chunks(list(records), self.batch_size)
        for idx, batch in enumerate(batches, start=1):
            await run_bounded(batch, _process, concurrency=self.concurrency)
            log.info(
                "seed.batch.done",
                entity=entity,
                batch=idx,
                batches=len(batches),
                processed=result.processed,
                inserted=result.inserted,
                updated=result.updated,
                skipped=result.skipped,
                errors=result.errors,
            )
        result.duration += time.perf_counter() - start
        return result

    async def _process(
        self,
        seeder: EntitySeeder,
        record: ValidatedRecord,
        result: SeedResult,
        locks: KeyedLocks,
        planned: set[NaturalKey],
    ) -> None:
        entity = seeder.entity
        label = seeder.label(record)
        start = time.perf_counter()
        try:
            key = await seeder.locate(record)
            async with locks.hold(key):
                existing = await self.store.find_by_natural_key(entity, key)
                exists = existing is not None or key in planned
                if exists and not self.force_overwrite:
                    result.add_skip(label, EXISTS_REASON, record.source)
                    inc_counter("seed.records.skipped")
                    log.debug("seed.record.skipped", entity=entity, key=label)
                    return

                values, links = await seeder.prepare(record, key)
                if self.dry_run:
                    planned.add(key)
                elif existing is None:
                    await self.store.insert(entity, values, links)
                else:
                    await self.store.update(entity, existing, values, links)

                if exists:
                    result.updated += 1
                    inc_counter("seed.records.updated")
                else:
                    result.inserted += 1
                    inc_counter("seed.records.inserted")
                log.debug(
                    "seed.record.written",
                    entity=entity,
                    key=label,
                    action="update" if exists else "insert",
                    dry_run=self.dry_run,
                )
        except ParentNotFound as exc:
            result.add_skip(label, exc.reason, record.source)
            inc_counter("seed.records.skipped")
            log.warning(
                "seed.record.parent_missing",
                entity=entity,
                key=label,
                parent=exc.parent_key,
                source=record.source,
            )
        except Exception as exc:
            # Isolate the failure to this record; the batch carries on
            kind = getattr(exc, "kind", type(exc).__name__)
            result.add_error(label, kind, str(exc), record.source)
            inc_counter("seed.records.errors")
            log.error(
                "seed.record.failed",
                entity=entity,
                key=label,
                kind=kind,
                error=str(exc),
                source=record.source,
            )
        finally:
            observe_histogram("seed.record_ms", int((time.perf_counter() - start) * 1000))
