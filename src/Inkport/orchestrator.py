from __future__ import annotations

import time
import uuid
from enum import Enum
from pathlib import Path

import structlog

from Inkport.config import Settings, SeedOptions
from Inkport.discovery import discover_sources, load_source_records
from Inkport.errors import FatalConnectionError, SeedError
from Inkport.media import MediaCache, MediaPipeline
from Inkport.metrics import get_counters
from Inkport.normalizer import validate_records
from Inkport.reporting import RunReport, SeedResult
from Inkport.resolver import RelationshipResolver
from Inkport.seeders import EpisodeSeeder, UserSeeder, WorkSeeder
from Inkport.store import CatalogStore, SqlCatalogStore
from Inkport.upserter import BatchUpserter, EntitySeeder

log = structlog.get_logger()


class RunState(str, Enum):
    INIT = "Init"
    CONNECTING = "Connecting"
    CLEARING = "Clearing"
    SEEDING = "Seeding"
    VALIDATING = "Validating"
    REPORTING = "Reporting"
    DONE = "Done"
    FAILED = "Failed"


class SeedOrchestrator:
    """Runs the stages of one seeding run in dependency order.

    Connecting is the only fatal stage: when the store cannot be reached the
    report is finalized as Failed and ``FatalConnectionError`` propagates.
    Every other failure is already isolated per record below this layer.
    """

    def __init__(
        self,
        settings: Settings,
        options: SeedOptions,
        *,
        store: CatalogStore | None = None,
        media: MediaPipeline | None = None,
        data_root: str | Path | None = None,
        media_cache_path: str | Path | None = None,
    ) -> None:
        self.settings = settings
        self.options = options
        self.store: CatalogStore = store if store is not None else SqlCatalogStore()
        self.data_root = Path(data_root if data_root is not None else settings.seed_data_root)
        cache_path = media_cache_path or settings.media_cache_path
        self.media_cache_path = Path(cache_path) if cache_path else None
        self._media = media
        self.state = RunState.INIT
        self.report = RunReport(
            run_id=uuid.uuid4().hex[:12],
            mode=options.mode,
            dry_run=options.dry_run,
        )
        # slug -> title of works a dry run would have inserted
        self._planned_works: dict[str, str] = {}

    def _transition(self, state: RunState) -> None:
        log.info("seed.state", previous=self.state.value, state=state.value)
        self.state = state
        self.report.state = state.value

    def _sources_for(self, entity: str) -> list[str]:
        return list(getattr(self.settings, f"seed_{entity}_sources"))

    def _build_media(self) -> MediaPipeline:
        if self._media is not None:
            return self._media
        cache = MediaCache()
        if self.media_cache_path is not None:
            cache = MediaCache.load(self.media_cache_path)
        enabled = not (self.options.skip_media or self.options.dry_run)
        return MediaPipeline.from_settings(
            self.settings,
            cache,
            enabled=enabled,
            concurrency=self.options.media_concurrency,
        )

    async def run(self) -> RunReport:
        opts = self.options
        structlog.contextvars.bind_contextvars(run_id=self.report.run_id)
        log.info(
            "seed.run.start",
            mode=opts.mode,
            entities=list(opts.entities),
            dry_run=opts.dry_run,
            force=opts.force_overwrite,
            batch_size=opts.batch_size,
            concurrency=opts.concurrency,
        )
        start = time.perf_counter()
        media = self._build_media()
        try:
            self._transition(RunState.CONNECTING)
            await self.store.ping()

            if opts.mode in ("clear", "reset"):
                self._transition(RunState.CLEARING)
                await self._clear()

            if opts.mode in ("seed", "reset"):
                self._transition(RunState.VALIDATING if opts.dry_run else RunState.SEEDING)
                await self._seed(media)

            self._transition(RunState.REPORTING)
            self.report.media = media.cache.stats()
            self.report.metrics = get_counters()
            self._transition(RunState.DONE)
        except FatalConnectionError as exc:
            self.report.error = str(exc)
            self._transition(RunState.FAILED)
            log.error("seed.run.fatal", error=str(exc))
            raise
        finally:
            self.report.duration = time.perf_counter() - start
            if self.media_cache_path is not None and not opts.dry_run and self._media is None:
                media.cache.save(self.media_cache_path)
            if self._media is None:
                await media.aclose()
            log.info("seed.run.summary", **self.report.to_dict())
            structlog.contextvars.unbind_contextvars("run_id", "entity")
        return self.report

    async def _clear(self) -> None:
        if self.options.dry_run:
            log.warning("seed.clear.skipped_dry_run", entities=list(self.options.entities))
            return
        for entity in reversed(self.options.entities):
            try:
                deleted = await self.store.delete_all(entity)
            except SeedError as exc:
                log.error("seed.clear.failed", entity=entity, error=str(exc))
                self.report.error = f"clear {entity}: {exc}"
                continue
            self.report.cleared[entity] = deleted
            log.info("seed.clear.done", entity=entity, deleted=deleted)

    async def _seed(self, media: MediaPipeline) -> None:
        opts = self.options
        resolver = RelationshipResolver(
            self.store,
            dry_run=opts.dry_run,
            case_insensitive=self.settings.seed_resolver_case_insensitive,
        )
        upserter = BatchUpserter(
            self.store,
            batch_size=opts.batch_size,
            concurrency=opts.concurrency,
            dry_run=opts.dry_run,
            force_overwrite=opts.force_overwrite,
        )
        default_password = self.settings.seed_default_user_password
        seeders: dict[str, EntitySeeder] = {
            "users": UserSeeder(
                media,
                default_password=default_password.get_secret_value() if default_password else None,
            ),
            "works": WorkSeeder(resolver, media),
            "episodes": EpisodeSeeder(self.store, media, planned_parents=self._planned_works),
        }
        # Each stage completes all of its batches before the next one starts
        for entity in opts.entities:
            try:
                result = await self._seed_entity(entity, upserter, seeders[entity])
            except FatalConnectionError:
                raise
            except Exception as exc:
                # Record the crashed stage; later stages still run
                kind = getattr(exc, "kind", type(exc).__name__)
                log.exception("seed.stage.crashed", entity=entity, kind=kind)
                self.report.error = f"{entity} stage: {exc}"
                result = SeedResult(entity=entity, dry_run=opts.dry_run)
                result.add_error(entity, kind, str(exc))
                structlog.contextvars.unbind_contextvars("entity")
            self.report.results[entity] = result
        self.report.relationships = resolver.stats()

    async def _seed_entity(
        self, entity: str, upserter: BatchUpserter, seeder: EntitySeeder
    ) -> SeedResult:
        structlog.contextvars.bind_contextvars(entity=entity)
        start = time.perf_counter()
        result = SeedResult(entity=entity, dry_run=self.options.dry_run)
        log.info("seed.stage.start", entity=entity)

        files = discover_sources(self._sources_for(entity), self.data_root)
        loaded = load_source_records(files)
        for path, message in loaded.file_errors:
            result.add_error(Path(path).name, "file", message, path)

        outcome = validate_records(entity, loaded.records)
        for rejected in outcome.rejected:
            result.add_error(rejected.source or "?", rejected.kind, str(rejected), rejected.source)

        if entity == "works" and self.options.dry_run:
            self._planned_works.update((r.model.slug, r.model.title) for r in outcome.valid)

        await upserter.run(seeder, outcome.valid, result)
        result.duration = time.perf_counter() - start
        log.info(
            "seed.stage.done",
            entity=entity,
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped,
            errors=result.errors,
            duration_s=round(result.duration, 3),
        )
        structlog.contextvars.unbind_contextvars("entity")
        return result
