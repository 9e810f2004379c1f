import httpx
import pytest
from sqlalchemy import func, select

from conftest import MemoryCatalogStore
from Inkport import models
from Inkport.config import SeedOptions, Settings
from Inkport.db import session_scope
from Inkport.errors import FatalConnectionError
from Inkport.media import MediaCache, MediaPipeline
from Inkport.orchestrator import RunState, SeedOrchestrator
from Inkport.seeders import verify_password
from Inkport.storage import LocalMediaStorage

PNG = b"\x89PNG\r\n\x1a\n" + b"page" * 16

USERS = [
    {"email": "Admin@Example.com", "name": "Admin", "role": "admin", "password": "s3cret"},
    {"email": "reader@example.com"},
]
WORKS = [
    {
        "title": "Solo Leveling",
        "slug": "solo-leveling",
        "author": "_",
        "artist": {"name": "DUBU"},
        "type": "Manhwa",
        "genres": ["Action", "Fantasy"],
        "rating": 9.5,
        "status": "Completed",
    },
    {"title": "Tower of God", "author": "_", "genres": [{"name": "Action"}]},
]
CHAPTERS = [
    {"chaptername": "Chapter 1", "comicslug": "solo-leveling", "image_urls": []},
    {"chaptername": "Chapter 2", "comic": {"slug": "solo-leveling"}},
    {"chaptername": "Chapter 1", "comicSlug": "tower-of-god"},
]


def _settings(tmp_path, **kw) -> Settings:
    return Settings(seed_data_root=str(tmp_path), media_local_root=str(tmp_path / "uploads"), **kw)


def _orchestrator(tmp_path, store=None, **opts) -> SeedOrchestrator:
    opts.setdefault("skip_media", True)
    return SeedOrchestrator(_settings(tmp_path), SeedOptions(**opts), store=store)


async def _count(model) -> int:
    async with session_scope() as s:
        return int((await s.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.fixture
def dataset(write_json):
    write_json("users.json", USERS)
    write_json("comics.json", WORKS)
    write_json("chapters.json", CHAPTERS)


@pytest.mark.asyncio
async def test_full_seed_in_dependency_order(tmp_path, dataset):
    report = await _orchestrator(tmp_path).run()

    assert report.state == RunState.DONE.value
    assert list(report.results) == ["users", "works", "episodes"]
    assert report.results["users"].inserted == 2
    assert report.results["works"].inserted == 2
    assert report.results["episodes"].inserted == 3
    assert report.totals["errors"] == 0
    assert await _count(models.Episode) == 3

    async with session_scope() as s:
        admin = (
            await s.execute(select(models.User).where(models.User.email == "admin@example.com"))
        ).scalar_one()
        assert admin.role == "admin"
        assert admin.password_hash.startswith("pbkdf2_sha256$")
    assert verify_password("s3cret", admin.password_hash)
    assert not verify_password("wrong", admin.password_hash)


@pytest.mark.asyncio
async def test_placeholder_contributor_resolves_to_one_row(tmp_path, dataset):
    await _orchestrator(tmp_path, entities=("works",)).run()

    async with session_scope() as s:
        names = [r[0] for r in (await s.execute(select(models.Author.name))).all()]
        works = list((await s.execute(select(models.Work))).scalars())
    assert names == ["Unknown Author"]
    assert works[0].author_id == works[1].author_id
    assert await _count(models.Genre) == 2


@pytest.mark.asyncio
async def test_episode_with_missing_parent_is_skipped(tmp_path, write_json):
    write_json("chapters.json", [{"parentSlug": "missing-work", "number": 1}])

    report = await _orchestrator(tmp_path, entities=("episodes",)).run()

    result = report.results["episodes"]
    assert result.skipped == 1
    assert result.skipped_records[0].reason == "parent not found"
    assert result.errors == 0
    assert await _count(models.Episode) == 0


@pytest.mark.asyncio
async def test_rerun_is_idempotent(tmp_path, dataset):
    await _orchestrator(tmp_path).run()
    report = await _orchestrator(tmp_path).run()

    assert report.totals["inserted"] == 0
    assert report.totals["skipped"] == 7
    assert await _count(models.Work) == 2
    assert await _count(models.Episode) == 3


@pytest.mark.asyncio
async def test_malformed_record_counted_and_rest_seeded(tmp_path, write_json):
    works = [{"title": f"Work {i}"} for i in range(99)]
    works.insert(50, {"title": "Bad", "rating": "not-a-number"})
    write_json("comics.json", works)
    (tmp_path / "comicsdata-broken.json").write_text("{oops", encoding="utf-8")

    report = await _orchestrator(tmp_path, entities=("works",)).run()

    result = report.results["works"]
    assert result.inserted == 99
    # One malformed record plus one unreadable file
    assert result.errors == 2
    assert {f.kind for f in result.failed_records} == {"validation", "file"}
    assert report.state == RunState.DONE.value


@pytest.mark.asyncio
async def test_clear_runs_in_reverse_dependency_order(tmp_path):
    store = MemoryCatalogStore()
    store.rows["users"][1] = {"email": "a@example.com"}

    report = await _orchestrator(tmp_path, store=store, mode="clear").run()

    deletes = [c for c in store.calls if c.startswith("delete:")]
    assert deletes == ["delete:episodes", "delete:works", "delete:users"]
    assert report.cleared["users"] == 1
    assert report.results == {}


@pytest.mark.asyncio
async def test_reset_clears_then_reseeds(tmp_path, dataset):
    await _orchestrator(tmp_path).run()

    report = await _orchestrator(tmp_path, mode="reset").run()

    assert report.cleared == {"episodes": 3, "works": 2, "users": 2}
    assert report.totals["inserted"] == 7
    assert await _count(models.Episode) == 3


@pytest.mark.asyncio
async def test_unreachable_store_fails_run(tmp_path, dataset):
    orch = _orchestrator(tmp_path, store=MemoryCatalogStore(reachable=False))

    with pytest.raises(FatalConnectionError):
        await orch.run()

    assert orch.report.state == RunState.FAILED.value
    assert orch.report.results == {}
    assert "connection refused" in orch.report.error


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(tmp_path, dataset):
    report = await _orchestrator(tmp_path, dry_run=True).run()

    assert report.state == RunState.DONE.value
    assert report.dry_run is True
    # Episodes of works the dry run would insert count as inserts too
    assert report.results["episodes"].inserted == 3
    assert report.totals["inserted"] == 7
    for model in (models.User, models.Work, models.Episode, models.Author):
        assert await _count(model) == 0


@pytest.mark.asyncio
async def test_episode_pages_relocated_in_order(tmp_path, write_json):
    write_json("comics.json", [{"title": "W"}])
    write_json(
        "chapters.json",
        [
            {
                "comicslug": "w",
                "number": 1,
                "images": [{"url": "https://cdn.example.com/1.png"}, {"url": "/local/2.png"}],
            }
        ],
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PNG)

    media = MediaPipeline(
        LocalMediaStorage(tmp_path / "uploads"),
        MediaCache(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    orch = SeedOrchestrator(
        _settings(tmp_path), SeedOptions(entities=("works", "episodes")), store=None, media=media
    )
    report = await orch.run()

    async with session_scope() as s:
        q = await s.execute(
            select(models.EpisodeImage.url).order_by(models.EpisodeImage.page_number)
        )
        urls = [r[0] for r in q.all()]
    assert urls[0].startswith("/uploads/episodes/w/") and urls[0].endswith(".png")
    assert urls[1] == "/local/2.png"
    assert report.media["hash_cache_size"] == 1
    await media.aclose()


@pytest.mark.asyncio
async def test_report_renders_text_and_json(tmp_path, dataset):
    report = await _orchestrator(tmp_path, entities=("users",)).run()

    text = report.render_text()
    assert "users" in text and "Inserted" in text
    payload = report.to_dict()
    assert payload["results"]["users"]["inserted"] == 2
    assert report.to_json().startswith(b"{")


@pytest.mark.asyncio
async def test_dry_run_counts_match_real_run_for_shared_episode_slugs(tmp_path, write_json):
    write_json("comics.json", [{"title": "A"}, {"title": "B"}])
    write_json(
        "chapters.json",
        [
            {"comicslug": "a", "chapterslug": "chapter-1", "number": 1},
            {"comicslug": "b", "chapterslug": "chapter-1", "number": 1},
        ],
    )

    planned = await _orchestrator(tmp_path, entities=("works", "episodes"), dry_run=True).run()
    actual = await _orchestrator(tmp_path, entities=("works", "episodes")).run()

    for report in (planned, actual):
        episodes = report.results["episodes"]
        assert (episodes.inserted, episodes.skipped, episodes.errors) == (2, 0, 0)
    assert await _count(models.Episode) == 2


@pytest.mark.asyncio
async def test_episodes_find_parent_by_title(tmp_path, write_json):
    write_json("comics.json", [{"title": "Omniscient Reader", "slug": "orv"}])
    write_json(
        "chapters.json",
        [
            {"comictitle": "Omniscient Reader", "chaptername": "Chapter 3"},
            {"comic": {"title": "Omniscient Reader"}, "chapterNumber": 4},
            {"comictitle": "Nobody Wrote This", "chapterNumber": 1},
        ],
    )

    report = await _orchestrator(tmp_path, entities=("works", "episodes")).run()

    episodes = report.results["episodes"]
    assert episodes.inserted == 2
    assert episodes.skipped == 1
    assert episodes.skipped_records[0].reason == "parent not found"
    async with session_scope() as s:
        slugs = [r[0] for r in (await s.execute(select(models.Episode.slug))).all()]
    assert sorted(slugs) == ["orv-chapter-3", "orv-chapter-4"]


@pytest.mark.asyncio
async def test_dry_run_finds_planned_parent_by_title(tmp_path, write_json):
    write_json("comics.json", [{"title": "Omniscient Reader"}])
    write_json("chapters.json", [{"comictitle": "Omniscient Reader", "chapterNumber": 1}])

    report = await _orchestrator(tmp_path, entities=("works", "episodes"), dry_run=True).run()

    assert report.results["episodes"].inserted == 1
    assert await _count(models.Episode) == 0


@pytest.mark.asyncio
async def test_infinite_views_rejected_and_run_completes(tmp_path, write_json):
    write_json("comics.json", [{"title": "W"}])
    # orjson cannot emit 1e400; the stdlib parser reads it as infinity
    (tmp_path / "chapters.json").write_text(
        '[{"comicslug": "w", "number": 1, "views": 1e400}, {"comicslug": "w", "number": 2}]',
        encoding="utf-8",
    )

    report = await _orchestrator(tmp_path, entities=("works", "episodes")).run()

    assert report.state == RunState.DONE.value
    episodes = report.results["episodes"]
    assert episodes.inserted == 1
    assert episodes.errors == 1
    assert episodes.failed_records[0].kind == "validation"


@pytest.mark.asyncio
async def test_crashed_stage_is_recorded_and_later_stages_run(tmp_path, dataset, monkeypatch):
    from Inkport import orchestrator as orchestrator_mod

    real_validate = orchestrator_mod.validate_records

    def _validate(entity, records):
        if entity == "users":
            raise RuntimeError("validator bug")
        return real_validate(entity, records)

    monkeypatch.setattr(orchestrator_mod, "validate_records", _validate)

    report = await _orchestrator(tmp_path).run()

    assert report.state == RunState.DONE.value
    assert "validator bug" in report.error
    assert report.results["users"].errors == 1
    assert report.results["users"].failed_records[0].kind == "RuntimeError"
    assert report.results["works"].inserted == 2
    assert report.results["episodes"].inserted == 3
