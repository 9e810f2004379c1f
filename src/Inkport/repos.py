# repos.py

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from Inkport import models


async def _flush_retry(s: AsyncSession, attempts: int = 5, delay: float = 0.2) -> None:
    """Retry session.flush() on transient SQLite 'database is locked' errors.

    Exponential backoff: delay * 2^i between attempts.
    """
    for i in range(attempts):
        try:
            await s.flush()
            return
        except OperationalError as e:  # pragma: no cover - timing dependent
            msg = str(e).lower()
            if "database is locked" in msg or "database is busy" in msg:
                if i == attempts - 1:
                    raise
                await asyncio.sleep(delay * (2**i))
                continue
            raise


async def get_user_by_email(s: AsyncSession, email: str) -> models.User | None:
    q = await s.execute(select(models.User).where(models.User.email == email))
    return q.scalar_one_or_none()


async def get_work_by_slug(s: AsyncSession, slug: str) -> models.Work | None:
    q = await s.execute(select(models.Work).where(models.Work.slug == slug))
    return q.scalar_one_or_none()


async def get_work_by_title(s: AsyncSession, title: str) -> models.Work | None:
    q = await s.execute(
        select(models.Work).where(models.Work.title == title).order_by(models.Work.id).limit(1)
    )
    return q.scalar_one_or_none()


async def get_episode(s: AsyncSession, work_id: int, slug: str) -> models.Episode | None:
    q = await s.execute(
        select(models.Episode).where(
            models.Episode.work_id == work_id,
            models.Episode.slug == slug,
        )
    )
    return q.scalar_one_or_none()


async def find_named_id(
    s: AsyncSession, kind: str, name: str, *, case_insensitive: bool = False
) -> int | None:
    model = models.NAMED_MODELS[kind]
    col = model.name  # type: ignore[attr-defined]
    cond = func.lower(col) == name.lower() if case_insensitive else col == name
    q = await s.execute(select(model.id).where(cond).order_by(model.id).limit(1))  # type: ignore[attr-defined]
    return q.scalar_one_or_none()


async def create_named(s: AsyncSession, kind: str, name: str) -> int:
    model = models.NAMED_MODELS[kind]
    obj = model(name=name)
    s.add(obj)
    await _flush_retry(s)
    return obj.id  # type: ignore[attr-defined]


async def add_row(s: AsyncSession, model: type[models.Base], values: dict[str, Any]) -> Any:
    obj = model(**values)
    s.add(obj)
    await _flush_retry(s)
    return obj


async def update_row(s: AsyncSession, obj: Any, values: dict[str, Any]) -> Any:
    for k, v in values.items():
        setattr(obj, k, v)
    if hasattr(obj, "updated_at"):
        obj.updated_at = datetime.now(timezone.utc)
    await _flush_retry(s)
    return obj


async def replace_work_genres(s: AsyncSession, work_id: int, genre_ids: Sequence[int]) -> None:
    await s.execute(delete(models.work_genres).where(models.work_genres.c.work_id == work_id))
    unique_ids = list(dict.fromkeys(genre_ids))
    if unique_ids:
        await s.execute(
            insert(models.work_genres),
            [{"work_id": work_id, "genre_id": gid} for gid in unique_ids],
        )


async def list_work_genre_ids(s: AsyncSession, work_id: int) -> list[int]:
    q = await s.execute(
        select(models.work_genres.c.genre_id)
        .where(models.work_genres.c.work_id == work_id)
        .order_by(models.work_genres.c.genre_id)
    )
    return [row[0] for row in q.all()]


async def replace_episode_images(s: AsyncSession, episode_id: int, urls: Sequence[str]) -> None:
    await s.execute(
        delete(models.EpisodeImage).where(models.EpisodeImage.episode_id == episode_id)
    )
    for page, url in enumerate(urls, start=1):
        s.add(models.EpisodeImage(episode_id=episode_id, page_number=page, url=url))
    await _flush_retry(s)


async def list_episode_image_urls(s: AsyncSession, episode_id: int) -> list[str]:
    q = await s.execute(
        select(models.EpisodeImage.url)
        .where(models.EpisodeImage.episode_id == episode_id)
        .order_by(models.EpisodeImage.page_number)
    )
    return [row[0] for row in q.all()]


async def delete_episodes(s: AsyncSession) -> int:
    await s.execute(delete(models.EpisodeImage))
    res = await s.execute(delete(models.Episode))
    return res.rowcount or 0


async def delete_works(s: AsyncSession) -> int:
    # Dependent rows first; SQLite does not enforce ON DELETE CASCADE unless asked to
    await delete_episodes(s)
    await s.execute(delete(models.work_genres))
    res = await s.execute(delete(models.Work))
    return res.rowcount or 0


async def delete_users(s: AsyncSession) -> int:
    res = await s.execute(delete(models.User))
    return res.rowcount or 0


async def count_rows(s: AsyncSession, model: type[models.Base]) -> int:
    q = await s.execute(select(func.count()).select_from(model))
    return int(q.scalar_one())
