"""Entity glue between validated records, the resolver, media and the store.

Each seeder turns a canonical record into its natural key and the column
values plus association links the store writes. Stages run in dependency
order, so an episode's parent work is looked up, never created here.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Any

import structlog

from Inkport.errors import ParentNotFound
from Inkport.media import MediaPipeline
from Inkport.normalizer import ValidatedRecord
from Inkport.resolver import RelationshipResolver
from Inkport.schemas import EpisodeSeed, UserSeed, WorkSeed, format_number
from Inkport.store import CatalogStore, NaturalKey

log = structlog.get_logger()

PBKDF2_ITERATIONS = 260_000

@dataclass(frozen=True)
class PlannedParent:
    """Stands in for the id of a work a dry run would have inserted."""

    slug: str


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    b64 = base64.b64encode
    return f"pbkdf2_sha256${iterations}${b64(salt).decode()}${b64(digest).decode()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algo, iterations, salt, digest = encoded.split("$", 3)
    except ValueError:
        return False
    if algo != "pbkdf2_sha256":
        return False
    calc = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), base64.b64decode(salt), int(iterations)
    )
    return secrets.compare_digest(calc, base64.b64decode(digest))


class UserSeeder:
    entity = "users"

    def __init__(self, media: MediaPipeline, *, default_password: str | None = None) -> None:
        self.media = media
        self.default_password = default_password

    def label(self, record: ValidatedRecord) -> str:
        return record.model.email

    async def locate(self, record: ValidatedRecord) -> NaturalKey:
        return record.model.natural_key

    async def prepare(
        self, record: ValidatedRecord, key: NaturalKey
    ) -> tuple[dict[str, Any], list[Any] | None]:
        u: UserSeed = record.model
        values: dict[str, Any] = {
            "email": u.email,
            "name": u.name,
            "role": u.role,
            "image": await self.media.relocate(u.image, "avatars"),
            "email_verified": u.email_verified,
        }
        password = u.password.get_secret_value() if u.password else self.default_password
        if password:
            values["password_hash"] = hash_password(password)
        if u.created_at is not None:
            values["created_at"] = u.created_at
        return values, None


class WorkSeeder:
    entity = "works"

    def __init__(self, resolver: RelationshipResolver, media: MediaPipeline) -> None:
        self.resolver = resolver
        self.media = media

    def label(self, record: ValidatedRecord) -> str:
        return record.model.slug

    async def locate(self, record: ValidatedRecord) -> NaturalKey:
        return record.model.natural_key

    async def prepare(
        self, record: ValidatedRecord, key: NaturalKey
    ) -> tuple[dict[str, Any], list[Any] | None]:
        w: WorkSeed = record.model
        author_id = await self.resolver.get_or_create("author", w.author)
        artist_id = await self.resolver.get_or_create("artist", w.artist)
        type_id = await self.resolver.get_or_create("type", w.type)
        genre_ids = await self.resolver.get_or_create_many("genre", w.genres)
        cover = await self.media.relocate(w.cover_image, "covers")
        values: dict[str, Any] = {
            "title": w.title,
            "slug": w.slug,
            "description": w.description,
            "cover_image": cover or "",
            "status": w.status,
            "rating": w.rating,
            "serialization": w.serialization,
            "publication_date": w.publication_date,
            "author_id": author_id,
            "artist_id": artist_id,
            "type_id": type_id,
        }
        return values, genre_ids


class EpisodeSeeder:
    """Episodes find their parent work by slug, or by title when no slug is given.

    ``planned_parents`` maps slug to title for works a dry run would have
    inserted. It is filled by the works stage after this seeder is built, so
    the same mapping object must be shared.
    """

    entity = "episodes"

    def __init__(
        self,
        store: CatalogStore,
        media: MediaPipeline,
        *,
        planned_parents: dict[str, str] | None = None,
    ) -> None:
        self.store = store
        self.media = media
        self.planned_parents = planned_parents if planned_parents is not None else {}
        self._parents: dict[str, int | None] = {}
        self._titles: dict[str, str | None] = {}

    def label(self, record: ValidatedRecord) -> str:
        e: EpisodeSeed = record.model
        parent = e.parent_slug or e.parent_title or "?"
        return f"{parent}/{e.slug or format_number(e.number or 0)}"

    async def _parent_id(self, slug: str) -> int | None:
        if slug not in self._parents:
            self._parents[slug] = await self.store.find_by_natural_key("works", (slug,))
        return self._parents[slug]

    async def _slug_for_title(self, title: str) -> str | None:
        if title not in self._titles:
            found = await self.store.find_work_by_title(title)
            if found is not None:
                work_id, slug = found
                self._parents.setdefault(slug, work_id)
                self._titles[title] = slug
            else:
                planned = [s for s, t in self.planned_parents.items() if t == title]
                self._titles[title] = planned[0] if planned else None
        return self._titles[title]

    async def locate(self, record: ValidatedRecord) -> NaturalKey:
        e: EpisodeSeed = record.model
        if not e.parent_slug and e.parent_title:
            e.parent_slug = await self._slug_for_title(e.parent_title)
            if e.parent_slug is None:
                raise ParentNotFound("parent not found", parent_key=e.parent_title)
        if not e.parent_slug:
            raise ParentNotFound("missing parent slug")
        if not e.slug:
            e.slug = f"{e.parent_slug}-chapter-{format_number(e.number or 0)}"
        work_id = await self._parent_id(e.parent_slug)
        if work_id is None:
            if e.parent_slug in self.planned_parents:
                return (PlannedParent(e.parent_slug), e.slug)
            raise ParentNotFound("parent not found", parent_key=e.parent_slug)
        return (work_id, e.slug)

    async def prepare(
        self, record: ValidatedRecord, key: NaturalKey
    ) -> tuple[dict[str, Any], list[Any] | None]:
        e: EpisodeSeed = record.model
        pages = await self.media.relocate_many(e.images, f"episodes/{e.parent_slug}")
        values: dict[str, Any] = {
            "work_id": None if isinstance(key[0], PlannedParent) else key[0],
            "number": e.number,
            "title": e.title,
            "slug": e.slug,
            "release_date": e.release_date,
            "views": e.views,
        }
        return values, pages
