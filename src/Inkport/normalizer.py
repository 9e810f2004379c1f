"""Map raw source records onto the canonical seed models.

Historical data files spell the same concept several ways. Each entity has an
ordered table of ``FieldRule(source, target)`` entries; the first non-empty
source fills the canonical field and a value already present under the
canonical name is never overwritten. The result is then validated by the
pydantic models in ``Inkport.schemas``, which apply the bounded coercions.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from Inkport.discovery import SourceRecord
from Inkport.errors import RecordValidationError
from Inkport.metrics import inc_counter
from Inkport.schemas import EpisodeSeed, UserSeed, WorkSeed

log = structlog.get_logger()


@dataclass(frozen=True)
class FieldRule:
    source: str  # dotted path, integer segments index into lists
    target: str


USER_RULES: tuple[FieldRule, ...] = (
    FieldRule("emailAddress", "email"),
    FieldRule("mail", "email"),
    FieldRule("username", "name"),
    FieldRule("displayName", "name"),
    FieldRule("display_name", "name"),
    FieldRule("avatar", "image"),
    FieldRule("avatarUrl", "image"),
    FieldRule("image_url", "image"),
    FieldRule("emailVerified", "email_verified"),
    FieldRule("email_verified_at", "email_verified"),
    FieldRule("createdAt", "created_at"),
)

WORK_RULES: tuple[FieldRule, ...] = (
    FieldRule("name", "title"),
    FieldRule("comicTitle", "title"),
    FieldRule("comictitle", "title"),
    FieldRule("comicSlug", "slug"),
    FieldRule("comicslug", "slug"),
    FieldRule("coverImage", "cover_image"),
    FieldRule("cover", "cover_image"),
    FieldRule("thumbnail", "cover_image"),
    FieldRule("images.0", "cover_image"),
    FieldRule("image_urls.0", "cover_image"),
    FieldRule("summary", "description"),
    FieldRule("synopsis", "description"),
    FieldRule("publicationDate", "publication_date"),
    FieldRule("releaseDate", "publication_date"),
    FieldRule("release_date", "publication_date"),
    FieldRule("updatedAt", "publication_date"),
    FieldRule("updated_at", "publication_date"),
    FieldRule("authorName", "author"),
    FieldRule("artistName", "artist"),
    FieldRule("comicType", "type"),
    FieldRule("category", "type"),
    FieldRule("tags", "genres"),
)

EPISODE_RULES: tuple[FieldRule, ...] = (
    FieldRule("comicslug", "parent_slug"),
    FieldRule("comicSlug", "parent_slug"),
    FieldRule("comic.slug", "parent_slug"),
    FieldRule("parentSlug", "parent_slug"),
    FieldRule("workSlug", "parent_slug"),
    FieldRule("comictitle", "parent_title"),
    FieldRule("comic.title", "parent_title"),
    FieldRule("chaptername", "name"),
    FieldRule("chapterName", "name"),
    FieldRule("chaptertitle", "title"),
    FieldRule("chapterTitle", "title"),
    FieldRule("chapterslug", "slug"),
    FieldRule("chapterSlug", "slug"),
    FieldRule("chapterNumber", "number"),
    FieldRule("chapter_number", "number"),
    FieldRule("chapterNo", "number"),
    FieldRule("releaseDate", "release_date"),
    FieldRule("publishedAt", "release_date"),
    FieldRule("updatedAt", "release_date"),
    FieldRule("updated_at", "release_date"),
    FieldRule("viewCount", "views"),
    FieldRule("image_urls", "images"),
    FieldRule("pages", "images"),
)

ENTITY_SCHEMAS: dict[str, tuple[type[BaseModel], tuple[FieldRule, ...]]] = {
    "users": (UserSeed, USER_RULES),
    "works": (WorkSeed, WORK_RULES),
    "episodes": (EpisodeSeed, EPISODE_RULES),
}

_MISSING = object()


def _lookup(data: Any, path: str) -> Any:
    cur = data
    for part in path.split("."):
        if isinstance(cur, dict):
            cur = cur.get(part, _MISSING)
        elif isinstance(cur, list) and part.isdigit():
            idx = int(part)
            cur = cur[idx] if idx < len(cur) else _MISSING
        else:
            return _MISSING
        if cur is _MISSING:
            return _MISSING
    return cur


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def apply_field_rules(raw: dict[str, Any], rules: Sequence[FieldRule]) -> dict[str, Any]:
    """Return a copy of ``raw`` with canonical fields filled from legacy ones."""
    out = dict(raw)
    for rule in rules:
        if not _is_empty(out.get(rule.target)):
            continue
        value = _lookup(raw, rule.source)
        if not _is_empty(value):
            out[rule.target] = value
    return out


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "record"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


@dataclass(frozen=True)
class ValidatedRecord:
    model: Any  # UserSeed | WorkSeed | EpisodeSeed
    source: str


@dataclass
class ValidationOutcome:
    valid: list[ValidatedRecord] = field(default_factory=list)
    rejected: list[RecordValidationError] = field(default_factory=list)


def normalize_record(entity: str, record: SourceRecord) -> ValidatedRecord:
    """Canonicalize one record or raise ``RecordValidationError``."""
    model_cls, rules = ENTITY_SCHEMAS[entity]
    if not isinstance(record.data, dict):
        raise RecordValidationError(
            f"expected a JSON object, got {type(record.data).__name__}", source=record.source
        )
    mapped = apply_field_rules(record.data, rules)
    try:
        model = model_cls.model_validate(mapped, context={"source": record.source})
    except ValidationError as exc:
        raise RecordValidationError(_summarize(exc), source=record.source) from exc
    return ValidatedRecord(model=model, source=record.source)


def validate_records(entity: str, records: Sequence[SourceRecord]) -> ValidationOutcome:
    """Validate each record independently; a bad record never stops the rest."""
    outcome = ValidationOutcome()
    for record in records:
        try:
            outcome.valid.append(normalize_record(entity, record))
        except RecordValidationError as exc:
            inc_counter("seed.validation.rejected")
            log.warning(
                "seed.validation.rejected", entity=entity, source=exc.source, error=str(exc)
            )
            outcome.rejected.append(exc)
    log.info(
        "seed.validation.done",
        entity=entity,
        valid=len(outcome.valid),
        rejected=len(outcome.rejected),
    )
    return outcome
