# schemas.py

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timezone
from typing import Any

import structlog
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

log = structlog.get_logger()

USER_ROLES = ("user", "admin", "moderator")
DEFAULT_ROLE = "user"

WORK_STATUSES = ("Ongoing", "Completed", "Hiatus", "Dropped", "Coming Soon")
DEFAULT_STATUS = "Ongoing"

RATING_MIN = 0.0
RATING_MAX = 9.99

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CHAPTER_NO_RE = re.compile(r"chapter\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_ANY_NO_RE = re.compile(r"(\d+(?:\.\d+)?)")

_datetime_adapter = TypeAdapter(datetime)
_date_adapter = TypeAdapter(date)


def slugify(text: str) -> str:
    s = text.lower().strip()
    s = re.sub(r"[^\w\s-]", "", s)
    s = re.sub(r"[\s_-]+", "-", s)
    return s.strip("-")


def format_number(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def _source(info: ValidationInfo) -> str | None:
    ctx = info.context or {}
    return ctx.get("source")


def _name_of(value: Any) -> Any:
    """Accept ``"Name"`` or ``{"name": "Name"}``."""
    if isinstance(value, dict):
        return value.get("name")
    return value


def _lenient_datetime(value: Any, info: ValidationInfo) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        try:
            parsed = datetime.combine(_date_adapter.validate_python(value), time.min)
        except ValidationError:
            log.warning(
                "seed.coerce.date_dropped",
                field=info.field_name,
                value=str(value)[:64],
                source=_source(info),
            )
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class UserSeed(BaseModel):
    email: str
    name: str | None = None
    role: str = DEFAULT_ROLE
    image: str | None = None
    email_verified: datetime | None = None
    password: SecretStr | None = None
    created_at: datetime | None = None

    model_config = dict(extra="ignore")

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> str:
        if not isinstance(v, str):
            raise ValueError("email must be a string")
        email = v.strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValueError(f"invalid email address: {v!r}")
        return email

    @field_validator("role", mode="before")
    @classmethod
    def coerce_role(cls, v: Any, info: ValidationInfo) -> str:
        if v is None or v == "":
            return DEFAULT_ROLE
        role = str(v).strip().lower()
        if role not in USER_ROLES:
            log.warning("seed.coerce.role_default", value=str(v), source=_source(info))
            return DEFAULT_ROLE
        return role

    @field_validator("email_verified", "created_at", mode="before")
    @classmethod
    def parse_dates(cls, v: Any, info: ValidationInfo) -> datetime | None:
        return _lenient_datetime(v, info)

    @model_validator(mode="after")
    def default_name(self) -> UserSeed:
        if not self.name or not self.name.strip():
            self.name = self.email.split("@", 1)[0]
        else:
            self.name = self.name.strip()
        return self

    @property
    def natural_key(self) -> tuple[str]:
        return (self.email,)


class WorkSeed(BaseModel):
    title: str = Field(min_length=1)
    slug: str | None = None
    description: str = ""
    cover_image: str | None = None
    status: str = DEFAULT_STATUS
    rating: float | None = None
    serialization: str | None = None
    publication_date: datetime | None = None
    author: str | None = None
    artist: str | None = None
    type: str | None = None
    genres: list[str] = Field(default_factory=list)

    model_config = dict(extra="ignore")

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("cover_image", mode="before")
    @classmethod
    def cover_from_object(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return v.get("url")
        return v

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any, info: ValidationInfo) -> str:
        if v is None or v == "":
            return DEFAULT_STATUS
        raw = str(v).strip()
        for known in WORK_STATUSES:
            if raw.lower() == known.lower():
                return known
        lowered = raw.lower()
        if "complet" in lowered:
            return "Completed"
        if "hiatus" in lowered:
            return "Hiatus"
        if "drop" in lowered:
            return "Dropped"
        if "coming" in lowered or "soon" in lowered:
            return "Coming Soon"
        if "ongoing" not in lowered:
            log.warning("seed.coerce.status_default", value=raw, source=_source(info))
        return DEFAULT_STATUS

    @field_validator("rating", mode="before")
    @classmethod
    def clamp_rating(cls, v: Any, info: ValidationInfo) -> float | None:
        if v is None or v == "":
            return None
        try:
            rating = float(v)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"rating is not a number: {v!r}") from exc
        if rating != rating:  # NaN
            raise ValueError("rating is not a number: NaN")
        if rating > RATING_MAX or rating < RATING_MIN:
            clamped = min(max(rating, RATING_MIN), RATING_MAX)
            log.warning(
                "seed.coerce.rating_clamped", value=rating, clamped=clamped, source=_source(info)
            )
            return clamped
        return rating

    @field_validator("publication_date", mode="before")
    @classmethod
    def parse_publication(cls, v: Any, info: ValidationInfo) -> datetime | None:
        return _lenient_datetime(v, info)

    @field_validator("author", "artist", "type", mode="before")
    @classmethod
    def name_or_object(cls, v: Any) -> Any:
        v = _name_of(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("genres", mode="before")
    @classmethod
    def flatten_genres(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, (str, dict)):
            v = [v]
        if not isinstance(v, list):
            raise ValueError("genres must be a list")
        names: list[str] = []
        for item in v:
            name = _name_of(item)
            if isinstance(name, str) and name.strip() and name.strip() not in names:
                names.append(name.strip())
        return names

    @model_validator(mode="after")
    def default_slug(self) -> WorkSeed:
        slug = (self.slug or "").strip()
        self.slug = slug or slugify(self.title)
        if not self.slug:
            raise ValueError(f"cannot derive a slug from title {self.title!r}")
        return self

    @property
    def natural_key(self) -> tuple[str]:
        return (self.slug or "",)


class EpisodeSeed(BaseModel):
    parent_slug: str | None = None
    parent_title: str | None = None
    name: str | None = None
    title: str | None = None
    slug: str | None = None
    number: float | None = None
    release_date: datetime | None = None
    views: int = 0
    images: list[str] = Field(default_factory=list)

    model_config = dict(extra="ignore")

    @field_validator("parent_slug", "parent_title", "slug", "name", "title", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("number", mode="before")
    @classmethod
    def parse_number(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            v = float(v)
        if isinstance(v, float) and not math.isfinite(v):
            raise ValueError(f"episode number is not finite: {v!r}")
        return v

    @field_validator("views", mode="before")
    @classmethod
    def clamp_views(cls, v: Any, info: ValidationInfo) -> int:
        if v is None or v == "":
            return 0
        try:
            raw = float(v)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"views is not a number: {v!r}") from exc
        if not math.isfinite(raw):
            raise ValueError(f"views is not a finite number: {v!r}")
        views = int(raw)
        if views < 0:
            log.warning("seed.coerce.views_clamped", value=views, source=_source(info))
            return 0
        return views

    @field_validator("release_date", mode="before")
    @classmethod
    def parse_release(cls, v: Any, info: ValidationInfo) -> datetime | None:
        return _lenient_datetime(v, info)

    @field_validator("images", mode="before")
    @classmethod
    def flatten_images(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if not isinstance(v, list):
            v = [v]
        urls: list[str] = []
        for img in v:
            if isinstance(img, dict):
                img = img.get("url")
            if isinstance(img, str) and img.strip():
                urls.append(img.strip())
        return urls

    @model_validator(mode="after")
    def derive_fields(self, info: ValidationInfo) -> EpisodeSeed:
        if self.number is None:
            self.number = self._number_from_name()
        if self.number is None:
            if not self.slug:
                raise ValueError("episode number missing and not derivable from name")
            self.number = 0.0
        if self.number < 0:
            log.warning("seed.coerce.number_clamped", value=self.number, source=_source(info))
            self.number = 0.0
        if not self.title:
            self.title = self.name or f"Chapter {format_number(self.number)}"
        if not self.slug and self.parent_slug:
            self.slug = f"{self.parent_slug}-chapter-{format_number(self.number)}"
        return self

    def _number_from_name(self) -> float | None:
        for text in (self.name, self.title):
            if not text:
                continue
            m = _CHAPTER_NO_RE.search(text) or _ANY_NO_RE.search(text)
            if m:
                return float(m.group(1))
        return None
