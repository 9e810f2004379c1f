"""Settings loader for Inkport."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import tomllib
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USERS_SOURCES = ["users.json", "data/users*.json", "seed-data/users*.json"]
DEFAULT_WORKS_SOURCES = [
    "comics*.json",
    "comicsdata*.json",
    "data/comics*.json",
    "seed-data/comics*.json",
]
DEFAULT_EPISODES_SOURCES = [
    "chapters*.json",
    "chaptersdata*.json",
    "data/chapters*.json",
    "seed-data/chapters*.json",
]


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)

    seed_cfg = t.get("seed", {}) or {}
    media_cfg = t.get("media", {}) or {}
    log_cfg = t.get("logging", {}) or {}

    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "logging_level": log_cfg.get("level", "INFO"),
        "logging_file_path": log_cfg.get("file_path", "logs/inkport.jsonl"),
        "logging_max_bytes": log_cfg.get("max_bytes", 5_000_000),
        "logging_backup_count": log_cfg.get("backup_count", 5),
    }

    db_url = (t.get("database", {}) or {}).get("url")
    if db_url:
        out["database_url"] = db_url

    # [seed] keys map 1:1 onto seed_* fields
    for key in (
        "data_root",
        "batch_size",
        "concurrency",
        "users_sources",
        "works_sources",
        "episodes_sources",
        "resolver_case_insensitive",
    ):
        if key in seed_cfg and seed_cfg[key] is not None:
            out[f"seed_{key}"] = seed_cfg[key]
    if seed_cfg.get("default_user_password"):
        out["seed_default_user_password"] = seed_cfg["default_user_password"]

    for key in (
        "enabled",
        "backend",
        "concurrency",
        "timeout_seconds",
        "retry_attempts",
        "retry_backoff_seconds",
        "local_root",
        "public_base_url",
        "upload_url",
        "max_bytes",
        "cache_path",
    ):
        if key in media_cfg and media_cfg[key] is not None:
            out[f"media_{key}"] = media_cfg[key]

    # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
    # Backward-compatible: if console/to_file are bools, map True->level, False->NONE
    overall = out["logging_level"]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    out["logging_console"] = _norm_level(log_cfg.get("console"), overall)
    out["logging_file"] = _norm_level(log_cfg.get("to_file"), "NONE")
    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./inkport.sqlite3")

    # --- Seeding ---
    seed_data_root: str = "."
    seed_batch_size: int = Field(default=100, ge=1)
    seed_concurrency: int = Field(default=4, ge=1)
    seed_users_sources: list[str] = Field(default_factory=lambda: list(DEFAULT_USERS_SOURCES))
    seed_works_sources: list[str] = Field(default_factory=lambda: list(DEFAULT_WORKS_SOURCES))
    seed_episodes_sources: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EPISODES_SOURCES)
    )
    seed_default_user_password: SecretStr | None = None
    seed_resolver_case_insensitive: bool = False

    # --- Media ---
    media_enabled: bool = True
    media_backend: Literal["local", "http"] = "local"
    media_concurrency: int = Field(default=5, ge=1)
    media_timeout_seconds: float = Field(default=15.0, gt=0)
    media_retry_attempts: int = Field(default=3, ge=1, le=10)
    media_retry_backoff_seconds: float = Field(default=0.5, ge=0)
    media_local_root: str = "public/uploads"
    media_public_base_url: str = "/uploads"
    media_upload_url: str | None = None
    media_upload_api_key: SecretStr | None = None
    media_max_bytes: int = 25 * 1024 * 1024
    media_cache_path: str | None = None

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "NONE"
    logging_file_path: str = "logs/inkport.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd)
        # 3) env_settings (OS env)
        # 4) TOML (config.toml)
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()


ENTITY_ORDER: tuple[str, ...] = ("users", "works", "episodes")

SeedMode = Literal["seed", "clear", "reset"]


@dataclass(frozen=True)
class SeedOptions:
    """Per-run view of the seeding knobs, after CLI overrides."""

    entities: tuple[str, ...] = ENTITY_ORDER
    mode: SeedMode = "seed"
    batch_size: int = 100
    concurrency: int = 4
    media_concurrency: int = 5
    dry_run: bool = False
    force_overwrite: bool = False
    skip_media: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        unknown = [e for e in self.entities if e not in ENTITY_ORDER]
        if unknown:
            raise ValueError(f"unknown entity selector(s): {unknown}")
        if self.batch_size < 1 or self.concurrency < 1 or self.media_concurrency < 1:
            raise ValueError("batch_size and concurrency limits must be >= 1")
        # Always run stages in dependency order regardless of selection order
        ordered = tuple(e for e in ENTITY_ORDER if e in self.entities)
        object.__setattr__(self, "entities", ordered)


def options_from_settings(settings: Settings, **overrides: Any) -> SeedOptions:
    base: dict[str, Any] = {
        "batch_size": settings.seed_batch_size,
        "concurrency": settings.seed_concurrency,
        "media_concurrency": settings.media_concurrency,
        "skip_media": not settings.media_enabled,
    }
    base.update({k: v for k, v in overrides.items() if v is not None})
    return SeedOptions(**base)
