"""Source discovery and raw record loading.

Glob patterns are resolved relative to a data root into a sorted, de-duplicated
list of files. Each file holds a JSON array of records or one bare object.
"""

from __future__ import annotations

import glob
import json
import os
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class SourceRecord:
    """One raw record plus where it came from."""

    data: Any
    source_path: str
    index: int

    @property
    def source(self) -> str:
        return f"{self.source_path}#{self.index}"


@dataclass
class LoadedSources:
    records: list[SourceRecord] = field(default_factory=list)
    # (path, message) for files that could not be read or parsed
    file_errors: list[tuple[str, str]] = field(default_factory=list)


def discover_sources(patterns: str | Iterable[str], root: str | os.PathLike[str] = ".") -> list[Path]:
    """Resolve glob patterns under ``root`` to a sorted list of unique files.

    Zero matches is not an error: a warning is logged and an empty list is
    returned, meaning "nothing to seed" for the caller.
    """
    if isinstance(patterns, str):
        patterns = [patterns]
    patterns = list(patterns)
    base = Path(root)

    found: set[Path] = set()
    for pattern in patterns:
        full = pattern if os.path.isabs(pattern) else str(base / pattern)
        for match in glob.glob(full, recursive=True):
            p = Path(match)
            if p.is_file():
                found.add(p.resolve())

    files = sorted(found, key=lambda p: p.as_posix())
    if not files:
        log.warning("seed.sources.none", patterns=patterns, root=str(base))
    else:
        log.info("seed.sources.discovered", count=len(files), files=[p.name for p in files])
    return files


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        content = f.read()
    # Normalize text to UTF-8 NFC so names compare consistently across files
    return json.loads(unicodedata.normalize("NFC", content))


def load_source_records(paths: Sequence[Path]) -> LoadedSources:
    """Parse every file; a bad file is recorded and skipped, never fatal."""
    loaded = LoadedSources()
    for path in paths:
        rel = path.name
        try:
            payload = _read_json(path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            log.error("seed.sources.unreadable", path=str(path), error=str(exc))
            loaded.file_errors.append((str(path), str(exc)))
            continue

        if isinstance(payload, dict):
            items = [payload]
        elif isinstance(payload, list):
            items = payload
        else:
            msg = f"expected a JSON object or array, got {type(payload).__name__}"
            log.error("seed.sources.unexpected_shape", path=str(path), error=msg)
            loaded.file_errors.append((str(path), msg))
            continue

        for idx, item in enumerate(items):
            loaded.records.append(SourceRecord(data=item, source_path=rel, index=idx))
        log.debug("seed.sources.loaded", path=str(path), records=len(items))
    return loaded
