"""Per-entity results and the run-level report."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import orjson
from prettytable import PrettyTable


@dataclass(frozen=True)
class SkippedRecord:
    key: str
    reason: str
    source: str | None = None


@dataclass(frozen=True)
class FailedRecord:
    key: str
    kind: str
    message: str
    source: str | None = None


@dataclass
class SeedResult:
    entity: str
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    duration: float = 0.0
    dry_run: bool = False
    skipped_records: list[SkippedRecord] = field(default_factory=list)
    failed_records: list[FailedRecord] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.skipped + self.errors

    def add_skip(self, key: str, reason: str, source: str | None = None) -> None:
        self.skipped += 1
        self.skipped_records.append(SkippedRecord(key, reason, source))

    def add_error(self, key: str, kind: str, message: str, source: str | None = None) -> None:
        self.errors += 1
        self.failed_records.append(FailedRecord(key, kind, message, source))

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["duration"] = round(self.duration, 3)
        return d


@dataclass
class RunReport:
    run_id: str
    mode: str
    dry_run: bool = False
    state: str = "Init"
    results: dict[str, SeedResult] = field(default_factory=dict)
    cleared: dict[str, int] = field(default_factory=dict)
    media: dict[str, Any] = field(default_factory=dict)
    relationships: dict[str, int] = field(default_factory=dict)
    metrics: dict[str, int] = field(default_factory=dict)
    duration: float = 0.0
    error: str | None = None

    @property
    def totals(self) -> dict[str, int]:
        return {
            "inserted": sum(r.inserted for r in self.results.values()),
            "updated": sum(r.updated for r in self.results.values()),
            "skipped": sum(r.skipped for r in self.results.values()),
            "errors": sum(r.errors for r in self.results.values()),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "state": self.state,
            "duration": round(self.duration, 3),
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "totals": self.totals,
            "cleared": dict(self.cleared),
            "media": dict(self.media),
            "relationships": dict(self.relationships),
            "metrics": dict(self.metrics),
            "error": self.error,
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict(), option=orjson.OPT_INDENT_2)

    def render_text(self) -> str:
        lines = [
            f"Seed run {self.run_id} ({self.mode}{', dry-run' if self.dry_run else ''}): "
            f"{self.state} in {self.duration:.2f}s",
        ]
        if self.cleared:
            cleared = ", ".join(f"{k}={v}" for k, v in self.cleared.items())
            lines.append(f"  cleared: {cleared}")
        if self.results:
            table = PrettyTable()
            table.field_names = ["Entity", "Inserted", "Updated", "Skipped", "Errors", "Time"]
            table.align = "r"
            table.align["Entity"] = "l"
            for name, r in self.results.items():
                table.add_row(
                    [name, r.inserted, r.updated, r.skipped, r.errors, f"{r.duration:.2f}s"]
                )
            t = self.totals
            table.add_row(["total", t["inserted"], t["updated"], t["skipped"], t["errors"], ""])
            lines.append(table.get_string())
        if self.media:
            m = self.media
            lines.append(
                f"  media: {m.get('url_cache_size', 0)} urls, "
                f"{m.get('hash_cache_size', 0)} unique files, "
                f"hit rate {m.get('hit_rate', 0.0):.0%}, "
                f"{m.get('duplicates_avoided', 0)} duplicate uploads avoided, "
                f"{m.get('fallbacks', 0)} fallbacks"
            )
        for name, r in self.results.items():
            for s in r.skipped_records[:10]:
                lines.append(f"  skipped {name} {s.key}: {s.reason}")
            for f in r.failed_records[:10]:
                lines.append(f"  failed {name} {f.key}: [{f.kind}] {f.message}")
        if self.error:
            lines.append(f"  error: {self.error}")
        return "\n".join(lines)
