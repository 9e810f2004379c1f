"""Command line entry point for catalog seeding.

Examples:
  inkport-seed                          # seed users, works and episodes
  inkport-seed --works --dry-run -v     # validate works without writing
  inkport-seed --reset --force          # clear everything, then reseed
  inkport-seed --episodes --skip-media --json
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence

import structlog

from Inkport.config import ENTITY_ORDER, SeedOptions, load_settings, options_from_settings
from Inkport.errors import FatalConnectionError
from Inkport.logging import redact_settings, setup_logging
from Inkport.orchestrator import SeedOrchestrator

log = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="inkport-seed",
        description="Load users, works and episodes from JSON files into the catalog.",
    )
    sel = ap.add_argument_group("entities (default: all)")
    sel.add_argument("--users", action="store_true", help="Seed users")
    sel.add_argument("--works", "--comics", dest="works", action="store_true", help="Seed works")
    sel.add_argument(
        "--episodes", "--chapters", dest="episodes", action="store_true", help="Seed episodes"
    )
    sel.add_argument("--all", action="store_true", help="Seed every entity type")

    mode = ap.add_mutually_exclusive_group()
    mode.add_argument("--clear", action="store_true", help="Delete selected entities only")
    mode.add_argument("--reset", action="store_true", help="Clear, then seed again")

    ap.add_argument(
        "--dry-run",
        "--validate",
        dest="dry_run",
        action="store_true",
        help="Validate and report what would change without writing",
    )
    ap.add_argument(
        "--force", "-f", action="store_true", help="Update rows that already exist"
    )
    ap.add_argument("--batch-size", type=int, default=None, help="Records per batch")
    ap.add_argument("--concurrency", type=int, default=None, help="Workers per batch")
    ap.add_argument("--skip-media", action="store_true", help="Keep remote media URLs as-is")
    ap.add_argument("--data-root", default=None, help="Directory source globs are resolved in")
    ap.add_argument("--media-cache", default=None, help="Path of the persisted media cache")
    ap.add_argument("--json", action="store_true", help="Print the run report as JSON")
    ap.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return ap


def options_from_args(args: argparse.Namespace, settings) -> SeedOptions:
    picked = tuple(e for e in ENTITY_ORDER if getattr(args, e))
    entities = ENTITY_ORDER if args.all or not picked else picked
    mode = "clear" if args.clear else "reset" if args.reset else "seed"
    return options_from_settings(
        settings,
        entities=entities,
        mode=mode,
        batch_size=args.batch_size,
        concurrency=args.concurrency,
        dry_run=args.dry_run,
        force_overwrite=args.force,
        skip_media=True if args.skip_media else None,
        verbose=args.verbose,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    setup_logging(settings, verbose=args.verbose)
    try:
        options = options_from_args(args, settings)
    except ValueError as exc:
        print(f"inkport-seed: {exc}", file=sys.stderr)
        return 2
    log.debug("seed.config", settings=redact_settings(settings))

    orchestrator = SeedOrchestrator(
        settings,
        options,
        data_root=args.data_root,
        media_cache_path=args.media_cache,
    )
    code = 0
    try:
        asyncio.run(orchestrator.run())
    except FatalConnectionError:
        code = 1
    except ValueError as exc:
        # Misconfigured media backend
        print(f"inkport-seed: {exc}", file=sys.stderr)
        return 2

    report = orchestrator.report
    if args.json:
        sys.stdout.write(report.to_json().decode("utf-8") + "\n")
    else:
        print(report.render_text())
    return code


if __name__ == "__main__":
    raise SystemExit(main())
