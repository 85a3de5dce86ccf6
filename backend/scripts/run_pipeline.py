"""Reconcile a knowledge-base JSON file: fix coordinates, merge duplicates, audit.

Usage:
    python -m scripts.run_pipeline data/places.json --output data/places.fixed.json \
        [--report report.json] [--checkpoint progress.json] [--workers 5] [--seed 42] \
        [--offline] [--reprocess-from report.json] [--enrich google.json] [--max-unresolved 0.05]

Exit codes: 0 ok, 1 too many records left with unresolved coordinates,
2 unreadable input or unwritable output. Run from the backend/ directory.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(env_path)

from domain.territory import default_territory, load_territory
from services.checkpoint import CheckpointStore
from services.pipeline import build_chain, reprocess_ids_from_report, run_pipeline
from settings import settings
from storage.file_storage import FileStorage, InputError, OutputError, StorageError

logger = logging.getLogger("run_pipeline")

EXIT_OK = 0
EXIT_UNRESOLVED = 1
EXIT_IO = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate, geocode, dedupe and audit place records.")
    parser.add_argument("input", help="JSON array of place records.")
    parser.add_argument("--output", required=True, help="Where to write the reconciled records.")
    parser.add_argument("--report", default=None, help="Report path (defaults to <output>.report.json).")
    parser.add_argument("--checkpoint", default=None, help="Checkpoint file; resumes if it exists.")
    parser.add_argument("--workers", type=int, default=settings.WORKERS)
    parser.add_argument("--checkpoint-every", type=int, default=settings.CHECKPOINT_EVERY)
    parser.add_argument("--seed", type=int, default=None, help="Seed for jitter and coastline nudges.")
    parser.add_argument("--offline", action="store_true", help="Verified table and centroid fallback only.")
    parser.add_argument("--reprocess-from", default=None, help="Only re-resolve ids in this report's reprocess list.")
    parser.add_argument("--enrich", default=None, help="Secondary records (same ids) used to fill gaps.")
    parser.add_argument("--territory", default=None, help="JSON overlay for verified locations / district centroids.")
    parser.add_argument("--archive-dir", default=None, help="Copy the previous output here before overwriting.")
    parser.add_argument("--max-unresolved", type=float, default=settings.MAX_UNRESOLVED_FRACTION)
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    storage = FileStorage(archive_dir=args.archive_dir)
    try:
        records = storage.read_records(args.input)
        territory = load_territory(args.territory) if args.territory else default_territory()
        only_ids = None
        if args.reprocess_from:
            only_ids = reprocess_ids_from_report(storage.read_json(args.reprocess_from))
            logger.info("Reprocessing %d records from %s", len(only_ids), args.reprocess_from)
        secondary = None
        if args.enrich:
            secondary = {r.id: r for r in storage.read_records(args.enrich)}
    except (InputError, OSError, ValueError) as exc:
        logger.error("%s", exc)
        return EXIT_IO

    chain = build_chain(territory, offline=args.offline or None, seed=args.seed)
    checkpoint = CheckpointStore(args.checkpoint) if args.checkpoint else None

    result = run_pipeline(
        records,
        chain,
        workers=args.workers,
        checkpoint_store=checkpoint,
        checkpoint_every=args.checkpoint_every,
        only_ids=only_ids,
        secondary_by_id=secondary,
        archive_checkpoint=False,
    )

    report_path = args.report or str(Path(args.output).with_suffix(".report.json"))
    try:
        storage.write_records(args.output, result.records)
        storage.write_report(report_path, result.report())
    except (OutputError, StorageError) as exc:
        logger.error("%s", exc)
        return EXIT_IO
    if checkpoint is not None:
        checkpoint.archive()

    fraction = result.audit.unresolved_fraction if result.audit else 0.0
    if fraction > args.max_unresolved:
        logger.error(
            "%.1f%% of records still have unresolved coordinates (limit %.1f%%); see %s",
            fraction * 100, args.max_unresolved * 100, report_path,
        )
        return EXIT_UNRESOLVED
    logger.info("Done: %s (%d records), report %s", args.output, len(result.records), report_path)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
