"""Recompute mastery and gap insights for every stored (student, concept) pair."""
from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

import db
from engines.evidence_pipeline import EvidencePipeline
from env_validation import configure_logging, load_settings, validate_environment


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--student",
        dest="students",
        action="append",
        default=None,
        help="Restrict the sweep to this student id (repeatable)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (default: SWEEP_MAX_WORKERS)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON sweep summary",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    validate_environment()
    configure_logging()
    settings = load_settings()
    db.init()

    pipeline = EvidencePipeline(
        db,
        recovery_score=settings.gap_recovery_score,
        auto_resolve=settings.gap_auto_resolve,
        max_workers=settings.sweep_max_workers,
    )
    workers = max(1, int(args.workers)) if args.workers else None
    summary = pipeline.sweep(args.students, max_workers=workers)

    payload = json.dumps(asdict(summary), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)

    if summary.failures:
        for failure in summary.failures:
            print(f"failed: {failure['student_id']}/{failure['concept_id']}: {failure['error']}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
