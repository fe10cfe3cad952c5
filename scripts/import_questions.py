#!/usr/bin/env python3
"""
Import multiple-choice questions from CSV into the question store.

Single file:   python scripts/import_questions.py --domain History prehistory_test.csv
Default set:   python scripts/import_questions.py --data-dir ./data

Rows are: question, one column per choice label, answer label.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Import question CSVs into the evaluation database")
    parser.add_argument("csv_path", nargs="?", type=Path, help="CSV file to import")
    parser.add_argument("--domain", help="Domain the CSV belongs to (required with csv_path)")
    parser.add_argument(
        "--data-dir",
        type=Path,
        help="Import the known MMLU test splits found in this directory",
    )
    parser.add_argument("--has-header", action="store_true", help="Skip the first row")
    parser.add_argument("--database-url", help="Overrides DATABASE_URL")
    args = parser.parse_args(argv)

    if (args.csv_path is None) == (args.data_dir is None):
        parser.error("give either a CSV path (with --domain) or --data-dir")
    if args.csv_path is not None and not args.domain:
        parser.error("--domain is required when importing a single file")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    from server.config import Settings
    from server.db.session import get_session_factory, init_db
    from server.services.import_service import import_csv, import_directory
    from server.services.question_store import QuestionStore

    settings = Settings(database_url=args.database_url) if args.database_url else Settings()
    init_db(settings)
    store = QuestionStore(get_session_factory(settings), settings.domains)

    try:
        if args.csv_path is not None:
            reports = [import_csv(args.csv_path, args.domain, store,
                                  labels=settings.choice_labels, has_header=args.has_header)]
        else:
            reports = import_directory(args.data_dir, store,
                                       labels=settings.choice_labels, has_header=args.has_header)
    except (OSError, ValueError) as e:
        print(f"Import failed: {e}", file=sys.stderr)
        return 1

    for r in reports:
        print(f"  ✓ {r.domain}: inserted {r.inserted}, skipped {r.skipped}")
    if not reports:
        print(f"No known CSV files found in {args.data_dir}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
