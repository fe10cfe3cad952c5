"""
Load multiple-choice questions from CSV into the Question Store.

Row layout (MMLU style): question, one column per choice label, answer label.
Files are headerless unless told otherwise.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from server.services.question_store import QuestionStore

logger = logging.getLogger("quizbench.import")

# Default file -> domain map for the bundled MMLU test splits.
DEFAULT_SOURCES: Dict[str, str] = {
    "prehistory_test.csv": "History",
    "sociology_test.csv": "Social_Science",
    "computer_security_test.csv": "Computer_Security",
}


@dataclass
class ImportReport:
    domain: str
    inserted: int = 0
    skipped: int = 0
    source: Optional[str] = None


def parse_row(row: List[str], labels: str) -> Optional[Dict]:
    """Row -> question dict, or None if the row is unusable."""
    width = len(labels) + 2
    if len(row) < width:
        return None
    cells = [c.strip() for c in row[:width]]
    question, letter = cells[0], cells[-1].upper()
    if not question or len(letter) != 1 or letter not in labels:
        return None
    return {
        "question": question,
        "choices": {label: cells[i + 1] for i, label in enumerate(labels)},
        "expected_answer": letter,
    }


def read_questions(path: Path, labels: str = "ABCD", has_header: bool = False) -> Tuple[List[Dict], int]:
    """Parse a CSV file. Returns (questions, skipped_row_count)."""
    items: List[Dict] = []
    skipped = 0
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        if has_header:
            next(reader, None)
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            item = parse_row(row, labels)
            if item is None:
                skipped += 1
                continue
            items.append(item)
    return items, skipped


def import_csv(
    path: Path,
    domain: str,
    store: QuestionStore,
    labels: str = "ABCD",
    has_header: bool = False,
) -> ImportReport:
    items, skipped = read_questions(Path(path), labels=labels.upper(), has_header=has_header)
    ids = store.add_questions(domain, items)
    report = ImportReport(domain=domain, inserted=len(ids), skipped=skipped, source=str(path))
    logger.info("Imported %d questions into %s from %s (%d rows skipped)",
                report.inserted, domain, path, report.skipped)
    return report


def import_directory(
    data_dir: Path,
    store: QuestionStore,
    labels: str = "ABCD",
    has_header: bool = False,
    sources: Optional[Dict[str, str]] = None,
) -> List[ImportReport]:
    """Import every known file present in data_dir; missing files are skipped."""
    reports = []
    for filename, domain in (sources or DEFAULT_SOURCES).items():
        path = Path(data_dir) / filename
        if not path.exists():
            logger.warning("No %s in %s; %s left unchanged", filename, data_dir, domain)
            continue
        reports.append(import_csv(path, domain, store, labels=labels, has_header=has_header))
    return reports
