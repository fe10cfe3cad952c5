"""Question Store: per-domain reads and result write-back on SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from server.db.models import Question

logger = logging.getLogger("quizbench.store")


@dataclass
class QuestionRecord:
    """Detached snapshot of a stored question. Safe to hold across threads."""

    id: str
    domain: str
    question: str
    choices: Dict[str, str] = field(default_factory=dict)
    expected_answer: str = ""
    normalized_answer: Optional[str] = None
    raw_answer_text: Optional[str] = None
    response_time_ms: Optional[int] = None
    evaluated_at: Optional[datetime] = None


@dataclass
class EvaluationResult:
    normalized_answer: str
    raw_answer_text: str
    response_time_ms: int
    evaluated_at: datetime


def _choices(row: Question) -> Dict[str, str]:
    if isinstance(row.choices, Mapping):
        return dict(row.choices)
    if row.choices:
        # Left empty so the run loop skips the question as malformed.
        logger.warning("Question %s has %s choices, expected a label mapping", row.id, type(row.choices).__name__)
    return {}


def _to_record(row: Question) -> QuestionRecord:
    return QuestionRecord(
        id=row.id,
        domain=row.domain,
        question=row.question or "",
        choices=_choices(row),
        expected_answer=row.expected_answer,
        normalized_answer=row.normalized_answer,
        raw_answer_text=row.raw_answer_text,
        response_time_ms=row.response_time_ms,
        evaluated_at=row.evaluated_at,
    )


class QuestionStore:
    """
    Collection-style access to questions grouped by a fixed set of domains.

    Each call opens and closes its own session, so the store can be shared
    by request handlers and the run loop's worker threads.
    """

    def __init__(self, session_factory: sessionmaker, domains: Sequence[str]):
        self._session_factory = session_factory
        self.domains = tuple(domains)

    def _check_domain(self, domain: str) -> None:
        if domain not in self.domains:
            raise ValueError(f"Unknown domain: {domain!r}")

    def list_all(self, domain: str) -> List[QuestionRecord]:
        self._check_domain(domain)
        with self._session_factory() as db:
            rows = db.scalars(select(Question).where(Question.domain == domain)).all()
            return [_to_record(r) for r in rows]

    def sample_random(self, domain: str, n: int) -> List[QuestionRecord]:
        """Up to n distinct questions in random order; all of them if fewer exist."""
        self._check_domain(domain)
        if n <= 0:
            return []
        with self._session_factory() as db:
            stmt = (
                select(Question)
                .where(Question.domain == domain)
                .order_by(func.random())
                .limit(n)
            )
            return [_to_record(r) for r in db.scalars(stmt).all()]

    def count(self, domain: str) -> int:
        self._check_domain(domain)
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(Question).where(Question.domain == domain)
            return int(db.scalar(stmt) or 0)

    def record_result(self, question_id: str, result: EvaluationResult) -> bool:
        """
        Overwrite the evaluation fields of one question (last write wins).

        Returns False when the question no longer exists; that is a skip,
        not an error.
        """
        with self._session_factory() as db:
            row = db.get(Question, question_id)
            if row is None:
                logger.warning("Question %s vanished before its result was recorded", question_id)
                return False
            row.normalized_answer = result.normalized_answer
            row.raw_answer_text = result.raw_answer_text
            row.response_time_ms = result.response_time_ms
            row.evaluated_at = result.evaluated_at
            db.commit()
            return True

    def add_questions(self, domain: str, items: Iterable[Dict]) -> List[str]:
        """Insert new questions (dicts with question, choices, expected_answer). Returns their ids."""
        self._check_domain(domain)
        with self._session_factory() as db:
            rows = [
                Question(
                    domain=domain,
                    question=item["question"],
                    choices=dict(item.get("choices") or {}),
                    expected_answer=item["expected_answer"],
                )
                for item in items
            ]
            db.add_all(rows)
            db.flush()
            ids = [r.id for r in rows]
            db.commit()
        return ids
