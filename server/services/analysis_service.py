"""Per-domain accuracy and mean latency over the stored evaluation results."""

from typing import Dict, List, Optional, Sequence

from server.services.question_store import QuestionRecord


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def expected_label(record: QuestionRecord) -> str:
    """
    The label a record expects.

    Older imports stored the text of the correct choice instead of its
    label; those are mapped back through the record's choices.
    """
    expected = _norm(record.expected_answer)
    choices = record.choices or {}
    if expected in {_norm(k) for k in choices} or len(expected) == 1:
        return expected
    for label, text in choices.items():
        if _norm(text) == expected:
            return _norm(label)
    return expected


def is_correct(record: QuestionRecord) -> bool:
    answer = _norm(record.normalized_answer)
    return bool(answer) and answer == expected_label(record)


def summarize_domain(domain: str, records: Sequence[QuestionRecord]) -> Optional[Dict]:
    """None when the domain has no questions."""
    if not records:
        return None
    count = len(records)
    correct = sum(1 for r in records if is_correct(r))
    total_ms = sum(r.response_time_ms or 0 for r in records)
    return {
        "domain": domain,
        "count": count,
        "evaluated": sum(1 for r in records if r.evaluated_at is not None),
        "accuracy": correct / count,
        "avgResponseTime": total_ms / count,
    }


def run_analysis(store) -> List[Dict]:
    """One entry per configured domain that has questions, in domain order."""
    results = []
    for domain in store.domains:
        summary = summarize_domain(domain, store.list_all(domain))
        if summary is not None:
            results.append(summary)
    return results
