"""Prompt for answering one multiple-choice question with a single label."""

from typing import Mapping, Sequence

ANSWER_INSTRUCTIONS = """IMPORTANT:
- Only answer with ONE letter: {label_list}.
- No explanation."""


def _label_list(labels: Sequence[str]) -> str:
    labels = list(labels)
    if len(labels) == 1:
        return labels[0]
    return ", ".join(labels[:-1]) + f", or {labels[-1]}"


def build_answer_prompt(question: str, choices: Mapping[str, str], labels: Sequence[str]) -> str:
    """Embed the question and every labelled choice, then ask for exactly one label."""
    lines = ["You are answering a multiple-choice question. Choices:", ""]
    for label in labels:
        lines.append(f"{label}: {choices.get(label, '')}")
    lines += ["", f"Question: {question.strip()}", ""]
    lines.append(ANSWER_INSTRUCTIONS.format(label_list=_label_list(labels)))
    return "\n".join(lines)
