"""
Reduce a model's free-text reply to a single choice label.

Deterministic and pure. The reply is split into alphanumeric tokens
(anything else is a delimiter, except an apostrophe between two
alphanumerics, so "I'd" stays one word) and scanned left to right:

  1. the first one-character token that is a valid label wins;
  2. failing that, the first token made only of label characters
     ("BD", "ac") contributes its first character;
  3. otherwise the answer is empty.

Matching is case-insensitive. When a reply names several labels only the
first is taken; that is a simplification, not a robustness guarantee.
Because the passes are ordered, an isolated label outranks an earlier
run: "BD, or C" normalizes to "C". A reply such as "bad" has no isolated
label and normalizes to "B".
"""

from __future__ import annotations

from typing import Iterator, Tuple

DEFAULT_LABELS = "ABCD"
_JOINERS = "'’"


def _tokens(text: str) -> Iterator[str]:
    start = None
    for i, ch in enumerate(text):
        if ch.isalnum() or (start is not None and ch in _JOINERS and text[i + 1:i + 2].isalnum()):
            if start is None:
                start = i
        elif start is not None:
            yield text[start:i]
            start = None
    if start is not None:
        yield text[start:]


def extract_label(text: str | None, labels: str = DEFAULT_LABELS) -> str:
    """Return the first isolated label in text (upper case), or ""."""
    if not text:
        return ""
    valid = set(labels.upper())
    tokens = [t.upper() for t in _tokens(text)]
    for tok in tokens:
        if len(tok) == 1 and tok in valid:
            return tok
    for tok in tokens:
        if all(ch in valid for ch in tok):
            return tok[0]
    return ""


def label_set(labels: str = DEFAULT_LABELS) -> Tuple[str, ...]:
    return tuple(labels.upper())
