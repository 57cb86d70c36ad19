"""Edit-distance based answer similarity used by misconception clustering."""

from __future__ import annotations

import re

from rapidfuzz.distance import Levenshtein

_WHITESPACE = re.compile(r"\s+")


def levenshtein_distance(a: str, b: str) -> int:
    """Return the minimum number of single-character edits turning ``a`` into ``b``."""

    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """Normalised similarity in [0, 1]; 1.0 means identical strings.

    Edit distance divided by the longer length, so two empty strings are
    identical. Case-sensitive and applied to raw text. Callers wanting stable
    matches should pass the output of :func:`normalize_answer`.
    """

    return Levenshtein.normalized_similarity(a, b)


def normalize_answer(text: str | None) -> str:
    """Lowercase, trim and collapse internal whitespace."""

    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.strip().lower())
