"""
Name similarity scoring.

Jaro-Winkler on case-folded, whitespace-normalized names, reported as an
integer match rate in [0, 100]. Transpositions are halved exactly, not
with integer division, and the Winkler prefix boost is applied without the
usual 0.7 boost threshold so that every shared prefix counts.
"""

import math
from typing import Iterable, Optional

PREFIX_SCALE = 0.1
MAX_PREFIX = 4


def _fold(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.lower().split())


def _common_prefix(left: str, right: str) -> int:
    length = 0
    for a, b in zip(left[:MAX_PREFIX], right[:MAX_PREFIX]):
        if a != b:
            break
        length += 1
    return length


def jaro(left: str, right: str) -> float:
    """Jaro similarity in [0, 1] for two non-empty strings."""
    len_left, len_right = len(left), len(right)
    window = max(len_left, len_right) // 2 - 1

    left_matched = [False] * len_left
    right_matched = [False] * len_right
    matches = 0
    for i, char in enumerate(left):
        for j in range(max(0, i - window), min(i + window + 1, len_right)):
            if right_matched[j] or right[j] != char:
                continue
            left_matched[i] = right_matched[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i, char in enumerate(left):
        if not left_matched[i]:
            continue
        while not right_matched[k]:
            k += 1
        if char != right[k]:
            transpositions += 1
        k += 1

    return (matches / len_left + matches / len_right
            + (matches - transpositions / 2) / matches) / 3


def score(a: Optional[str], b: Optional[str]) -> int:
    """Match rate that two names denote the same entity.

    Args:
        a: First name
        b: Second name

    Returns:
        Integer in [0, 100]; 0 when either side is empty, 100 for names
        equal after case folding and whitespace normalization.
    """
    left, right = _fold(a), _fold(b)
    if not left or not right:
        return 0
    if left == right:
        return 100

    base = jaro(left, right)
    boosted = base + _common_prefix(left, right) * PREFIX_SCALE * (1.0 - base)
    # round half up, independent of banker's rounding
    return max(0, min(100, int(math.floor(boosted * 100 + 0.5))))


def best_score(queries: Iterable[Optional[str]], targets: Iterable[Optional[str]]) -> int:
    """Highest score over every (query, target) pair, 0 if either is empty."""
    targets = [t for t in targets if t]
    best = 0
    for query in queries:
        if not query:
            continue
        for target in targets:
            best = max(best, score(query, target))
            if best == 100:
                return best
    return best
