"""
Similarity matching between a live-frame embedding and an item's references.
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np

# Below this cosine similarity a match is treated as noise
MATCH_THRESHOLD = 0.6


@dataclass
class MatchResult:
    best_score: float
    best_index: int  # -1 when there were no usable references
    matched: bool


NO_MATCH = MatchResult(best_score=0.0, best_index=-1, matched=False)


def cosine_similarity(embedding1: np.ndarray, embedding2: np.ndarray) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 for zero-norm vectors or mismatched dimensions instead of
    raising, so a bad reference never aborts a search tick.
    """
    a = np.asarray(embedding1, dtype=np.float64).ravel()
    b = np.asarray(embedding2, dtype=np.float64).ravel()

    if a.size == 0 or a.size != b.size:
        return 0.0

    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm1 * norm2))
    return max(-1.0, min(1.0, similarity))


def match(query: np.ndarray, references: Sequence[np.ndarray]) -> MatchResult:
    """
    Compare a query embedding against every reference embedding.

    The highest cosine similarity wins; on ties the first-seen reference is
    kept. matched is False when best_score < MATCH_THRESHOLD.
    """
    if query is None or len(references) == 0:
        return NO_MATCH

    best_index = -1
    best_score = -float("inf")

    for index, reference in enumerate(references):
        score = cosine_similarity(query, reference)
        if score > best_score:
            best_score = score
            best_index = index

    if best_index < 0:
        return NO_MATCH

    return MatchResult(
        best_score=best_score,
        best_index=best_index,
        matched=best_score >= MATCH_THRESHOLD,
    )
