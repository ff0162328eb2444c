"""
Vector similarity and statement normalization helpers.

Two independent duplicate signals are provided:
1. Exact duplicates: SHA-256 of the normalized statement (trim, lowercase,
   collapsed whitespace)
2. Near duplicates: cosine similarity between embeddings

Usage:
    from insight_engine.core.similarity import cosine_similarity, rank_by_similarity

    score = cosine_similarity(vec_a, vec_b)
    matches = rank_by_similarity(query, unique_insights, threshold=0.90)
"""

import hashlib
import json
import re
from typing import Any, Callable, Sequence, TypeVar

import numpy as np

from insight_engine.core.errors import DimensionMismatchError

T = TypeVar("T")

_WHITESPACE = re.compile(r"\s+")


def normalize_statement(statement: str) -> str:
    """Trim, lowercase and collapse whitespace for hashing."""
    return _WHITESPACE.sub(" ", statement.strip().lower())


def compute_insight_hash(statement: str) -> str:
    """SHA-256 hex digest of the normalized statement."""
    return hashlib.sha256(normalize_statement(statement).encode("utf-8")).hexdigest()


def coerce_vector(value: Any) -> list[float] | None:
    """
    Normalize a stored embedding into a list of floats.

    PostgREST returns pgvector columns as text ("[0.1,0.2,...]") while JSON
    columns and in-memory rows hold real lists. Empty values map to None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        value = json.loads(value)
    if isinstance(value, np.ndarray):
        value = value.tolist()
    if len(value) == 0:
        return None
    return [float(x) for x in value]


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Args:
        vec_a: First vector
        vec_b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 if either vector has zero norm

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    if len(vec_a) != len(vec_b):
        raise DimensionMismatchError(len(vec_a), len(vec_b))

    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    # Clamp float drift so v·v never reads as 1.0000000002
    return max(-1.0, min(1.0, similarity))


def rank_by_similarity(
    query: Sequence[float],
    candidates: Sequence[T],
    threshold: float,
    vector_of: Callable[[T], Any],
    inclusive: bool = True,
) -> list[tuple[T, float]]:
    """
    Exact nearest-neighbor scan over in-memory candidates.

    Candidates without a vector are skipped. The comparison against the
    threshold is >= when inclusive, > otherwise. Results are sorted by
    descending similarity; ties keep candidate order.

    Args:
        query: Query vector
        candidates: Items to score
        threshold: Minimum similarity to keep
        vector_of: Extracts the (possibly text-encoded) vector from an item
        inclusive: Whether a score equal to the threshold is kept

    Returns:
        List of (candidate, similarity) pairs

    Raises:
        DimensionMismatchError: If a candidate vector differs in length from the query
    """
    scored_items: list[T] = []
    vectors: list[list[float]] = []
    for item in candidates:
        vector = coerce_vector(vector_of(item))
        if vector is None:
            continue
        if len(vector) != len(query):
            raise DimensionMismatchError(len(query), len(vector))
        scored_items.append(item)
        vectors.append(vector)

    if not vectors:
        return []

    q = np.asarray(query, dtype=np.float64)
    matrix = np.asarray(vectors, dtype=np.float64)

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    if q_norm == 0:
        return []

    with np.errstate(divide="ignore", invalid="ignore"):
        scores = matrix @ q / (row_norms * q_norm)
    scores = np.where(row_norms == 0, 0.0, scores)
    scores = np.clip(scores, -1.0, 1.0)

    keep = scores >= threshold if inclusive else scores > threshold
    ranked = [(scored_items[i], float(scores[i])) for i in np.flatnonzero(keep)]
    ranked.sort(key=lambda pair: pair[1], reverse=True)
    return ranked
