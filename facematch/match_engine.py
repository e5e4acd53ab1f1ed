"""
Face matching

Scores a query embedding against a candidate pool with a normalized
minkowski distance:

    dist  = multiplier * sum(|a - b| ** order)
    score = clamp((1 - dist ** (1 / order) / 100 - min) / (max - min), 0, 1)

Identical vectors short-circuit to exactly 1.0. Results at or above the
threshold are returned best first; equal scores keep their input order.
"""
import logging
from typing import List, Sequence

import numpy as np

from facematch.config import (
    MATCH_THRESHOLD,
    SIMILARITY_MAX,
    SIMILARITY_MIN,
    SIMILARITY_MULTIPLIER,
    SIMILARITY_ORDER,
)
from facematch.errors import DimensionMismatchError
from facematch.schemas import Candidate, MatchResult

logger = logging.getLogger(__name__)


def similarity_scores(
    query,
    matrix,
    order: int = SIMILARITY_ORDER,
    multiplier: float = SIMILARITY_MULTIPLIER,
    min_score: float = SIMILARITY_MIN,
    max_score: float = SIMILARITY_MAX,
) -> np.ndarray:
    """Score one query against every row of matrix."""
    query = np.asarray(query, dtype=np.float64).reshape(-1)
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))

    if matrix.shape[1] != query.shape[0]:
        raise DimensionMismatchError(query.shape[0], matrix.shape[1])

    diff = matrix - query
    if order == 2:
        dist = multiplier * np.einsum("ij,ij->i", diff, diff)
        root = np.sqrt(dist)
    else:
        dist = multiplier * np.sum(np.abs(diff) ** order, axis=1)
        root = dist ** (1.0 / order)

    scores = np.clip((1.0 - root / 100.0 - min_score) / (max_score - min_score), 0.0, 1.0)
    scores[dist == 0] = 1.0
    return scores


def similarity(embedding1, embedding2) -> float:
    """Similarity of two embeddings in [0, 1], higher = more similar."""
    return float(similarity_scores(embedding1, [embedding2])[0])


def _candidate_matrix(candidates: Sequence[Candidate], dim: int) -> np.ndarray:
    for candidate in candidates:
        size = np.asarray(candidate.embedding).size
        if size != dim:
            raise DimensionMismatchError(dim, size)
    return np.vstack([np.asarray(c.embedding, dtype=np.float64).reshape(-1) for c in candidates])


def _rank(candidates: Sequence[Candidate], scores: np.ndarray, threshold: float) -> List[MatchResult]:
    order = np.argsort(-scores, kind="stable")
    return [
        MatchResult(photo_id=candidates[i].photo_id, score=float(scores[i]))
        for i in order
        if scores[i] >= threshold
    ]


def match(query, candidates: Sequence[Candidate], threshold: float = MATCH_THRESHOLD) -> List[MatchResult]:
    """Rank candidates against a single query embedding."""
    if not candidates:
        return []

    query = np.asarray(query, dtype=np.float64).reshape(-1)
    scores = similarity_scores(query, _candidate_matrix(candidates, query.size))
    return _rank(candidates, scores, threshold)


def match_best(
    queries: Sequence,
    candidates: Sequence[Candidate],
    threshold: float = MATCH_THRESHOLD,
) -> List[MatchResult]:
    """
    Rank candidates against several query embeddings of the same person.

    A candidate's score is its best similarity across the queries.
    """
    if not queries or not candidates:
        return []

    dim = np.asarray(queries[0]).size
    matrix = _candidate_matrix(candidates, dim)
    scores = np.max(np.vstack([similarity_scores(q, matrix) for q in queries]), axis=0)

    results = _rank(candidates, scores, threshold)
    logger.debug(f"{len(results)}/{len(candidates)} candidates cleared threshold {threshold}")
    return results
