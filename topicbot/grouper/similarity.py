"""Neighbor lookup over item embeddings.

The clustering engine is written once against ``SimilaritySource``. Two
implementations exist: ``IndexSimilarity`` asks a vector index, and
``BruteForceSimilarity`` uses the full pairwise cosine matrix of the candidate
set. Both return every neighbor at or above the threshold, ordered by
similarity (rounded to 9 decimals) then item id, so they agree on membership.
"""

from abc import ABC, abstractmethod
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.neighbors import NearestNeighbors

from topicbot.core.errors import IndexUnavailable
from topicbot.core.logging import get_logger

logger = get_logger(__name__)

SIMILARITY_DECIMALS = 9

Neighbor = Tuple[int, float]


def round_similarity(value: float) -> float:
    return round(float(value), SIMILARITY_DECIMALS)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Scale every row to unit length. Rows must have non-zero norm."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / norms


def order_neighbors(pairs: Iterable[Neighbor], k: int) -> List[Neighbor]:
    """Most similar first, lower id first on ties, cut to ``k``."""
    return sorted(pairs, key=lambda pair: (-pair[1], pair[0]))[:k]


class SimilaritySource(ABC):
    """Answers "which candidates are at least this similar to item X"."""

    @abstractmethod
    def neighbors(self, item_id: int, k: int, min_similarity: float,
                  eligible: Optional[AbstractSet[int]] = None) -> List[Neighbor]:
        """
        Up to ``k`` other candidates with cosine similarity >= ``min_similarity``.

        When ``eligible`` is given, only those ids are considered, and the
        filter is applied before the cut to ``k``.

        Raises:
            IndexUnavailable: the backing index cannot answer
        """

    @property
    def is_fallback(self) -> bool:
        return False


class BruteForceSimilarity(SimilaritySource):
    """Full pairwise cosine similarity over the in-memory candidate set."""

    def __init__(self, ids: Sequence[int], vectors: np.ndarray):
        self._ids = list(ids)
        self._position = {item_id: i for i, item_id in enumerate(self._ids)}
        if self._ids:
            unit = normalize_rows(np.asarray(vectors, dtype=np.float64))
            self._matrix = np.round(unit @ unit.T, SIMILARITY_DECIMALS)
        else:
            self._matrix = np.zeros((0, 0))
        logger.debug(f"Built {len(self._ids)}x{len(self._ids)} similarity matrix")

    @property
    def is_fallback(self) -> bool:
        return True

    def neighbors(self, item_id: int, k: int, min_similarity: float,
                  eligible: Optional[AbstractSet[int]] = None) -> List[Neighbor]:
        row = self._matrix[self._position[item_id]]
        threshold = round_similarity(min_similarity)
        pairs = [
            (self._ids[j], float(row[j]))
            for j in np.flatnonzero(row >= threshold)
            if self._ids[j] != item_id and (eligible is None or self._ids[j] in eligible)
        ]
        return order_neighbors(pairs, k)


class VectorIndex(ABC):
    """Nearest-neighbor index over item embeddings."""

    @abstractmethod
    def build(self, ids: Sequence[int], vectors: np.ndarray) -> None:
        """Index the given vectors under the given ids."""

    @abstractmethod
    def query_neighbors(self, vector: np.ndarray, k: int,
                        min_similarity: float) -> List[Neighbor]:
        """Up to ``k`` indexed items with cosine similarity >= ``min_similarity``."""


class NearestNeighborsIndex(VectorIndex):
    """scikit-learn ``NearestNeighbors`` with the cosine metric."""

    def __init__(self):
        self._model: Optional[NearestNeighbors] = None
        self._ids: List[int] = []

    def build(self, ids: Sequence[int], vectors: np.ndarray) -> None:
        self._ids = list(ids)
        if not self._ids:
            self._model = None
            return
        try:
            model = NearestNeighbors(metric="cosine", algorithm="brute")
            model.fit(np.asarray(vectors, dtype=np.float64))
        except (ValueError, MemoryError) as e:
            self._model = None
            raise IndexUnavailable(f"failed to build nearest-neighbor index: {e}") from e
        self._model = model

    def query_neighbors(self, vector: np.ndarray, k: int,
                        min_similarity: float) -> List[Neighbor]:
        if self._model is None:
            raise IndexUnavailable("nearest-neighbor index has not been built")

        threshold = round_similarity(min_similarity)
        # Slightly wider radius; the exact cut happens on rounded similarities
        radius = max(0.0, 1.0 - threshold) + 1e-6
        try:
            distances, indices = self._model.radius_neighbors(
                np.asarray(vector, dtype=np.float64).reshape(1, -1),
                radius=radius,
            )
        except ValueError as e:
            raise IndexUnavailable(f"nearest-neighbor query failed: {e}") from e

        pairs = []
        for distance, j in zip(distances[0], indices[0]):
            similarity = round_similarity(1.0 - distance)
            if similarity >= threshold:
                pairs.append((self._ids[int(j)], similarity))
        return order_neighbors(pairs, k)

    def __len__(self) -> int:
        return len(self._ids)


class IndexSimilarity(SimilaritySource):
    """Neighbor lookup through a ``VectorIndex`` built over the candidate set."""

    def __init__(self, index: VectorIndex, ids: Sequence[int], vectors: np.ndarray):
        self._index = index
        self._candidates = set(ids)
        self._vectors: Dict[int, np.ndarray] = {
            item_id: np.asarray(vectors[i], dtype=np.float64)
            for i, item_id in enumerate(ids)
        }
        index.build(list(ids), np.asarray(vectors, dtype=np.float64))

    def neighbors(self, item_id: int, k: int, min_similarity: float,
                  eligible: Optional[AbstractSet[int]] = None) -> List[Neighbor]:
        # Every indexed item within the radius; eligibility is applied before the cut to k
        found = self._index.query_neighbors(
            self._vectors[item_id], len(self._candidates), min_similarity,
        )
        pairs = [
            (neighbor_id, similarity) for neighbor_id, similarity in found
            if neighbor_id != item_id and neighbor_id in self._candidates
            and (eligible is None or neighbor_id in eligible)
        ]
        return order_neighbors(pairs, k)
