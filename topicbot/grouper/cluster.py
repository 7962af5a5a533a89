"""Greedy seed-and-grow clustering of embedded news items.

Seeds are taken freshest first. A cluster grows breadth-first through the
neighbors of its members, admitting a candidate only while its similarity to
the running centroid stays at or above the threshold and the cluster has room.
Clusters that end below the minimum size are dissolved and their items retried
in a second pass.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from topicbot.core.config import ClusteringConfig
from topicbot.core.entities import NewsItemRecord
from topicbot.core.errors import IndexUnavailable, SkippedInput
from topicbot.core.logging import get_logger
from topicbot.core.time import ensure_utc
from topicbot.grouper.similarity import (
    BruteForceSimilarity,
    IndexSimilarity,
    SimilaritySource,
    VectorIndex,
    round_similarity,
)

logger = get_logger(__name__)


@dataclass
class ClusterResult:
    """Outcome of one clustering pass."""
    clusters: List[List[int]] = field(default_factory=list)  # members most recent first
    skipped: List[SkippedInput] = field(default_factory=list)
    unclustered: List[int] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def clustered_count(self) -> int:
        return sum(len(c) for c in self.clusters)


class _Cluster:
    """Member list plus the running (unnormalized) centroid sum."""

    def __init__(self, seed: int, vector: np.ndarray):
        self.members = [seed]
        self.total = vector.copy()

    def add(self, item_id: int, vector: np.ndarray) -> None:
        self.members.append(item_id)
        self.total += vector

    def similarity(self, vector: np.ndarray) -> float:
        norm = np.linalg.norm(self.total)
        if norm == 0:
            return 0.0
        return round_similarity(np.dot(self.total, vector) / norm)

    def __len__(self) -> int:
        return len(self.members)


class TopicClusterer:
    """Partition a candidate set of embedded items into topic-sized groups."""

    def __init__(self, config: ClusteringConfig, index: Optional[VectorIndex] = None):
        self.config = config
        self.index = index

    def cluster(self, items: Iterable[NewsItemRecord]) -> ClusterResult:
        """
        Cluster items by embedding similarity.

        Items without a usable embedding are reported in ``skipped``. If the
        vector index is missing or fails, the pairwise path is used instead
        and the membership is the same.

        Args:
            items: Candidate news items

        Returns:
            ClusterResult with clusters ordered by creation
        """
        result = ClusterResult()
        ordered, vectors = self._prepare(items, result.skipped)
        if not ordered:
            logger.info("No clusterable items in candidate set")
            return result

        ids = [item.id for item in ordered]
        matrix = np.stack([vectors[item_id] for item_id in ids])

        source: SimilaritySource
        try:
            if self.index is None:
                raise IndexUnavailable("no vector index configured")
            source = IndexSimilarity(self.index, ids, matrix)
            clusters, unclustered = self._run(ids, vectors, source)
        except IndexUnavailable as e:
            logger.warning(f"Similarity index unavailable ({e}), using pairwise fallback")
            source = BruteForceSimilarity(ids, matrix)
            clusters, unclustered = self._run(ids, vectors, source)
            result.used_fallback = source.is_fallback

        rank = {item_id: position for position, item_id in enumerate(ids)}
        result.clusters = [sorted(members, key=rank.__getitem__) for members in clusters]
        result.unclustered = sorted(unclustered, key=rank.__getitem__)

        logger.info(
            f"Clustered {result.clustered_count} of {len(ids)} items into "
            f"{len(result.clusters)} clusters ({len(result.skipped)} skipped, "
            f"{len(result.unclustered)} unclustered, fallback={result.used_fallback})"
        )
        return result

    def _prepare(self, items: Iterable[NewsItemRecord],
                 skipped: List[SkippedInput]) -> Tuple[List[NewsItemRecord], Dict[int, np.ndarray]]:
        """Validate embeddings and sort by (published desc, id asc)."""
        valid = []
        vectors: Dict[int, np.ndarray] = {}

        for item in items:
            if item.id in vectors:
                skipped.append(SkippedInput(item.id, "duplicate item id"))
                continue
            reason = None
            vector = None
            if item.embedding is None:
                reason = "missing embedding"
            else:
                try:
                    vector = np.asarray(item.embedding, dtype=np.float64)
                except (TypeError, ValueError):
                    reason = "malformed embedding"
                else:
                    if vector.ndim != 1 or vector.shape[0] != self.config.dimension:
                        reason = f"embedding dimension {vector.shape} != {self.config.dimension}"
                    elif not np.all(np.isfinite(vector)):
                        reason = "non-finite embedding values"
                    elif np.linalg.norm(vector) == 0:
                        reason = "zero-norm embedding"

            if reason is not None:
                logger.warning(f"Skipping item {item.id}: {reason}")
                skipped.append(SkippedInput(item.id, reason))
                continue

            vectors[item.id] = vector / np.linalg.norm(vector)
            valid.append(item)

        valid.sort(key=lambda item: (-ensure_utc(item.published_at).timestamp(), item.id))
        return valid, vectors

    def _grow(self, seed: int, vectors: Dict[int, np.ndarray], source: SimilaritySource,
              eligible: Set[int]) -> _Cluster:
        """Breadth-first growth from ``seed`` over ``eligible`` items."""
        threshold = self.config.threshold
        cluster = _Cluster(seed, vectors[seed])
        # Eligible items not yet considered for this cluster
        open_ids = set(eligible)
        open_ids.discard(seed)
        queue = deque([seed])

        while queue and open_ids and len(cluster) < self.config.max_size:
            current = queue.popleft()
            found = source.neighbors(current, self.config.candidate_limit, threshold, eligible=open_ids)
            for neighbor_id, _ in found:
                if len(cluster) >= self.config.max_size:
                    break
                open_ids.discard(neighbor_id)
                if cluster.similarity(vectors[neighbor_id]) >= threshold:
                    cluster.add(neighbor_id, vectors[neighbor_id])
                    queue.append(neighbor_id)
        return cluster

    def _run(self, ids: Sequence[int], vectors: Dict[int, np.ndarray],
             source: SimilaritySource) -> Tuple[List[List[int]], List[int]]:
        min_size = self.config.min_size
        unassigned = set(ids)
        accepted: List[_Cluster] = []

        for seed in ids:
            if seed not in unassigned:
                continue
            cluster = self._grow(seed, vectors, source, unassigned)
            if len(cluster) >= min_size:
                accepted.append(cluster)
                unassigned.difference_update(cluster.members)

        leftovers = [item_id for item_id in ids if item_id in unassigned]
        if leftovers:
            logger.debug(f"Second pass over {len(leftovers)} items from dissolved clusters")
            leftovers = self._join_existing(leftovers, vectors, accepted)

        unclustered = []
        remaining = set(leftovers)
        for seed in leftovers:
            if seed not in remaining:
                continue
            cluster = self._grow(seed, vectors, source, remaining)
            if len(cluster) >= min_size:
                accepted.append(cluster)
                remaining.difference_update(cluster.members)
            else:
                remaining.discard(seed)
                unclustered.append(seed)

        return [cluster.members for cluster in accepted], unclustered

    def _join_existing(self, leftovers: List[int], vectors: Dict[int, np.ndarray],
                       accepted: List[_Cluster]) -> List[int]:
        """Attach leftovers to the most similar accepted cluster with room."""
        still_left = []
        for item_id in leftovers:
            best: Optional[_Cluster] = None
            best_similarity = None
            for cluster in accepted:
                if len(cluster) >= self.config.max_size:
                    continue
                similarity = cluster.similarity(vectors[item_id])
                if similarity < self.config.threshold:
                    continue
                if best_similarity is None or similarity > best_similarity:
                    best, best_similarity = cluster, similarity
            if best is None:
                still_left.append(item_id)
            else:
                best.add(item_id, vectors[item_id])
        return still_left


def cluster_items(items: Iterable[NewsItemRecord], threshold: float, min_size: int,
                  max_size: int, dimension: Optional[int] = None,
                  index: Optional[VectorIndex] = None) -> List[Set[int]]:
    """
    Cluster items with explicit parameters.

    Returns:
        One set of item ids per cluster
    """
    items = list(items)
    if dimension is None:
        dimension = next(
            (len(item.embedding) for item in items
             if isinstance(item.embedding, (list, tuple, np.ndarray))),
            ClusteringConfig.dimension,
        )
    config = ClusteringConfig(
        threshold=threshold, min_size=min_size, max_size=max_size, dimension=dimension,
    )
    result = TopicClusterer(config, index=index).cluster(items)
    return [set(members) for members in result.clusters]
