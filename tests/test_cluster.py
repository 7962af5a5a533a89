"""Tests for the clustering engine."""

import math

import numpy as np
import pytest

from topicbot.core.config import ClusteringConfig
from topicbot.core.errors import IndexUnavailable
from topicbot.grouper.cluster import TopicClusterer, cluster_items
from topicbot.grouper.similarity import (
    BruteForceSimilarity,
    IndexSimilarity,
    NearestNeighborsIndex,
    VectorIndex,
)
from tests.conftest import make_item


def unit(*values):
    v = np.asarray(values, dtype=float)
    return (v / np.linalg.norm(v)).tolist()


def at_similarity(similarity):
    """2D unit vector whose cosine with (1, 0) is ``similarity``."""
    return [similarity, math.sqrt(1 - similarity ** 2)]


class FailingIndex(VectorIndex):
    """Index whose queries always fail."""

    def build(self, ids, vectors):
        pass

    def query_neighbors(self, vector, k, min_similarity):
        raise IndexUnavailable("index offline")


@pytest.fixture
def abc_items():
    """A and B are 0.9 similar; C is 0.3 similar to A and 0.27 to B."""
    return [
        make_item(1, [1.0, 0.0, 0.0], hours_ago=1),
        make_item(2, [0.9, math.sqrt(1 - 0.81), 0.0], hours_ago=2),
        make_item(3, [0.3, 0.0, math.sqrt(1 - 0.09)], hours_ago=3),
    ]


def clustered_vectors(seed=7, centers=5, per_center=8, dim=16, noise=0.15):
    rng = np.random.default_rng(seed)
    items = []
    item_id = 1
    for _ in range(centers):
        center = rng.normal(size=dim)
        for _ in range(per_center):
            vector = center + rng.normal(scale=noise * np.linalg.norm(center), size=dim)
            items.append(make_item(item_id, vector.tolist(), hours_ago=float(rng.integers(0, 48))))
            item_id += 1
    return items


def test_similar_pair_and_outlier(abc_items):
    """A,B at 0.9 and C at 0.3 give {A,B} and {C}."""
    clusters = cluster_items(abc_items, threshold=0.65, min_size=1, max_size=20)

    assert clusters == [{1, 2}, {3}]


def test_index_path_matches_example(abc_items):
    config = ClusteringConfig(threshold=0.65, min_size=1, max_size=20, dimension=3)
    result = TopicClusterer(config, index=NearestNeighborsIndex()).cluster(abc_items)

    assert result.clusters == [[1, 2], [3]]
    assert result.used_fallback is False
    assert result.skipped == []


def test_threshold_is_inclusive():
    items = [
        make_item(1, [1.0, 0.0], hours_ago=1),
        make_item(2, at_similarity(0.65), hours_ago=2),
    ]

    assert cluster_items(items, threshold=0.65, min_size=1, max_size=20) == [{1, 2}]
    assert cluster_items(items, threshold=0.66, min_size=1, max_size=20) == [{1}, {2}]


def test_empty_candidate_set():
    assert cluster_items([], threshold=0.65, min_size=1, max_size=20) == []


def test_invalid_embeddings_are_skipped():
    items = [
        make_item(1, [1.0, 0.0, 0.0], hours_ago=1),
        make_item(2, None, hours_ago=2),
        make_item(3, [0.0, 0.0, 0.0], hours_ago=3),
        make_item(4, [1.0, 0.0], hours_ago=4),
        make_item(5, [float("nan"), 1.0, 0.0], hours_ago=5),
        make_item(6, [0.99, 0.1, 0.0], hours_ago=6),
    ]
    config = ClusteringConfig(threshold=0.65, min_size=1, max_size=20, dimension=3)

    result = TopicClusterer(config).cluster(items)

    assert result.clusters == [[1, 6]]
    skipped = {s.item_id: s.reason for s in result.skipped}
    assert set(skipped) == {2, 3, 4, 5}
    assert skipped[2] == "missing embedding"
    assert skipped[3] == "zero-norm embedding"
    assert "dimension" in skipped[4]
    assert skipped[5] == "non-finite embedding values"


def test_max_size_is_respected():
    items = [make_item(i, unit(1.0, 0.01 * i, 0.0), hours_ago=i) for i in range(1, 8)]
    config = ClusteringConfig(threshold=0.65, min_size=1, max_size=3, dimension=3)

    result = TopicClusterer(config).cluster(items)

    assert [len(c) for c in result.clusters] == [3, 3, 1]
    assert sorted(i for c in result.clusters for i in c) == list(range(1, 8))


def test_freshest_items_anchor_clusters():
    # Singleton clusters expose the seed order directly
    items = [
        make_item(10, [1.0, 0.0], hours_ago=5),
        make_item(11, [1.0, 0.0], hours_ago=1),
        make_item(12, [1.0, 0.0], hours_ago=3),
    ]
    config = ClusteringConfig(threshold=0.65, min_size=1, max_size=1, dimension=2)

    result = TopicClusterer(config).cluster(items)

    assert result.clusters == [[11], [12], [10]]


def test_seed_ties_break_on_lower_id():
    items = [
        make_item(8, [1.0, 0.0], hours_ago=2),
        make_item(3, [1.0, 0.0], hours_ago=2),
        make_item(5, [1.0, 0.0], hours_ago=2),
    ]
    config = ClusteringConfig(threshold=0.65, min_size=1, max_size=1, dimension=2)

    result = TopicClusterer(config).cluster(items)

    assert result.clusters == [[3], [5], [8]]


def test_min_size_dissolves_small_clusters():
    items = [
        make_item(1, [1.0, 0.0, 0.0], hours_ago=1),
        make_item(2, [0.0, 0.0, 1.0], hours_ago=2),
        make_item(3, unit(0.95, 0.05, 0.0), hours_ago=3),
    ]
    config = ClusteringConfig(threshold=0.65, min_size=2, max_size=20, dimension=3)

    result = TopicClusterer(config).cluster(items)

    assert result.clusters == [[1, 3]]
    assert result.unclustered == [2]


def test_centroid_stops_chained_growth():
    # B is close to A and C is close to B, but C drifts too far from the A+B centroid
    items = [
        make_item(1, [1.0, 0.0], hours_ago=1),
        make_item(2, at_similarity(0.8), hours_ago=2),
        make_item(3, at_similarity(0.3), hours_ago=3),
    ]
    b = np.asarray(items[1].embedding)
    c = np.asarray(items[2].embedding)
    assert float(b @ c) >= 0.65

    assert cluster_items(items, threshold=0.65, min_size=1, max_size=20) == [{1, 2}, {3}]


@pytest.mark.parametrize("min_size,max_size", [(1, 20), (1, 3), (2, 5), (3, 4)])
def test_every_valid_item_accounted_for_once(min_size, max_size):
    items = clustered_vectors()
    config = ClusteringConfig(threshold=0.7, min_size=min_size, max_size=max_size, dimension=16)

    result = TopicClusterer(config).cluster(items)

    seen = [i for c in result.clusters for i in c] + result.unclustered
    assert sorted(seen) == sorted(item.id for item in items)
    assert all(min_size <= len(c) <= max_size for c in result.clusters)
    if min_size == 1:
        assert result.unclustered == []


@pytest.mark.parametrize("seed,threshold,max_size", [(7, 0.7, 20), (11, 0.8, 4), (3, 0.6, 6)])
def test_index_and_fallback_paths_agree(seed, threshold, max_size):
    items = clustered_vectors(seed=seed)
    config = ClusteringConfig(threshold=threshold, min_size=1, max_size=max_size, dimension=16)

    with_index = TopicClusterer(config, index=NearestNeighborsIndex()).cluster(items)
    fallback = TopicClusterer(config).cluster(items)

    assert with_index.used_fallback is False
    assert fallback.used_fallback is True
    assert with_index.clusters == fallback.clusters


def test_index_outage_falls_back_transparently():
    items = clustered_vectors(seed=5)
    config = ClusteringConfig(threshold=0.7, min_size=1, max_size=20, dimension=16)

    failing = TopicClusterer(config, index=FailingIndex()).cluster(items)
    healthy = TopicClusterer(config, index=NearestNeighborsIndex()).cluster(items)

    assert failing.used_fallback is True
    assert failing.clusters == healthy.clusters


def test_similarity_sources_return_same_neighbors():
    items = clustered_vectors(seed=9, centers=3, per_center=5)
    ids = [item.id for item in items]
    matrix = np.asarray([item.embedding for item in items])

    brute = BruteForceSimilarity(ids, matrix)
    indexed = IndexSimilarity(NearestNeighborsIndex(), ids, matrix)

    for item_id in ids:
        assert indexed.neighbors(item_id, 50, 0.5) == brute.neighbors(item_id, 50, 0.5)
        assert all(other != item_id for other, _ in brute.neighbors(item_id, 50, 0.5))


def test_unbuilt_index_is_unavailable():
    with pytest.raises(IndexUnavailable):
        NearestNeighborsIndex().query_neighbors([1.0, 0.0], 5, 0.5)


@pytest.mark.parametrize("index", [None, NearestNeighborsIndex()], ids=["pairwise", "index"])
@pytest.mark.parametrize("candidate_limit", [3, 50])
def test_dense_story_fills_clusters(index, candidate_limit):
    """100 copies of one story split into full clusters, never singletons."""
    items = [make_item(i, [1.0, 0.0, 0.0], hours_ago=i) for i in range(1, 101)]
    config = ClusteringConfig(threshold=0.65, min_size=1, max_size=20,
                              candidate_limit=candidate_limit, dimension=3)

    result = TopicClusterer(config, index=index).cluster(items)

    assert result.used_fallback is (index is None)
    assert result.clusters == [list(range(start, start + 20)) for start in range(1, 101, 20)]
    assert result.unclustered == []


def test_neighbors_are_filtered_before_the_cut():
    ids = list(range(1, 11))
    matrix = np.tile([1.0, 0.0], (10, 1))
    eligible = {8, 9, 10}

    brute = BruteForceSimilarity(ids, matrix)
    indexed = IndexSimilarity(NearestNeighborsIndex(), ids, matrix)

    for source in (brute, indexed):
        assert source.neighbors(1, 2, 0.9) == [(2, 1.0), (3, 1.0)]
        assert source.neighbors(1, 2, 0.9, eligible=eligible) == [(8, 1.0), (9, 1.0)]
