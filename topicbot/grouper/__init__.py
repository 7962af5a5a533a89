"""Topic grouping package.

This package contains modules for:
- Neighbor lookup over embeddings (similarity.py)
- Seed-and-grow clustering (cluster.py)
- Cluster categorization through the generator (categorizer.py)
- Processing run orchestration (pipeline.py)
"""

from .categorizer import TopicCategorizer
from .cluster import ClusterResult, TopicClusterer, cluster_items
from .similarity import (
    BruteForceSimilarity,
    IndexSimilarity,
    NearestNeighborsIndex,
    SimilaritySource,
    VectorIndex,
)
