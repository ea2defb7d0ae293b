"""Retrieval coordination and result clustering."""

from .clustering import cluster_results, split_clusters
from .hybrid import FulltextSearch, HybridSearch, SemanticSearch, merge_results

__all__ = [
    "cluster_results",
    "split_clusters",
    "FulltextSearch",
    "HybridSearch",
    "SemanticSearch",
    "merge_results",
]
