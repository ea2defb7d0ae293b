"""Vector storage and similarity primitives."""

from .similarity import cosine_similarity, rank_by_similarity
from .vector_index import VectorIndex

__all__ = ["cosine_similarity", "rank_by_similarity", "VectorIndex"]
