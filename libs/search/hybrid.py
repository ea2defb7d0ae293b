"""Semantic, lexical and hybrid retrieval over fragments."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from libs.core.exceptions import (
    DimensionMismatchError,
    ProviderUnavailableError,
    SearchUnavailableError,
)
from libs.core.models import ScoredFragment, SearchFilters, SearchWeights
from libs.core.settings import get_settings
from libs.db.repositories import FragmentRepo
from libs.llm.embeddings_provider import EmbeddingsProvider
from libs.rag.similarity import rank_by_similarity
from libs.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

# Candidates requested from the ANN index per requested result, to leave
# room for filters applied afterwards
CANDIDATE_FACTOR = 3


class SemanticSearch:
    """Embed the query, fetch ANN candidates, rescore with exact cosine."""

    def __init__(
        self,
        embeddings: EmbeddingsProvider,
        index: Optional[VectorIndex],
        fragment_repo: FragmentRepo,
        timeout: float | None = None,
    ) -> None:
        self.embeddings = embeddings
        self.index = index
        self.fragment_repo = fragment_repo
        self.timeout = timeout if timeout is not None else get_settings().provider_timeout

    async def __call__(
        self, query: str, filters: SearchFilters, user_id: str, limit: int
    ) -> List[ScoredFragment]:
        if self.index is None:
            raise ProviderUnavailableError("Vector index is not configured")
        query_vec = await self.embeddings.aembed(query)
        return await self.search_by_vector(query_vec, filters, user_id, limit)

    async def search_by_vector(
        self,
        query_vec: Sequence[float],
        filters: SearchFilters,
        user_id: str,
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[ScoredFragment]:
        if self.index is None:
            raise ProviderUnavailableError("Vector index is not configured")
        try:
            hits = await asyncio.wait_for(
                asyncio.to_thread(
                    self.index.search,
                    list(query_vec),
                    limit * CANDIDATE_FACTOR,
                    user_id,
                    exclude_id,
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            raise ProviderUnavailableError(f"Vector index search failed: {exc}") from exc

        ids = [h["fragment_id"] for h in hits if h.get("fragment_id") != exclude_id]
        fragments = await self.fragment_repo.filter_visible(ids, filters, user_id)
        ranked = rank_by_similarity(
            query_vec,
            fragments,
            lambda f: f.embedding,
            limit=limit,
            min_similarity=filters.min_similarity,
        )
        return [ScoredFragment.from_fragment(f, score, "semantic") for f, score in ranked]


class FulltextSearch:
    """PostgreSQL full-text search with a rank-position relevance score.

    The hit at position ``i`` of ``n`` scores ``1 - i/n``; the database
    orders hits by ``ts_rank_cd`` so the best match always scores 1.0.
    """

    def __init__(self, fragment_repo: FragmentRepo) -> None:
        self.fragment_repo = fragment_repo

    async def __call__(
        self, query: str, filters: SearchFilters, user_id: str, limit: int
    ) -> List[ScoredFragment]:
        try:
            rows = await self.fragment_repo.fulltext_search(query, filters, user_id, limit)
        except SQLAlchemyError as exc:
            raise ProviderUnavailableError(f"Full-text search failed: {exc}") from exc
        n = len(rows)
        return [
            ScoredFragment.from_fragment(f, 1 - i / n, "fulltext")
            for i, f in enumerate(rows)
        ]


def merge_results(
    vector_hits: Sequence[ScoredFragment],
    lexical_hits: Sequence[ScoredFragment],
    weights: SearchWeights,
    limit: int,
) -> List[ScoredFragment]:
    """Blend both result lists additively and keep the top ``limit``.

    Ties are broken by recency so the order is deterministic.
    """
    merged: Dict[str, ScoredFragment] = {}
    for hit in vector_hits:
        merged[hit.id] = hit.model_copy(update={"score": hit.score * weights.vector})
    for hit in lexical_hits:
        existing = merged.get(hit.id)
        if existing is not None:
            existing.score += hit.score * weights.fulltext
            existing.search_method = "hybrid"
        else:
            merged[hit.id] = hit.model_copy(
                update={"score": hit.score * weights.fulltext}
            )
    ordered = sorted(
        merged.values(), key=lambda f: (f.score, f.created_at), reverse=True
    )
    return ordered[:limit]


class HybridSearch:
    """Run semantic and lexical search and merge them into one ranking.

    Either method may fail on its own; the other one's results are then
    returned alone. Only when both fail is :class:`SearchUnavailableError`
    raised.
    """

    def __init__(
        self,
        semantic: SemanticSearch,
        fulltext: FulltextSearch,
        weights: SearchWeights | None = None,
    ) -> None:
        self.semantic = semantic
        self.fulltext = fulltext
        if weights is None:
            settings = get_settings()
            weights = SearchWeights(
                vector=settings.search_vector_weight,
                fulltext=settings.search_fulltext_weight,
            )
        self.weights = weights

    async def _run(self, method: str, search, query: str, filters: SearchFilters, user_id: str, limit: int):
        try:
            return await search(query, filters, user_id, limit)
        except DimensionMismatchError:
            raise
        except Exception as exc:
            logger.warning(
                "search_method_failed",
                extra={"method": method, "reason": str(exc), "error_class": type(exc).__name__},
            )
            return None

    async def __call__(
        self,
        query: str,
        filters: SearchFilters,
        user_id: str,
        limit: int = 10,
        weights: SearchWeights | None = None,
    ) -> List[ScoredFragment]:
        weights = weights or self.weights
        # Both methods share the request's DB session, so they run one after
        # the other; neither writes, so the order does not affect the result.
        vector_hits = await self._run("semantic", self.semantic, query, filters, user_id, limit * 2)
        lexical_hits = await self._run("fulltext", self.fulltext, query, filters, user_id, limit * 2)
        if vector_hits is None and lexical_hits is None:
            raise SearchUnavailableError("Both semantic and full-text search failed")
        results = merge_results(vector_hits or [], lexical_hits or [], weights, limit)
        logger.info(
            "hybrid_search",
            extra={
                "vector_hits": len(vector_hits or []),
                "lexical_hits": len(lexical_hits or []),
                "returned": len(results),
            },
        )
        return results


__all__ = ["SemanticSearch", "FulltextSearch", "HybridSearch", "merge_results"]
