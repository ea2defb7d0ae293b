"""Hybrid search enriched with clusters, suggestions, analytics and insights."""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from libs.core.models import (
    AdvancedSearchOptions,
    AdvancedSearchResult,
    Fragment,
    ScoredFragment,
    SearchAnalytics,
    SearchFilters,
    SearchInsights,
    SearchSuggestion,
)
from libs.db.repositories import FragmentRepo
from libs.search.clustering import split_clusters, time_span
from libs.search.hybrid import HybridSearch

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10
SUGGESTION_SAMPLE = 100
SEASONS = ("winter", "spring", "summer", "fall")
POSITIVE_EMOTIONS = ("joy", "happiness", "love", "excitement", "gratitude", "hope")
NEGATIVE_EMOTIONS = ("sadness", "anger", "fear", "anxiety", "disappointment")


def _popular(values: Sequence[str], top: int) -> List[tuple]:
    return [(v, c) for v, c in Counter(values).most_common(top) if c >= 2]


def popular_suggestions(fragments: Sequence[Fragment]) -> List[SearchSuggestion]:
    """Themes and emotions that recur across the user's own fragments."""
    if not fragments:
        return []
    total = len(fragments)
    out: List[SearchSuggestion] = []
    for theme, count in _popular([t for f in fragments for t in f.themes], 5):
        out.append(
            SearchSuggestion(
                type="theme",
                value=theme,
                confidence=min(0.9, count / total * 2),
                context=f"Found in {count} of your stories",
                count=count,
            )
        )
    for emotion, count in _popular([e for f in fragments for e in f.emotions], 3):
        out.append(
            SearchSuggestion(
                type="emotion",
                value=emotion,
                confidence=min(0.8, count / total * 2),
                context=f"Appears in {count} memories",
                count=count,
            )
        )
    return out


def query_suggestions(query: str) -> List[SearchSuggestion]:
    query = query.strip()
    if len(query) <= 3:
        return []
    variants = [f"{query} memories", f"childhood {query}", f"recent {query}"]
    return [
        SearchSuggestion(type="query", value=v, confidence=0.7, context="Related search")
        for v in variants
        if v != query
    ]


def time_suggestions(now: Optional[datetime] = None) -> List[SearchSuggestion]:
    now = now or datetime.now(timezone.utc)
    season = SEASONS[(now.month - 1) // 3]
    return [
        SearchSuggestion(
            type="time",
            value="recent memories",
            confidence=0.6,
            context="Explore what you've written recently",
        ),
        SearchSuggestion(
            type="time",
            value=f"{season} memories",
            confidence=0.5,
            context=f"Current season: {season}",
        ),
    ]


def search_analytics(results: Sequence[ScoredFragment], elapsed_ms: int) -> SearchAnalytics:
    methods = Counter(r.search_method for r in results)
    if methods["semantic"] > methods["fulltext"]:
        method = "semantic"
    elif methods["fulltext"] > methods["semantic"]:
        method = "fulltext"
    else:
        method = "hybrid"
    relevance = sum(r.score for r in results) / len(results) if results else 0.0
    return SearchAnalytics(
        total_results=len(results),
        search_time_ms=elapsed_ms,
        method=method,
        relevance_score=round(relevance, 2),
    )


def emotional_tone(results: Sequence[Fragment]) -> str:
    emotions = [e.lower() for r in results for e in r.emotions]
    if not emotions:
        return "neutral"
    positive = sum(1 for e in emotions if any(p in e for p in POSITIVE_EMOTIONS))
    negative = sum(1 for e in emotions if any(n in e for n in NEGATIVE_EMOTIONS))
    if positive > negative * 1.5:
        return "positive"
    if negative > positive * 1.5:
        return "negative"
    return "mixed"


def search_insights(results: Sequence[ScoredFragment]) -> SearchInsights:
    if not results:
        return SearchInsights()

    patterns: List[str] = []
    if len(results) > 5:
        patterns.append("Rich collection of memories")
    span = time_span(results)
    if span is not None:
        days = (span.end - span.start).days
        if days > 365:
            patterns.append("Spans multiple years")
        elif days > 30:
            patterns.append("Covers several months")
    common = [t for t, c in Counter(t for r in results for t in r.themes).most_common() if c >= 2]
    if common:
        patterns.append(f"Common themes: {', '.join(common[:2])}")

    themes: List[str] = []
    for r in results:
        for t in r.themes:
            if t not in themes:
                themes.append(t)

    distribution: Dict[str, int] = {}
    for r in results:
        year = str(r.created_at.year)
        distribution[year] = distribution.get(year, 0) + 1

    return SearchInsights(
        patterns=patterns,
        themes=themes[:5],
        time_distribution=distribution,
        emotional_tone=emotional_tone(results),
    )


class AdvancedSearch:
    """Run hybrid search and decorate the results for exploration UIs."""

    def __init__(self, hybrid: HybridSearch, fragment_repo: FragmentRepo) -> None:
        self.hybrid = hybrid
        self.fragment_repo = fragment_repo

    async def _suggestions(self, query: str, user_id: str) -> List[SearchSuggestion]:
        try:
            own = await self.fragment_repo.list_by_user(user_id, limit=SUGGESTION_SAMPLE)
        except SQLAlchemyError as exc:
            logger.warning("suggestions_failed", extra={"user_id": user_id, "reason": str(exc)})
            own = []
        suggestions = popular_suggestions(own) + query_suggestions(query) + time_suggestions()
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions[:MAX_SUGGESTIONS]

    # ------------------------------------------------------------------
    async def __call__(
        self,
        query: str,
        filters: SearchFilters,
        user_id: str,
        options: AdvancedSearchOptions | None = None,
    ) -> AdvancedSearchResult:
        options = options or AdvancedSearchOptions()
        started = time.perf_counter()

        results = await self.hybrid(query, filters, user_id, options.limit)
        if options.include_clustering:
            clusters, individual = split_clusters(results)
        else:
            clusters, individual = [], list(results)
        suggestions = (
            await self._suggestions(query, user_id) if options.include_suggestions else []
        )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if options.include_analytics:
            analytics = search_analytics(results, elapsed_ms)
        else:
            analytics = SearchAnalytics(
                total_results=len(results),
                search_time_ms=elapsed_ms,
                method="hybrid",
                relevance_score=0.0,
            )
        logger.info(
            "advanced_search",
            extra={
                "user_id": user_id,
                "results": len(results),
                "clusters": len(clusters),
                "elapsed_ms": elapsed_ms,
            },
        )
        return AdvancedSearchResult(
            fragments=results,
            clusters=clusters,
            individual=individual,
            suggestions=suggestions,
            analytics=analytics,
            insights=search_insights(results),
        )


__all__ = [
    "AdvancedSearch",
    "popular_suggestions",
    "query_suggestions",
    "time_suggestions",
    "search_analytics",
    "search_insights",
    "emotional_tone",
]
