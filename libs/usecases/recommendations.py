from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml

from libs.core.exceptions import ProviderUnavailableError
from libs.core.models import FragmentStatus, Recommendation, SearchFilters
from libs.db.repositories import FragmentRepo
from libs.search.hybrid import SemanticSearch

logger = logging.getLogger(__name__)

# Neighbours fetched per requested recommendation; the caller's own
# fragments are dropped afterwards
OVERFETCH = 3


class RecommendationSource(ABC):
    """Produces fragment recommendations for a user."""

    @abstractmethod
    async def recommend(self, user_id: str, limit: int = 10) -> List[Recommendation]:
        """Return at most ``limit`` recommendations, best first."""


class LiveRecommendationSource(RecommendationSource):
    """Recommend other users' fragments similar to the caller's latest ones."""

    def __init__(
        self, fragment_repo: FragmentRepo, semantic: SemanticSearch, seeds: int = 3
    ) -> None:
        self.fragment_repo = fragment_repo
        self.semantic = semantic
        self.seeds = seeds

    async def recommend(self, user_id: str, limit: int = 10) -> List[Recommendation]:
        seeds = await self.fragment_repo.list_by_user(
            user_id, limit=self.seeds, status=FragmentStatus.READY
        )
        best: Dict[str, Recommendation] = {}
        for seed in seeds:
            if seed.embedding is None:
                continue
            try:
                similar = await self.semantic.search_by_vector(
                    seed.embedding,
                    SearchFilters(),
                    user_id,
                    limit * OVERFETCH,
                    exclude_id=seed.id,
                )
            except ProviderUnavailableError as exc:
                logger.warning(
                    "recommendation_seed_failed",
                    extra={"seed_id": seed.id, "reason": str(exc)},
                )
                continue
            for hit in similar:
                if hit.user_id == user_id:
                    continue
                current = best.get(hit.id)
                if current is None or hit.score > current.score:
                    best[hit.id] = Recommendation(
                        fragment_id=hit.id,
                        title=hit.title,
                        score=hit.score,
                        reason=f'Similar to your story "{seed.title}"',
                    )
        ranked = sorted(best.values(), key=lambda r: r.score, reverse=True)
        return ranked[:limit]


class FixtureRecommendationSource(RecommendationSource):
    """Serve a static list of recommendations from a YAML file."""

    def __init__(
        self,
        path: Optional[Path] = None,
        items: Optional[Sequence[Recommendation]] = None,
    ) -> None:
        if items is None:
            if path is None:
                raise ValueError("Either path or items must be provided")
            items = self._load(Path(path))
        self.items = sorted(items, key=lambda r: r.score, reverse=True)

    @staticmethod
    def _load(path: Path) -> List[Recommendation]:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        return [Recommendation.model_validate(e) for e in data.get("recommendations", [])]

    async def recommend(self, user_id: str, limit: int = 10) -> List[Recommendation]:
        return list(self.items[:limit])


__all__ = [
    "RecommendationSource",
    "LiveRecommendationSource",
    "FixtureRecommendationSource",
]
