from __future__ import annotations

from typing import List

from libs.core.exceptions import ForbiddenError, NotFoundError, NotReadyError
from libs.core.models import FragmentStatus, ScoredFragment, SearchFilters
from libs.db.repositories import FragmentRepo
from libs.search.hybrid import SemanticSearch


class FindSimilar:
    """Return fragments semantically close to an existing fragment."""

    def __init__(self, fragment_repo: FragmentRepo, semantic: SemanticSearch) -> None:
        self.fragment_repo = fragment_repo
        self.semantic = semantic

    # ------------------------------------------------------------------
    async def __call__(
        self, fragment_id: str, user_id: str, limit: int = 10
    ) -> List[ScoredFragment]:
        fragment = await self.fragment_repo.get(fragment_id)
        if fragment is None:
            raise NotFoundError(f"Fragment {fragment_id} not found")
        if not fragment.visible_to(user_id):
            raise ForbiddenError("Access denied")
        if fragment.status != FragmentStatus.READY or fragment.embedding is None:
            raise NotReadyError("Fragment has no embedding yet", status=fragment.status.value)
        # The source fragment's stored vector is the query; no re-embedding
        return await self.semantic.search_by_vector(
            fragment.embedding,
            SearchFilters(),
            user_id,
            limit,
            exclude_id=fragment.id,
        )


__all__ = ["FindSimilar"]
