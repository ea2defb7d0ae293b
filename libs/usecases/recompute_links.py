from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from libs.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    NotReadyError,
    ProviderUnavailableError,
)
from libs.core.models import (
    Fragment,
    FragmentStatus,
    LinkDraft,
    LinkType,
    RecomputeResult,
    SearchFilters,
)
from libs.core.settings import Settings, get_settings
from libs.db.repositories import AuditRepo, FragmentRepo, LinkRepo
from libs.search.hybrid import SemanticSearch

from .link_rules import compute_rule_links

logger = logging.getLogger(__name__)


class RecomputeLinks:
    """Replace every link of a fragment with freshly computed ones.

    Runs inside the caller's transaction while holding a per-fragment
    advisory lock, so concurrent recomputes of one fragment cannot
    interleave their delete and insert phases.
    """

    def __init__(
        self,
        fragment_repo: FragmentRepo,
        link_repo: LinkRepo,
        audit_repo: AuditRepo,
        semantic: Optional[SemanticSearch],
        settings: Settings | None = None,
    ) -> None:
        self.fragment_repo = fragment_repo
        self.link_repo = link_repo
        self.audit_repo = audit_repo
        self.semantic = semantic
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    async def __call__(self, fragment_id: str, user_id: str) -> RecomputeResult:
        fragment = await self.fragment_repo.get(fragment_id)
        if fragment is None:
            raise NotFoundError(f"Fragment {fragment_id} not found")
        if not fragment.visible_to(user_id):
            raise ForbiddenError("Access denied")
        if fragment.status != FragmentStatus.READY:
            raise NotReadyError(
                "Fragment is not ready for linking", status=fragment.status.value
            )

        await self.link_repo.lock(fragment.id)
        removed = await self.link_repo.delete_for_fragment(fragment.id)

        drafts: Dict[Tuple[str, LinkType], LinkDraft] = {}
        for draft in await self._semantic_links(fragment) + await self._rule_links(fragment):
            drafts[(draft.to_id, draft.type)] = draft
        await self.link_repo.bulk_create(fragment.id, drafts.values())

        links = await self.link_repo.list_from(fragment.id)
        logger.info(
            "links_recomputed",
            extra={
                "fragment_id": fragment.id,
                "actor": user_id,
                "removed": removed,
                "created": len(links),
            },
        )
        await self._audit(user_id, fragment.id, len(links))
        return RecomputeResult(links_created=len(links), links=links)

    # ------------------------------------------------------------------
    async def _semantic_links(self, fragment: Fragment) -> List[LinkDraft]:
        if self.semantic is None or fragment.embedding is None:
            logger.info("semantic_links_skipped", extra={"fragment_id": fragment.id})
            return []
        try:
            neighbours = await self.semantic.search_by_vector(
                fragment.embedding,
                SearchFilters(),
                fragment.user_id,
                self.settings.link_semantic_top_k,
                exclude_id=fragment.id,
            )
        except ProviderUnavailableError as exc:
            # Rule-based links are still computed
            logger.warning(
                "semantic_links_failed",
                extra={"fragment_id": fragment.id, "reason": str(exc)},
            )
            return []
        threshold = self.settings.link_semantic_threshold
        return [
            LinkDraft(
                to_id=n.id,
                type=LinkType.SEMANTIC,
                score=min(1.0, n.score),
                reason=f"High semantic similarity ({n.score:.0%}) based on content analysis",
            )
            for n in neighbours
            if n.id != fragment.id and n.score > threshold
        ]

    async def _rule_links(self, fragment: Fragment) -> List[LinkDraft]:
        window = timedelta(days=self.settings.link_time_window_days)
        candidates = await self.fragment_repo.list_rule_candidates(fragment, window)
        return compute_rule_links(
            fragment, candidates, window, self.settings.link_location_radius_m
        )

    async def _audit(self, user_id: str, fragment_id: str, count: int) -> None:
        try:
            await self.audit_repo.record(
                user_id,
                "links_recomputed",
                fragment_id,
                {
                    "links_created": count,
                    "recomputed_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except SQLAlchemyError as exc:
            # Best effort: links stay committed without the audit row
            logger.warning(
                "audit_write_failed",
                extra={"fragment_id": fragment_id, "reason": str(exc)},
            )


__all__ = ["RecomputeLinks"]
