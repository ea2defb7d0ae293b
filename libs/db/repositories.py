"""Repository classes wrapping ORM access and returning domain models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import String, and_, delete, func, literal_column, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from libs.core.models import (
    Fragment,
    FragmentCreate,
    FragmentStatus,
    Link,
    LinkDraft,
    SearchFilters,
    Visibility,
)

from . import models


def fulltext_document():
    """Searchable text, rendered exactly as the ``ix_fragments_fts`` expression."""
    F = models.Fragment
    return func.to_tsvector(
        literal_column("'english'"), F.title + literal_column("' '", String) + F.body
    )


def _to_fragment(row: models.Fragment) -> Fragment:
    return Fragment.model_validate(row)


def _normalize_tags(tags: Iterable[str]) -> List[str]:
    out: List[str] = []
    for tag in tags:
        norm = tag.strip().lower()
        if norm and norm not in out:
            out.append(norm)
    return out


def _visible_to(user_id: str):
    return or_(
        models.Fragment.user_id == user_id,
        models.Fragment.visibility == Visibility.PUBLIC.value,
    )


def _apply_filters(stmt, filters: SearchFilters):
    F = models.Fragment
    if filters.themes:
        stmt = stmt.where(F.themes.overlap(filters.themes))
    if filters.emotions:
        stmt = stmt.where(F.emotions.overlap(filters.emotions))
    if filters.tags:
        stmt = stmt.where(F.tags.overlap(_normalize_tags(filters.tags)))
    if filters.start is not None:
        stmt = stmt.where(F.created_at >= filters.start)
    if filters.end is not None:
        stmt = stmt.where(F.created_at <= filters.end)
    if filters.authors:
        stmt = stmt.where(F.user_id.in_(filters.authors))
    return stmt


class UserRepo:
    """CRUD operations for :class:`models.User`."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> Optional[models.User]:
        return await self.session.get(models.User, user_id)

    async def get_or_create(self, user_id: str) -> models.User:
        user = await self.get(user_id)
        if user is None:
            user = models.User(id=user_id)
            self.session.add(user)
            await self.session.flush()
        return user


class FragmentRepo:
    """Persistence and query operations for fragments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, user_id: str, payload: FragmentCreate) -> Fragment:
        now = datetime.now(timezone.utc)
        row = models.Fragment(
            user_id=user_id,
            title=payload.title,
            body=payload.body,
            tags=_normalize_tags(payload.tags),
            themes=[],
            emotions=[],
            event_at=payload.event_at or now,
            location_text=payload.location_text,
            lat=payload.lat,
            lng=payload.lng,
            visibility=payload.visibility.value,
            status=FragmentStatus.PROCESSING.value,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return _to_fragment(row)

    async def get(self, fragment_id: str) -> Optional[Fragment]:
        row = await self.session.get(models.Fragment, fragment_id)
        return _to_fragment(row) if row is not None else None

    async def list_by_user(
        self,
        user_id: str,
        limit: int = 100,
        status: Optional[FragmentStatus] = None,
    ) -> List[Fragment]:
        stmt = select(models.Fragment).where(models.Fragment.user_id == user_id)
        if status is not None:
            stmt = stmt.where(models.Fragment.status == status.value)
        stmt = stmt.order_by(models.Fragment.created_at.desc()).limit(limit)
        res = await self.session.execute(stmt)
        return [_to_fragment(r) for r in res.scalars().all()]

    async def mark_ready(
        self,
        fragment_id: str,
        embedding: List[float],
        themes: List[str],
        emotions: List[str],
    ) -> Fragment:
        row = await self.session.get(models.Fragment, fragment_id)
        if row is None:
            raise LookupError(fragment_id)
        row.embedding = list(embedding)
        row.themes = list(themes)
        row.emotions = list(emotions)
        row.status = FragmentStatus.READY.value
        await self.session.flush()
        return _to_fragment(row)

    async def mark_failed(self, fragment_id: str) -> None:
        row = await self.session.get(models.Fragment, fragment_id)
        if row is None:
            return
        row.embedding = None
        row.status = FragmentStatus.FAILED.value
        await self.session.flush()

    async def fulltext_search(
        self,
        query: str,
        filters: SearchFilters,
        user_id: str,
        limit: int,
    ) -> List[Fragment]:
        """Return fragments matching ``query`` ordered by ``ts_rank_cd``."""
        F = models.Fragment
        document = fulltext_document()
        tsquery = func.websearch_to_tsquery("english", query)
        stmt = select(F).where(document.op("@@")(tsquery)).where(_visible_to(user_id))
        stmt = _apply_filters(stmt, filters)
        stmt = stmt.order_by(
            func.ts_rank_cd(document, tsquery).desc(), F.created_at.desc()
        ).limit(limit)
        res = await self.session.execute(stmt)
        return [_to_fragment(r) for r in res.scalars().all()]

    async def filter_visible(
        self,
        fragment_ids: Sequence[str],
        filters: SearchFilters,
        user_id: str,
    ) -> List[Fragment]:
        """Load ``fragment_ids`` keeping only READY rows the user may see."""
        if not fragment_ids:
            return []
        F = models.Fragment
        stmt = (
            select(F)
            .where(F.id.in_(list(fragment_ids)))
            .where(F.status == FragmentStatus.READY.value)
            .where(_visible_to(user_id))
        )
        stmt = _apply_filters(stmt, filters)
        res = await self.session.execute(stmt)
        return [_to_fragment(r) for r in res.scalars().all()]

    async def list_rule_candidates(
        self, source: Fragment, window: timedelta
    ) -> List[Fragment]:
        """Fragments that may share a tag, time window or place with ``source``.

        The SQL only narrows the candidate set; exact rule evaluation
        happens in :func:`libs.usecases.link_rules.compute_rule_links`.
        """
        F = models.Fragment
        conditions = []
        if source.tags:
            conditions.append(F.tags.overlap(source.tags))
        if source.event_at is not None:
            conditions.append(
                F.event_at.between(source.event_at - window, source.event_at + window)
            )
        if source.lat is not None and source.lng is not None:
            conditions.append(and_(F.lat.isnot(None), F.lng.isnot(None)))
        if source.location_text and source.location_text.strip():
            conditions.append(
                func.lower(func.trim(F.location_text))
                == source.location_text.strip().lower()
            )
        if not conditions:
            return []
        stmt = (
            select(F)
            .where(F.id != source.id)
            .where(_visible_to(source.user_id))
            .where(or_(*conditions))
        )
        res = await self.session.execute(stmt)
        return [_to_fragment(r) for r in res.scalars().all()]


class LinkRepo:
    """Persistence for links between fragments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def lock(self, fragment_id: str) -> None:
        """Serialize link recomputation for one fragment until commit."""
        if self.session.get_bind().dialect.name != "postgresql":
            return
        await self.session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"links:{fragment_id}"},
        )

    async def delete_for_fragment(self, fragment_id: str) -> int:
        res = await self.session.execute(
            delete(models.Link).where(
                or_(models.Link.from_id == fragment_id, models.Link.to_id == fragment_id)
            )
        )
        return res.rowcount or 0

    async def bulk_create(self, from_id: str, drafts: Iterable[LinkDraft]) -> None:
        rows = [
            models.Link(
                from_id=from_id,
                to_id=d.to_id,
                type=d.type.value,
                score=d.score,
                reason=d.reason,
            )
            for d in drafts
        ]
        if rows:
            self.session.add_all(rows)
            await self.session.flush()

    async def list_from(self, fragment_id: str) -> List[Link]:
        res = await self.session.execute(
            select(models.Link)
            .where(models.Link.from_id == fragment_id)
            .order_by(models.Link.score.desc(), models.Link.type)
        )
        return [Link.model_validate(r) for r in res.scalars().all()]


class AuditRepo:
    """Append-only audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        user_id: Optional[str],
        action: str,
        subject_id: Optional[str],
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Savepoint so a failed audit insert leaves the outer transaction usable
        async with self.session.begin_nested():
            self.session.add(
                models.AuditEvent(
                    user_id=user_id,
                    action=action,
                    subject_id=subject_id,
                    meta=meta or {},
                )
            )


__all__ = ["UserRepo", "FragmentRepo", "LinkRepo", "AuditRepo"]
