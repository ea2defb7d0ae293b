import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List

import pytest
from sqlalchemy.exc import OperationalError

# Ensure project root on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from libs.core.models import (
    Fragment,
    FragmentStatus,
    Link,
    SearchFilters,
    Visibility,
)
from libs.rag.similarity import cosine_similarity

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def build_fragment(fragment_id: str, user_id: str = "u1", **kwargs) -> Fragment:
    """READY fragment with sensible defaults for tests."""
    data = {
        "id": fragment_id,
        "user_id": user_id,
        "title": kwargs.pop("title", f"Fragment {fragment_id}"),
        "body": kwargs.pop("body", "Some body text"),
        "status": FragmentStatus.READY,
        "created_at": BASE_TIME,
        "updated_at": BASE_TIME,
    }
    data.update(kwargs)
    return Fragment(**data)


def _visible(fragment: Fragment, user_id: str) -> bool:
    return fragment.user_id == user_id or fragment.visibility == Visibility.PUBLIC


def _matches_filters(fragment: Fragment, filters: SearchFilters) -> bool:
    if filters.themes and not set(filters.themes) & set(fragment.themes):
        return False
    if filters.emotions and not set(filters.emotions) & set(fragment.emotions):
        return False
    if filters.tags and not {t.lower() for t in filters.tags} & set(fragment.tags):
        return False
    if filters.start and fragment.created_at < filters.start:
        return False
    if filters.end and fragment.created_at > filters.end:
        return False
    if filters.authors and fragment.user_id not in filters.authors:
        return False
    return True


class InMemoryFragmentRepo:
    """Dict-backed stand-in for :class:`libs.db.FragmentRepo`."""

    def __init__(self, fragments=()) -> None:
        self.fragments: Dict[str, Fragment] = {f.id: f for f in fragments}
        self.failed: List[str] = []

    def add(self, *fragments: Fragment) -> None:
        for f in fragments:
            self.fragments[f.id] = f

    async def create(self, user_id, payload):
        fragment = Fragment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=payload.title,
            body=payload.body,
            tags=[t.strip().lower() for t in payload.tags if t.strip()],
            event_at=payload.event_at or BASE_TIME,
            location_text=payload.location_text,
            lat=payload.lat,
            lng=payload.lng,
            visibility=payload.visibility,
            status=FragmentStatus.PROCESSING,
        )
        self.fragments[fragment.id] = fragment
        return fragment

    async def get(self, fragment_id):
        return self.fragments.get(fragment_id)

    async def list_by_user(self, user_id, limit=100, status=None):
        rows = [
            f
            for f in self.fragments.values()
            if f.user_id == user_id and (status is None or f.status == status)
        ]
        rows.sort(key=lambda f: f.created_at, reverse=True)
        return rows[:limit]

    async def mark_ready(self, fragment_id, embedding, themes, emotions):
        ready = self.fragments[fragment_id].model_copy(
            update={
                "embedding": list(embedding),
                "themes": list(themes),
                "emotions": list(emotions),
                "status": FragmentStatus.READY,
            }
        )
        self.fragments[fragment_id] = ready
        return ready

    async def mark_failed(self, fragment_id):
        self.failed.append(fragment_id)
        self.fragments[fragment_id] = self.fragments[fragment_id].model_copy(
            update={"embedding": None, "status": FragmentStatus.FAILED}
        )

    async def fulltext_search(self, query, filters, user_id, limit):
        words = query.lower().split()
        hits = [
            f
            for f in self.fragments.values()
            if _visible(f, user_id)
            and _matches_filters(f, filters)
            and all(w in f"{f.title} {f.body}".lower() for w in words)
        ]
        return hits[:limit]

    async def filter_visible(self, fragment_ids, filters, user_id):
        out = []
        for fid in fragment_ids:
            f = self.fragments.get(fid)
            if (
                f is not None
                and f.status == FragmentStatus.READY
                and _visible(f, user_id)
                and _matches_filters(f, filters)
            ):
                out.append(f)
        return out

    async def list_rule_candidates(self, source, window):
        return [
            f
            for f in self.fragments.values()
            if f.id != source.id and _visible(f, source.user_id)
        ]


class InMemoryLinkRepo:
    def __init__(self) -> None:
        self.links: List[Link] = []
        self.locked: List[str] = []
        self.deleted: List[str] = []

    async def lock(self, fragment_id):
        self.locked.append(fragment_id)

    async def delete_for_fragment(self, fragment_id):
        before = len(self.links)
        self.links = [
            l for l in self.links if fragment_id not in (l.from_id, l.to_id)
        ]
        self.deleted.append(fragment_id)
        return before - len(self.links)

    async def bulk_create(self, from_id, drafts):
        for d in drafts:
            self.links.append(
                Link(
                    id=str(uuid.uuid4()),
                    from_id=from_id,
                    to_id=d.to_id,
                    type=d.type,
                    score=d.score,
                    reason=d.reason,
                )
            )

    async def list_from(self, fragment_id):
        rows = [l for l in self.links if l.from_id == fragment_id]
        return sorted(rows, key=lambda l: (-l.score, l.type.value))


class InMemoryAuditRepo:
    def __init__(self, fail: bool = False) -> None:
        self.events: List[dict] = []
        self.fail = fail

    async def record(self, user_id, action, subject_id, meta=None):
        if self.fail:
            raise OperationalError("INSERT INTO audit_events", {}, Exception("audit down"))
        self.events.append(
            {"user_id": user_id, "action": action, "subject_id": subject_id, "meta": meta}
        )


class FakeVectorIndex:
    """Brute-force index with the same call shape as ``VectorIndex``."""

    def __init__(self, repo: InMemoryFragmentRepo, fail: bool = False) -> None:
        self.repo = repo
        self.fail = fail
        self.upserted: List[str] = []

    def upsert_fragment(self, fragment):
        if self.fail:
            raise RuntimeError("milvus down")
        self.upserted.append(fragment.id)

    def search(self, query_vec, k=10, visible_to=None, exclude_id=None):
        if self.fail:
            raise RuntimeError("milvus down")
        hits = []
        for f in self.repo.fragments.values():
            if f.embedding is None or f.id == exclude_id:
                continue
            if visible_to is not None and not _visible(f, visible_to):
                continue
            hits.append({"fragment_id": f.id, "score": cosine_similarity(query_vec, f.embedding)})
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:k]


@pytest.fixture()
def make_fragment():
    return build_fragment


@pytest.fixture()
def fragment_repo():
    return InMemoryFragmentRepo()


@pytest.fixture()
def link_repo():
    return InMemoryLinkRepo()


@pytest.fixture()
def audit_repo():
    return InMemoryAuditRepo()


@pytest.fixture()
def vector_index(fragment_repo):
    return FakeVectorIndex(fragment_repo)


@pytest.fixture()
def later():
    """Shift ``BASE_TIME`` by a number of days."""

    def _later(days: float = 0.0, hours: float = 0.0) -> datetime:
        return BASE_TIME + timedelta(days=days, hours=hours)

    return _later



@pytest.fixture()
def make_index():
    def _make(repo: InMemoryFragmentRepo, fail: bool = False) -> FakeVectorIndex:
        return FakeVectorIndex(repo, fail=fail)

    return _make
