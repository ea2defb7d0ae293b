"""Pydantic models representing core domain entities."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_TITLE_LEN = 80


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Visibility(str, Enum):
    PRIVATE = "PRIVATE"
    UNLISTED = "UNLISTED"
    PUBLIC = "PUBLIC"


class FragmentStatus(str, Enum):
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


class LinkType(str, Enum):
    SEMANTIC = "SEMANTIC"
    SHARED_TAG = "SHARED_TAG"
    SAME_TIMEWINDOW = "SAME_TIMEWINDOW"
    SAME_LOCATION = "SAME_LOCATION"


class User(BaseModel):
    """Application user; identity is asserted by the upstream gateway."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., description="Internal user identifier")
    created_at: datetime = Field(default_factory=_utcnow)


class Fragment(BaseModel):
    """A single user-authored journal entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    body: str = ""
    tags: List[str] = Field(default_factory=list)
    themes: List[str] = Field(default_factory=list)
    emotions: List[str] = Field(default_factory=list)
    event_at: Optional[datetime] = None
    location_text: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    visibility: Visibility = Visibility.PRIVATE
    status: FragmentStatus = FragmentStatus.PROCESSING
    # Never serialized into API payloads
    embedding: Optional[List[float]] = Field(default=None, exclude=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("title")
    @classmethod
    def _title_length(cls, value: str) -> str:
        if len(value) > MAX_TITLE_LEN:
            raise ValueError(f"title must be at most {MAX_TITLE_LEN} characters")
        return value

    @field_validator("tags", "themes", "emotions", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return list(value or [])

    @model_validator(mode="after")
    def _embedding_only_when_ready(self) -> "Fragment":
        if self.embedding is not None and self.status != FragmentStatus.READY:
            raise ValueError("embedding may only be present on READY fragments")
        return self

    def visible_to(self, user_id: str) -> bool:
        return self.user_id == user_id or self.visibility == Visibility.PUBLIC


class ScoredFragment(Fragment):
    """Fragment annotated with a retrieval score."""

    score: float = 0.0
    search_method: str = "hybrid"

    @classmethod
    def from_fragment(
        cls, fragment: Fragment, score: float, search_method: str
    ) -> "ScoredFragment":
        # dict() keeps excluded fields such as the embedding
        data = dict(fragment)
        data.update(score=score, search_method=search_method)
        return cls(**data)


class Link(BaseModel):
    """Directed, typed, scored relationship between two fragments."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    from_id: str
    to_id: str
    type: LinkType
    score: float = Field(..., ge=0.0, le=1.0)
    reason: str
    created_at: datetime = Field(default_factory=_utcnow)


class LinkDraft(BaseModel):
    """Link computed in memory, not yet persisted."""

    to_id: str
    type: LinkType
    score: float = Field(..., ge=0.0, le=1.0)
    reason: str


class RecomputeResult(BaseModel):
    links_created: int
    links: List[Link] = Field(default_factory=list)


class FragmentCreate(BaseModel):
    """Payload accepted when a user submits a new fragment."""

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LEN)
    body: str = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)
    event_at: Optional[datetime] = None
    location_text: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    visibility: Visibility = Visibility.PRIVATE


class PIIDetection(BaseModel):
    text: str
    type: str
    start: int
    end: int
    confidence: float


class SearchFilters(BaseModel):
    themes: List[str] = Field(default_factory=list)
    emotions: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    authors: List[str] = Field(default_factory=list)
    min_similarity: Optional[float] = None


class SearchWeights(BaseModel):
    vector: float = 0.7
    fulltext: float = 0.3


class TimeSpan(BaseModel):
    start: datetime
    end: datetime


class SearchCluster(BaseModel):
    """Runtime grouping of search results sharing a dominant theme."""

    id: str
    title: str
    description: str
    fragments: List[ScoredFragment]
    common_themes: List[str] = Field(default_factory=list)
    common_emotions: List[str] = Field(default_factory=list)
    time_span: Optional[TimeSpan] = None
    significance: float = 0.0


class SearchSuggestion(BaseModel):
    type: str
    value: str
    confidence: float
    context: Optional[str] = None
    count: Optional[int] = None


class SearchAnalytics(BaseModel):
    total_results: int
    search_time_ms: int
    method: str
    relevance_score: float


class SearchInsights(BaseModel):
    patterns: List[str] = Field(default_factory=list)
    themes: List[str] = Field(default_factory=list)
    time_distribution: Dict[str, int] = Field(default_factory=dict)
    emotional_tone: str = "neutral"


class AdvancedSearchOptions(BaseModel):
    include_analytics: bool = True
    include_clustering: bool = True
    include_suggestions: bool = True
    limit: int = Field(default=20, ge=1, le=100)


class AdvancedSearchResult(BaseModel):
    fragments: List[ScoredFragment] = Field(default_factory=list)
    clusters: List[SearchCluster] = Field(default_factory=list)
    individual: List[ScoredFragment] = Field(default_factory=list)
    suggestions: List[SearchSuggestion] = Field(default_factory=list)
    analytics: SearchAnalytics
    insights: SearchInsights


class Recommendation(BaseModel):
    fragment_id: str
    title: str
    score: float
    reason: str


__all__ = [
    "Visibility",
    "FragmentStatus",
    "LinkType",
    "User",
    "Fragment",
    "ScoredFragment",
    "Link",
    "LinkDraft",
    "RecomputeResult",
    "FragmentCreate",
    "PIIDetection",
    "SearchFilters",
    "SearchWeights",
    "TimeSpan",
    "SearchCluster",
    "SearchSuggestion",
    "SearchAnalytics",
    "SearchInsights",
    "AdvancedSearchOptions",
    "AdvancedSearchResult",
    "Recommendation",
]
