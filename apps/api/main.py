from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymilvus import MilvusException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from libs.core.exceptions import (
    DimensionMismatchError,
    DomainError,
    ForbiddenError,
    NotFoundError,
    NotReadyError,
    ProviderUnavailableError,
    SearchUnavailableError,
    ValidationError,
)
from libs.core.models import (
    AdvancedSearchOptions,
    AdvancedSearchResult,
    Fragment,
    FragmentCreate,
    Link,
    Recommendation,
    RecomputeResult,
    ScoredFragment,
    SearchFilters,
    SearchWeights,
    User,
)
from libs.core.settings import get_settings
from libs.db import AuditRepo, FragmentRepo, LinkRepo, UserRepo, get_session, init_db
from libs.llm import (
    ClassificationClient,
    EmbeddingsProvider,
    ReplicateClassificationClient,
    RuleBasedClassificationClient,
)
from libs.logging import setup_logging
from libs.rag import VectorIndex
from libs.search import FulltextSearch, HybridSearch, SemanticSearch
from libs.usecases import (
    AdvancedSearch,
    CreateFragment,
    FindSimilar,
    FixtureRecommendationSource,
    LiveRecommendationSource,
    ProcessFragment,
    RecommendationSource,
    RecomputeLinks,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 30

_ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (NotReadyError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (DimensionMismatchError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ProviderUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SearchUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


# ---------------------------------------------------------------------------
# Dependency factories


def get_index() -> Optional[VectorIndex]:
    """Return the Milvus index, or ``None`` when it cannot be used.

    Without an index semantic retrieval is unavailable and hybrid search
    serves full-text results only.
    """
    try:
        return VectorIndex()
    except RuntimeError as exc:
        logger.warning("vector_index_disabled", extra={"reason": str(exc)})
    except MilvusException as exc:
        logger.warning("vector_index_unavailable", extra={"reason": str(exc)})
    return None


def get_embeddings_provider() -> EmbeddingsProvider:
    return EmbeddingsProvider()


def get_classifier() -> ClassificationClient:
    settings = get_settings()
    if settings.classification_provider == "replicate":
        if settings.replicate_api_token:
            return ReplicateClassificationClient(settings)
        logger.warning("classification_fallback_to_rules", extra={"reason": "no api token"})
    return RuleBasedClassificationClient()


async def db_session() -> AsyncIterator[AsyncSession]:
    async with get_session() as session:
        yield session


async def current_user(
    user_id: str | None = Header(None, alias="X-User-Id"),
    session: AsyncSession = Depends(db_session),
) -> User:
    """Resolve the caller asserted by the upstream gateway."""
    if not user_id or not user_id.strip():
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id")
    row = await UserRepo(session).get_or_create(user_id.strip())
    return User.model_validate(row)


def fragment_repo(session: AsyncSession = Depends(db_session)) -> FragmentRepo:
    return FragmentRepo(session)


def link_repo(session: AsyncSession = Depends(db_session)) -> LinkRepo:
    return LinkRepo(session)


def audit_repo(session: AsyncSession = Depends(db_session)) -> AuditRepo:
    return AuditRepo(session)


def semantic_search(
    emb: EmbeddingsProvider = Depends(get_embeddings_provider),
    index: Optional[VectorIndex] = Depends(get_index),
    fragments: FragmentRepo = Depends(fragment_repo),
) -> SemanticSearch:
    return SemanticSearch(emb, index, fragments)


# Factory dependencies for use cases -----------------------------------------


def create_fragment_uc(
    fragments: FragmentRepo = Depends(fragment_repo),
    classifier: ClassificationClient = Depends(get_classifier),
) -> CreateFragment:
    return CreateFragment(fragments, classifier)


def recompute_links_uc(
    fragments: FragmentRepo = Depends(fragment_repo),
    links: LinkRepo = Depends(link_repo),
    audit: AuditRepo = Depends(audit_repo),
    semantic: SemanticSearch = Depends(semantic_search),
) -> RecomputeLinks:
    return RecomputeLinks(fragments, links, audit, semantic)


def hybrid_search_uc(
    fragments: FragmentRepo = Depends(fragment_repo),
    semantic: SemanticSearch = Depends(semantic_search),
) -> HybridSearch:
    return HybridSearch(semantic, FulltextSearch(fragments))


def find_similar_uc(
    fragments: FragmentRepo = Depends(fragment_repo),
    semantic: SemanticSearch = Depends(semantic_search),
) -> FindSimilar:
    return FindSimilar(fragments, semantic)


def advanced_search_uc(
    hybrid: HybridSearch = Depends(hybrid_search_uc),
    fragments: FragmentRepo = Depends(fragment_repo),
) -> AdvancedSearch:
    return AdvancedSearch(hybrid, fragments)


def recommendation_source(
    fragments: FragmentRepo = Depends(fragment_repo),
    semantic: SemanticSearch = Depends(semantic_search),
) -> RecommendationSource:
    settings = get_settings()
    if settings.recommendation_source == "fixture":
        return FixtureRecommendationSource(path=settings.recommendation_fixtures_path)
    return LiveRecommendationSource(fragments, semantic)


# Background processing -------------------------------------------------------


async def process_fragment_job(fragment_id: str) -> None:
    """Analyse a new fragment, then materialize its links.

    Each step commits in its own transaction, so a link failure never
    rolls back the ``READY`` state.
    """
    index = get_index()
    embeddings = get_embeddings_provider()
    try:
        async with get_session() as session:
            ready = await ProcessFragment(
                FragmentRepo(session), embeddings, get_classifier(), index
            )(fragment_id)
    except SQLAlchemyError:
        logger.exception("fragment_processing_aborted", extra={"fragment_id": fragment_id})
        async with get_session() as session:
            await FragmentRepo(session).mark_failed(fragment_id)
        return
    if ready is None:
        return

    try:
        async with get_session() as session:
            fragments = FragmentRepo(session)
            await RecomputeLinks(
                fragments,
                LinkRepo(session),
                AuditRepo(session),
                SemanticSearch(embeddings, index, fragments),
            )(ready.id, ready.user_id)
    except (DomainError, SQLAlchemyError) as exc:
        logger.warning(
            "link_recompute_failed",
            extra={"fragment_id": ready.id, "reason": str(exc), "error_class": type(exc).__name__},
        )


def fragment_processor() -> Callable[[str], Awaitable[None]]:
    return process_fragment_job


# ---------------------------------------------------------------------------
# Pydantic schemas


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = Field(10, ge=1, le=50)


class HybridSearchRequest(SearchRequest):
    weights: Optional[SearchWeights] = None


class AdvancedSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    options: AdvancedSearchOptions = Field(default_factory=AdvancedSearchOptions)


class SearchResponse(BaseModel):
    results: List[ScoredFragment]
    total: int
    method: str


# ---------------------------------------------------------------------------
# FastAPI application


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    await init_db()
    yield


app = FastAPI(title="Living Library API", lifespan=lifespan)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    code = next(
        (c for kind, c in _ERROR_STATUS if isinstance(exc, kind)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    headers: Dict[str, str] = {}
    if isinstance(exc, NotReadyError):
        body["status"] = exc.status
    if isinstance(exc, ValidationError):
        body["details"] = exc.details
    if isinstance(exc, SearchUnavailableError):
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)

    level = logging.ERROR if code >= 500 else logging.INFO
    logger.log(
        level,
        "request_failed",
        extra={"path": request.url.path, "status_code": code, "error_class": type(exc).__name__},
    )
    return JSONResponse(status_code=code, content=body, headers=headers or None)


# Routes ---------------------------------------------------------------------


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/fragments", status_code=status.HTTP_201_CREATED, response_model=Fragment)
async def create_fragment(
    req: FragmentCreate,
    background_tasks: BackgroundTasks,
    uc: CreateFragment = Depends(create_fragment_uc),
    processor: Callable[[str], Awaitable[None]] = Depends(fragment_processor),
    user: User = Depends(current_user),
    session: AsyncSession = Depends(db_session),
) -> Fragment:
    fragment = await uc(req, user.id)
    # The job reads the row from its own session
    await session.commit()
    background_tasks.add_task(processor, fragment.id)
    return fragment


async def _visible_fragment(repo: FragmentRepo, fragment_id: str, user: User) -> Fragment:
    fragment = await repo.get(fragment_id)
    if fragment is None:
        raise NotFoundError(f"Fragment {fragment_id} not found")
    if not fragment.visible_to(user.id):
        raise ForbiddenError("Access denied")
    return fragment


@app.get("/fragments/{fragment_id}", response_model=Fragment)
async def get_fragment(
    fragment_id: str,
    fragments: FragmentRepo = Depends(fragment_repo),
    user: User = Depends(current_user),
) -> Fragment:
    return await _visible_fragment(fragments, fragment_id, user)


@app.get("/fragments/{fragment_id}/links", response_model=List[Link])
async def list_links(
    fragment_id: str,
    fragments: FragmentRepo = Depends(fragment_repo),
    links: LinkRepo = Depends(link_repo),
    user: User = Depends(current_user),
) -> List[Link]:
    await _visible_fragment(fragments, fragment_id, user)
    return await links.list_from(fragment_id)


@app.post("/links/recompute/{fragment_id}", response_model=RecomputeResult)
async def recompute_links(
    fragment_id: str,
    uc: RecomputeLinks = Depends(recompute_links_uc),
    user: User = Depends(current_user),
) -> RecomputeResult:
    return await uc(fragment_id, user.id)


@app.get("/fragments/{fragment_id}/similar", response_model=List[ScoredFragment])
async def similar_fragments(
    fragment_id: str,
    limit: int = Query(10, ge=1, le=50),
    uc: FindSimilar = Depends(find_similar_uc),
    user: User = Depends(current_user),
) -> List[ScoredFragment]:
    return await uc(fragment_id, user.id, limit)


@app.post("/search/semantic", response_model=SearchResponse)
async def search_semantic(
    req: SearchRequest,
    semantic: SemanticSearch = Depends(semantic_search),
    user: User = Depends(current_user),
) -> SearchResponse:
    results = await semantic(req.query, req.filters, user.id, req.limit)
    return SearchResponse(results=results, total=len(results), method="semantic")


@app.post("/search/hybrid", response_model=SearchResponse)
async def search_hybrid(
    req: HybridSearchRequest,
    uc: HybridSearch = Depends(hybrid_search_uc),
    user: User = Depends(current_user),
) -> SearchResponse:
    results = await uc(req.query, req.filters, user.id, req.limit, weights=req.weights)
    return SearchResponse(results=results, total=len(results), method="hybrid")


@app.post("/search/advanced", response_model=AdvancedSearchResult)
async def search_advanced(
    req: AdvancedSearchRequest,
    uc: AdvancedSearch = Depends(advanced_search_uc),
    user: User = Depends(current_user),
) -> AdvancedSearchResult:
    return await uc(req.query, req.filters, user.id, req.options)


@app.get("/recommendations", response_model=List[Recommendation])
async def recommendations(
    limit: int = Query(10, ge=1, le=50),
    source: RecommendationSource = Depends(recommendation_source),
    user: User = Depends(current_user),
) -> List[Recommendation]:
    return await source.recommend(user.id, limit)


__all__ = ["app"]
