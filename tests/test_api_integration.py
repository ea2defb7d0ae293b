from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from apps.api import main
from apps.api.main import app, current_user, db_session
from libs.core.exceptions import ProviderUnavailableError, SearchUnavailableError
from libs.core.models import FragmentStatus, User, Visibility
from libs.llm.rule_based import RuleBasedClassificationClient

FIXTURES = Path(__file__).resolve().parents[1] / "config" / "recommendations.yaml"


@pytest.fixture()
def embedder():
    emb = MagicMock()
    emb.aembed = AsyncMock(return_value=[1.0, 0.0])
    return emb


@pytest.fixture()
def client(monkeypatch, fragment_repo, link_repo, audit_repo, vector_index, embedder):
    """FastAPI test client with dependencies overridden."""

    monkeypatch.setattr(main, "init_db", AsyncMock())
    monkeypatch.setattr(main, "setup_logging", lambda: None)
    processed: list[str] = []
    events: list[str] = []
    session = MagicMock()
    session.commit = AsyncMock(side_effect=lambda: events.append("commit"))

    async def dummy_db_session():
        yield session

    async def record_processing(fragment_id):
        events.append(f"process:{fragment_id}")
        processed.append(fragment_id)

    app.dependency_overrides[db_session] = dummy_db_session
    app.dependency_overrides[current_user] = lambda: User(id="u1")
    app.dependency_overrides[main.fragment_repo] = lambda: fragment_repo
    app.dependency_overrides[main.link_repo] = lambda: link_repo
    app.dependency_overrides[main.audit_repo] = lambda: audit_repo
    app.dependency_overrides[main.get_index] = lambda: vector_index
    app.dependency_overrides[main.get_embeddings_provider] = lambda: embedder
    app.dependency_overrides[main.get_classifier] = RuleBasedClassificationClient
    app.dependency_overrides[main.fragment_processor] = lambda: record_processing

    with TestClient(app) as test_client:
        test_client.processed = processed
        test_client.events = events
        yield test_client

    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_fragment_schedules_processing(client, fragment_repo):
    response = client.post(
        "/fragments",
        json={"title": "Lake day", "body": "We swam all afternoon", "tags": ["Summer"]},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "PROCESSING"
    assert data["tags"] == ["summer"]
    assert "embedding" not in data
    assert client.processed == [data["id"]]
    assert data["id"] in fragment_repo.fragments
    assert client.events == ["commit", f"process:{data['id']}"]


def test_created_fragment_is_processed_and_linked(
    client, monkeypatch, fragment_repo, link_repo, audit_repo, vector_index, embedder, make_fragment
):
    fragment_repo.add(make_fragment("old", embedding=[0.0, 1.0], tags=["summer"]))

    @asynccontextmanager
    async def fake_session():
        yield None

    monkeypatch.setattr(main, "get_session", fake_session)
    monkeypatch.setattr(main, "FragmentRepo", lambda session: fragment_repo)
    monkeypatch.setattr(main, "LinkRepo", lambda session: link_repo)
    monkeypatch.setattr(main, "AuditRepo", lambda session: audit_repo)
    monkeypatch.setattr(main, "get_index", lambda: vector_index)
    monkeypatch.setattr(main, "get_embeddings_provider", lambda: embedder)
    monkeypatch.setattr(main, "get_classifier", RuleBasedClassificationClient)
    app.dependency_overrides[main.fragment_processor] = lambda: main.process_fragment_job

    response = client.post(
        "/fragments", json={"title": "Lake day", "body": "We swam", "tags": ["summer"]}
    )

    fragment_id = response.json()["id"]
    stored = fragment_repo.fragments[fragment_id]
    assert stored.status == FragmentStatus.READY
    assert stored.embedding == [1.0, 0.0]
    assert vector_index.upserted == [fragment_id]
    assert ("old", "SHARED_TAG") in {
        (l.to_id, l.type.value) for l in link_repo.links if l.from_id == fragment_id
    }
    assert audit_repo.events[0]["subject_id"] == fragment_id


def test_create_fragment_with_pii_is_rejected(client, fragment_repo):
    response = client.post(
        "/fragments", json={"title": "Call me", "body": "My number is 555-123-4567"}
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "ValidationError"
    assert body["details"][0]["type"] == "phone"
    assert client.processed == []
    assert fragment_repo.fragments == {}


def test_title_too_long_is_rejected(client):
    response = client.post("/fragments", json={"title": "x" * 81, "body": "b"})
    assert response.status_code == 422


def test_missing_user_header_is_unauthorized(client):
    app.dependency_overrides.pop(current_user)
    response = client.get("/fragments/any")
    assert response.status_code == 401


def test_get_fragment_visibility(client, fragment_repo, make_fragment):
    fragment_repo.add(
        make_fragment("mine", embedding=[1.0, 0.0]),
        make_fragment("theirs", user_id="u2"),
        make_fragment("public", user_id="u2", visibility=Visibility.PUBLIC),
    )

    mine = client.get("/fragments/mine")
    assert mine.status_code == 200
    assert "embedding" not in mine.json()
    assert client.get("/fragments/theirs").status_code == 403
    assert client.get("/fragments/public").status_code == 200
    assert client.get("/fragments/ghost").status_code == 404


def test_recompute_and_list_links(client, fragment_repo, make_fragment, later):
    fragment_repo.add(
        make_fragment("s", embedding=[1.0, 0.0], tags=["lake"], event_at=later()),
        make_fragment("close", embedding=[0.95, 0.05], event_at=later(days=30)),
        make_fragment("tagged", embedding=[0.0, 1.0], tags=["lake"], event_at=later(days=30)),
    )

    response = client.post("/links/recompute/s")

    assert response.status_code == 200
    data = response.json()
    assert data["links_created"] == 2
    assert {(l["to_id"], l["type"]) for l in data["links"]} == {
        ("close", "SEMANTIC"),
        ("tagged", "SHARED_TAG"),
    }
    listed = client.get("/fragments/s/links").json()
    assert [l["id"] for l in listed] == [l["id"] for l in data["links"]]


def test_recompute_not_ready_returns_conflict(client, fragment_repo, make_fragment):
    fragment_repo.add(make_fragment("p", status=FragmentStatus.PROCESSING))

    response = client.post("/links/recompute/p")

    assert response.status_code == 409
    assert response.json()["status"] == "PROCESSING"


def test_recompute_foreign_private_forbidden(client, fragment_repo, link_repo, make_fragment):
    fragment_repo.add(make_fragment("x", user_id="u2", embedding=[1.0, 0.0]))

    assert client.post("/links/recompute/x").status_code == 403
    assert link_repo.deleted == []


def test_similar_fragments(client, fragment_repo, make_fragment):
    fragment_repo.add(
        make_fragment("src", embedding=[1.0, 0.0]),
        make_fragment("a", embedding=[0.9, 0.1]),
        make_fragment("b", embedding=[0.1, 0.9]),
    )

    response = client.get("/fragments/src/similar", params={"limit": 1})

    assert response.status_code == 200
    assert [f["id"] for f in response.json()] == ["a"]
    assert response.json()[0]["search_method"] == "semantic"


def test_hybrid_search_falls_back_to_lexical(client, fragment_repo, make_fragment, embedder):
    fragment_repo.add(make_fragment("a", body="a day at the lake", embedding=[1.0, 0.0]))
    embedder.aembed.side_effect = ProviderUnavailableError("replicate down")

    response = client.post("/search/hybrid", json={"query": "lake"})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["results"][0]["search_method"] == "fulltext"


def test_hybrid_search_unavailable_sets_retry_after(client):
    app.dependency_overrides[main.hybrid_search_uc] = lambda: AsyncMock(
        side_effect=SearchUnavailableError("down")
    )

    response = client.post("/search/hybrid", json={"query": "lake"})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"


def test_semantic_search_without_index(client):
    app.dependency_overrides[main.get_index] = lambda: None

    response = client.post("/search/semantic", json={"query": "lake"})

    assert response.status_code == 503


def test_advanced_search(client, fragment_repo, make_fragment):
    fragment_repo.add(
        make_fragment("A", body="lake", themes=["Family", "Loss"], embedding=[1.0, 0.0]),
        make_fragment("B", body="lake", themes=["Family", "Hope"], embedding=[0.9, 0.1]),
        make_fragment("C", body="lake", themes=["Career"], embedding=[0.8, 0.2]),
    )

    response = client.post(
        "/search/advanced", json={"query": "lake", "options": {"limit": 10}}
    )

    assert response.status_code == 200
    data = response.json()
    assert len(data["fragments"]) == 3
    assert [f["id"] for f in data["clusters"][0]["fragments"]] == ["A", "B"]
    assert data["clusters"][0]["common_themes"] == ["Family"]
    assert [f["id"] for f in data["individual"]] == ["C"]
    assert data["analytics"]["total_results"] == 3
    assert data["insights"]["themes"] == ["Family", "Loss", "Hope", "Career"]


def test_recommendations_from_fixtures(client, monkeypatch):
    monkeypatch.setattr(
        main,
        "get_settings",
        lambda: SimpleNamespace(
            recommendation_source="fixture", recommendation_fixtures_path=FIXTURES
        ),
    )

    response = client.get("/recommendations", params={"limit": 2})

    assert response.status_code == 200
    assert len(response.json()) == 2
