from types import SimpleNamespace

import pytest

import libs.rag.vector_index as vi


@pytest.fixture()
def offline(monkeypatch):
    """Avoid network and collection setup."""
    monkeypatch.setattr(vi, "connections", SimpleNamespace(connect=lambda alias, uri: None))
    monkeypatch.setattr(vi.VectorIndex, "_ensure_collection", lambda self: None)


def test_vector_index_prefixes_http(monkeypatch):
    # Provide settings with URI lacking scheme
    monkeypatch.setattr(
        vi, "get_settings", lambda: SimpleNamespace(milvus_uri="milvus:19530", embedding_dim=4)
    )

    captured = {}

    def fake_connect(alias, uri):
        captured["alias"] = alias
        captured["uri"] = uri

    monkeypatch.setattr(vi.connections, "connect", fake_connect)
    monkeypatch.setattr(vi.VectorIndex, "_ensure_collection", lambda self: None)

    index = vi.VectorIndex()

    assert captured["uri"] == "http://milvus:19530"
    assert index.dim == 4


def test_missing_uri_raises(monkeypatch):
    monkeypatch.setattr(
        vi, "get_settings", lambda: SimpleNamespace(milvus_uri="", embedding_dim=4)
    )
    with pytest.raises(RuntimeError):
        vi.VectorIndex()


def test_upsert_fragment(monkeypatch, offline, make_fragment):
    index = vi.VectorIndex(uri="milvus:19530", dim=2)
    captured = {}

    class DummyCollection:
        def __init__(self, name):
            captured["name"] = name

        def upsert(self, data):
            captured["data"] = data

    monkeypatch.setattr(vi, "Collection", DummyCollection)

    index.upsert_fragment(make_fragment("f1", embedding=[0.1, 0.2]))

    assert captured["name"] == "fragments"
    assert captured["data"] == [["f1"], ["u1"], ["PRIVATE"], [[0.1, 0.2]]]


def test_upsert_requires_embedding(offline, make_fragment):
    index = vi.VectorIndex(uri="milvus:19530", dim=2)
    with pytest.raises(ValueError):
        index.upsert_fragment(make_fragment("f1"))


def test_search_builds_visibility_expression(monkeypatch, offline):
    index = vi.VectorIndex(uri="milvus:19530", dim=2)
    captured = {}

    class Hit:
        def __init__(self, fragment_id, score):
            self.entity = {"fragment_id": fragment_id}
            self.score = score

    class DummyCollection:
        def __init__(self, name):
            pass

        def load(self):
            captured["load"] = True

        def search(self, data, anns_field, param, limit, expr, output_fields):
            captured.update(data=data, limit=limit, expr=expr, param=param)
            return [[Hit("a", 0.9), Hit("b", 0.4)]]

    monkeypatch.setattr(vi, "Collection", DummyCollection)

    hits = index.search([0.0, 0.1], k=6, visible_to='u"1', exclude_id="src")

    assert captured["load"] is True
    assert captured["limit"] == 6
    assert captured["param"]["metric_type"] == "COSINE"
    assert captured["expr"] == (
        '(visibility == "PUBLIC" or user_id == "u\\"1") and fragment_id != "src"'
    )
    assert hits == [{"fragment_id": "a", "score": 0.9}, {"fragment_id": "b", "score": 0.4}]


def test_search_without_filters_has_no_expression(monkeypatch, offline):
    index = vi.VectorIndex(uri="milvus:19530", dim=2)
    captured = {}

    class DummyCollection:
        def __init__(self, name):
            pass

        def load(self):
            pass

        def search(self, **kwargs):
            captured.update(kwargs)
            return [[]]

    monkeypatch.setattr(vi, "Collection", DummyCollection)

    assert index.search([1.0, 0.0]) == []
    assert captured["expr"] is None
