import json
from typing import Any, Dict, List, Optional

from pymilvus import (
    connections,
    FieldSchema,
    CollectionSchema,
    DataType,
    Collection,
    utility,
)

from libs.core.models import Fragment
from libs.core.settings import get_settings


def _literal(value: str) -> str:
    """Quote a string for use inside a Milvus boolean expression."""
    return json.dumps(value)


class VectorIndex:
    """Wrapper around the Milvus collection holding fragment embeddings."""

    def __init__(
        self,
        uri: str | None = None,
        dim: int | None = None,
        collection_name: str = "fragments",
    ) -> None:
        # Resolve configuration from settings if not explicitly provided
        settings = get_settings()
        self.dim = dim if dim is not None else getattr(settings, "embedding_dim", 1536)
        self.uri = uri or settings.milvus_uri
        if not self.uri:
            raise RuntimeError("MILVUS_URI is not set")
        # pymilvus requires a URI with an explicit scheme; accept "host:port"
        # as well by prepending "http://".
        if not self.uri.startswith("http://") and not self.uri.startswith("https://"):
            self.uri = f"http://{self.uri}"

        connections.connect("default", uri=self.uri)

        self.collection_name = collection_name
        self._ensure_collection()

    # Internal helpers -------------------------------------------------
    def _ensure_collection(self) -> None:
        if utility.has_collection(self.collection_name):
            existing = Collection(self.collection_name)
            fields = {f.name: f for f in existing.schema.fields}
            emb = fields.get("embedding")
            # dim may be exposed differently depending on pymilvus version
            emb_dim = getattr(emb, "dim", None)
            if emb_dim is None and emb is not None:
                params = getattr(emb, "params", None) or {}
                emb_dim = int(params["dim"]) if params.get("dim") else None
            if emb is not None and (emb_dim is None or emb_dim == self.dim):
                return
            # Drop incompatible collection and recreate
            existing.release()
            utility.drop_collection(self.collection_name)

        fields = [
            FieldSchema(
                name="fragment_id",
                dtype=DataType.VARCHAR,
                is_primary=True,
                max_length=64,
            ),
            FieldSchema(name="user_id", dtype=DataType.VARCHAR, max_length=64),
            FieldSchema(name="visibility", dtype=DataType.VARCHAR, max_length=16),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.dim),
        ]
        schema = CollectionSchema(fields, description="fragment embeddings")
        collection = Collection(self.collection_name, schema=schema)

        index_params = {
            "index_type": "HNSW",
            "metric_type": "COSINE",
            "params": {"M": 16, "efConstruction": 200},
        }
        collection.create_index(field_name="embedding", index_params=index_params)
        collection.load()

    # Public API -------------------------------------------------------
    def upsert_fragment(self, fragment: Fragment) -> None:
        """Insert or update the embedding of a READY fragment."""
        if fragment.embedding is None:
            raise ValueError(f"Fragment {fragment.id} has no embedding")
        collection = Collection(self.collection_name)
        collection.upsert(
            [
                [fragment.id],
                [fragment.user_id],
                [fragment.visibility.value],
                [fragment.embedding],
            ]
        )

    def search(
        self,
        query_vec: List[float],
        k: int = 10,
        visible_to: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return up to ``k`` nearest fragments as ``{fragment_id, score}``.

        ``visible_to`` restricts hits to that user's fragments plus public
        ones; ``exclude_id`` drops the query fragment itself.
        """
        clauses: List[str] = []
        if visible_to is not None:
            clauses.append(
                f'(visibility == "PUBLIC" or user_id == {_literal(visible_to)})'
            )
        if exclude_id is not None:
            clauses.append(f"fragment_id != {_literal(exclude_id)}")
        expr = " and ".join(clauses) or None

        collection = Collection(self.collection_name)
        collection.load()
        search_params = {"metric_type": "COSINE", "params": {"ef": 64}}
        results = collection.search(
            data=[query_vec],
            anns_field="embedding",
            param=search_params,
            limit=k,
            expr=expr,
            output_fields=["fragment_id"],
        )
        return [
            {"fragment_id": hit.entity.get("fragment_id"), "score": hit.score}
            for hit in results[0]
        ]


__all__ = ["VectorIndex"]
