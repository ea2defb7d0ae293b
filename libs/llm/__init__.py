"""Embedding and classification clients."""

from .llm_client import ClassificationClient
from .rule_based import RuleBasedClassificationClient
from .replicate_client import ReplicateClassificationClient, LLMClientError
from .embeddings_provider import EmbeddingsProvider

__all__ = [
    "ClassificationClient",
    "RuleBasedClassificationClient",
    "ReplicateClassificationClient",
    "LLMClientError",
    "EmbeddingsProvider",
]
