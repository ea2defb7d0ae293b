from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

import replicate

from libs.core.exceptions import ProviderUnavailableError
from libs.core.settings import get_settings

logger = logging.getLogger(__name__)


class EmbeddingsProvider:
    """Fetch text embeddings from a Replicate-hosted model."""

    def __init__(
        self,
        model: str | None = None,
        *,
        embedding_dim: int | None = None,
        max_chars: int | None = None,
        timeout: float | None = None,
        batch_size: int = 32,
        enable_cache: bool = True,
    ) -> None:
        settings = get_settings()
        # Allow overriding via args; otherwise pull from settings
        self.model = model or settings.embeddings_model
        self.embedding_dim = (
            embedding_dim if embedding_dim is not None else settings.embedding_dim
        )
        self.max_chars = max_chars if max_chars is not None else settings.embedding_max_chars
        self.timeout = timeout if timeout is not None else settings.provider_timeout
        self.batch_size = batch_size
        self.enable_cache = enable_cache
        self._cache: Dict[str, List[float]] = {}

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        output = replicate.run(self.model, input={"texts": texts})
        if isinstance(output, dict) and "embeddings" in output:
            embeddings = output["embeddings"]
        else:
            embeddings = output
        if embeddings is None or len(embeddings) != len(texts):
            raise ValueError("Embedding count does not match input count")
        for emb in embeddings:
            if len(emb) != self.embedding_dim:
                raise ValueError(
                    f"Embedding size {len(emb)} does not match expected {self.embedding_dim}"
                )
        return [[float(x) for x in emb] for emb in embeddings]

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        results: List[List[float] | None] = [None] * len(texts)
        text_to_indices: Dict[str, List[int]] = {}

        for idx, text in enumerate(texts):
            if self.enable_cache and text in self._cache:
                results[idx] = self._cache[text]
            else:
                text_to_indices.setdefault(text, []).append(idx)

        uncached = list(text_to_indices.keys())

        for i in range(0, len(uncached), self.batch_size):
            batch = uncached[i : i + self.batch_size]
            embeddings = self._embed_batch(batch)
            for text, emb in zip(batch, embeddings):
                for idx in text_to_indices[text]:
                    results[idx] = emb
                if self.enable_cache:
                    self._cache[text] = emb

        return [emb for emb in results if emb is not None]

    def embed(self, text: str) -> List[float]:
        """Embed a single document, truncated to ``max_chars``."""
        return self.embed_texts([text[: self.max_chars]])[0]

    async def aembed(self, text: str) -> List[float]:
        """Embed ``text`` off the event loop, bounded by ``timeout``.

        Every failure mode (SDK error, timeout, malformed output) surfaces
        as :class:`ProviderUnavailableError`.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.embed, text), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "embedding_timeout", extra={"model": self.model, "timeout": self.timeout}
            )
            raise ProviderUnavailableError(
                f"Embedding provider timed out after {self.timeout}s"
            ) from exc
        except Exception as exc:
            logger.warning(
                "embedding_failed", extra={"model": self.model, "reason": str(exc)}
            )
            raise ProviderUnavailableError(f"Embedding provider failed: {exc}") from exc


__all__ = ["EmbeddingsProvider"]
