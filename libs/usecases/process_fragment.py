from __future__ import annotations

import asyncio
import logging
from typing import Optional

from libs.core.exceptions import ValidationError
from libs.core.models import Fragment, FragmentCreate
from libs.core.settings import get_settings
from libs.db.repositories import FragmentRepo
from libs.llm.embeddings_provider import EmbeddingsProvider
from libs.llm.llm_client import ClassificationClient
from libs.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)


def fragment_text(title: str, body: str) -> str:
    return f"{title}\n\n{body}".strip()


class CreateFragment:
    """Validate a submitted fragment and persist it as ``PROCESSING``."""

    def __init__(self, fragment_repo: FragmentRepo, classifier: ClassificationClient) -> None:
        self.fragment_repo = fragment_repo
        self.classifier = classifier

    # ------------------------------------------------------------------
    async def __call__(self, payload: FragmentCreate, user_id: str) -> Fragment:
        detections = self.classifier.detect_pii(fragment_text(payload.title, payload.body))
        if detections:
            logger.info(
                "fragment_rejected_pii",
                extra={"user_id": user_id, "types": sorted({d.type for d in detections})},
            )
            raise ValidationError(
                "Content contains personal information",
                details=[d.model_dump() for d in detections],
            )
        fragment = await self.fragment_repo.create(user_id, payload)
        logger.info(
            "fragment_created", extra={"fragment_id": fragment.id, "user_id": user_id}
        )
        return fragment


class ProcessFragment:
    """Embed and classify a fragment, then mark it ``READY``.

    Any failure while embedding, classifying or storing the analysis marks
    the fragment ``FAILED``, including a provider call that outlives
    ``timeout``. Indexing happens after the fragment is ``READY`` and its
    failure is only logged: the fragment is still served by full-text
    search and exact rescoring.
    """

    def __init__(
        self,
        fragment_repo: FragmentRepo,
        embeddings: EmbeddingsProvider,
        classifier: ClassificationClient,
        index: Optional[VectorIndex] = None,
        timeout: float | None = None,
    ) -> None:
        self.fragment_repo = fragment_repo
        self.embeddings = embeddings
        self.classifier = classifier
        self.index = index
        self.timeout = timeout if timeout is not None else get_settings().provider_timeout

    async def _bounded(self, fn, *args):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)

    # ------------------------------------------------------------------
    async def __call__(self, fragment_id: str) -> Optional[Fragment]:
        fragment = await self.fragment_repo.get(fragment_id)
        if fragment is None:
            logger.warning("fragment_missing", extra={"fragment_id": fragment_id})
            return None

        text = fragment_text(fragment.title, fragment.body)
        try:
            embedding = await self.embeddings.aembed(text)
            emotions = await self._bounded(self.classifier.classify_emotions, text)
            themes = await self._bounded(self.classifier.classify_themes, text)
            ready = await self.fragment_repo.mark_ready(
                fragment.id, embedding, themes=themes, emotions=emotions
            )
        except Exception:
            logger.exception("fragment_processing_failed", extra={"fragment_id": fragment.id})
            await self.fragment_repo.mark_failed(fragment.id)
            return None

        if self.index is not None:
            try:
                await self._bounded(self.index.upsert_fragment, ready)
            except Exception as exc:
                logger.warning(
                    "vector_index_upsert_failed",
                    extra={"fragment_id": ready.id, "reason": str(exc) or type(exc).__name__},
                )
        logger.info(
            "fragment_ready",
            extra={"fragment_id": ready.id, "themes": themes, "emotions": emotions},
        )
        return ready


__all__ = ["CreateFragment", "ProcessFragment", "fragment_text"]
