from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from libs.core.models import PIIDetection


class ClassificationClient(ABC):
    """Abstract interface for fragment classification."""

    @abstractmethod
    def classify_emotions(self, text: str) -> List[str]:
        """Return emotions expressed in ``text``."""

    @abstractmethod
    def classify_themes(self, text: str) -> List[str]:
        """Return life themes the text is about."""

    @abstractmethod
    def detect_pii(self, text: str) -> List[PIIDetection]:
        """Locate personally identifiable information in ``text``."""
