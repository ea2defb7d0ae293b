"""Keyword and regex classification that works without any external API."""

from __future__ import annotations

import re
from typing import Dict, List, Pattern, Tuple

from libs.core.models import PIIDetection

from .llm_client import ClassificationClient

EMOTION_KEYWORDS: Dict[str, List[str]] = {
    "joy": ["happy", "excited", "joy", "celebration", "wonderful", "amazing", "great", "love"],
    "sadness": ["sad", "disappointed", "lonely", "grief", "loss", "hurt", "pain"],
    "anger": ["angry", "frustrated", "mad", "rage", "furious", "annoyed"],
    "fear": ["scared", "afraid", "anxious", "worried", "nervous", "panic"],
    "surprise": ["surprised", "shocked", "unexpected", "sudden", "wow"],
    "nostalgia": ["remember", "reminds", "childhood", "past", "memories", "used to"],
    "gratitude": ["grateful", "thankful", "appreciate", "blessed", "lucky"],
    "pride": ["proud", "accomplished", "achievement", "success", "won"],
}

THEME_KEYWORDS: Dict[str, List[str]] = {
    "family": ["family", "mother", "father", "parents", "siblings", "children", "kids", "relatives"],
    "work": ["work", "job", "career", "office", "colleague", "boss", "meeting", "project"],
    "travel": ["travel", "trip", "vacation", "journey", "airport", "hotel", "sightseeing"],
    "health": ["health", "doctor", "hospital", "medicine", "exercise", "fitness", "illness"],
    "education": ["school", "university", "learning", "study", "teacher", "student", "exam"],
    "relationships": ["friend", "partner", "relationship", "dating", "marriage", "love"],
    "hobbies": ["hobby", "music", "art", "reading", "sports", "gaming", "cooking"],
    "home": ["home", "house", "apartment", "garden", "neighborhood", "moving"],
    "nature": ["nature", "outdoors", "hiking", "beach", "mountains", "forest", "animals"],
    "celebration": ["birthday", "wedding", "holiday", "party", "anniversary", "graduation"],
}

# Order matters: the card pattern must win over the shorter phone pattern
PII_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("credit_card", re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("phone", re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")),
]


def _matches(text: str, keywords: List[str]) -> bool:
    return any(re.search(rf"\b{re.escape(k)}\b", text) for k in keywords)


class RuleBasedClassificationClient(ClassificationClient):
    """Deterministic classifier used directly and as the LLM fallback."""

    def classify_emotions(self, text: str) -> List[str]:
        lower = text.lower()
        return [e for e, kws in EMOTION_KEYWORDS.items() if _matches(lower, kws)]

    def classify_themes(self, text: str) -> List[str]:
        lower = text.lower()
        return [t for t, kws in THEME_KEYWORDS.items() if _matches(lower, kws)]

    def detect_pii(self, text: str) -> List[PIIDetection]:
        detections: List[PIIDetection] = []
        taken: List[Tuple[int, int]] = []
        for kind, pattern in PII_PATTERNS:
            for m in pattern.finditer(text):
                if any(m.start() < end and start < m.end() for start, end in taken):
                    continue
                taken.append((m.start(), m.end()))
                detections.append(
                    PIIDetection(
                        text=m.group(0),
                        type=kind,
                        start=m.start(),
                        end=m.end(),
                        confidence=0.9,
                    )
                )
        return sorted(detections, key=lambda d: d.start)


__all__ = ["RuleBasedClassificationClient", "EMOTION_KEYWORDS", "THEME_KEYWORDS"]
