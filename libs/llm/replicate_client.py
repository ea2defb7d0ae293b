from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import replicate
import yaml

from libs.core.models import PIIDetection
from libs.core.settings import Settings, get_settings

from .llm_client import ClassificationClient
from .rule_based import RuleBasedClassificationClient

MAX_CLASSIFY_CHARS = 2000


class LLMClientError(Exception):
    """Raised when interaction with LLM fails."""


class ReplicateClassificationClient(ClassificationClient):
    """Classifier powered by a Replicate-hosted chat model.

    Any LLM failure degrades to :class:`RuleBasedClassificationClient`
    so fragment processing never fails because of classification.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        prompts_path: str | Path | None = None,
        fallback: ClassificationClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.model: str = getattr(self.settings, "classification_model", "openai/gpt-5-nano")
        self.fallback = fallback or RuleBasedClassificationClient()
        self.logger = logging.getLogger(__name__)

        self.prompts_path = (
            Path(prompts_path)
            if prompts_path is not None
            else Path(self.settings.prompts_path)
        )
        try:
            with self.prompts_path.open("r", encoding="utf-8") as fh:
                self.prompts: Dict[str, Dict[str, str]] = yaml.safe_load(fh) or {}
            self.logger.debug("Prompts loaded from: %s", str(self.prompts_path))
        except FileNotFoundError as exc:
            raise LLMClientError(
                f"Prompts file not found: {self.prompts_path}"
            ) from exc
        except yaml.YAMLError as exc:
            raise LLMClientError("Failed to parse prompts file") from exc

    def _prompt(self, section: str, key: str) -> str:
        try:
            return self.prompts[section][key]
        except KeyError as exc:
            raise LLMClientError(
                f"Prompt '{section}.{key}' not found in {self.prompts_path}"
            ) from exc

    def _join_output(self, out: Union[str, Iterable[str], Dict[str, Any], None]) -> str:
        if out is None:
            return ""
        if isinstance(out, str):
            return out
        if isinstance(out, dict):
            text = out.get("text")
            return text if isinstance(text, str) else json.dumps(out, ensure_ascii=False)
        # Many models stream an iterator of string chunks
        return "".join(str(chunk) for chunk in out)

    def _parse_labels(self, text: str) -> List[str]:
        """Parse a JSON array of labels, tolerating code fences and prose."""
        s = text.strip()
        if s.startswith("```"):
            lines = s.splitlines()[1:]
            if lines and lines[-1].strip().startswith("```"):
                lines = lines[:-1]
            s = "\n".join(lines).strip()
        if "[" in s and "]" in s:
            s = s[s.find("[") : s.rfind("]") + 1]
        try:
            data = json.loads(s)
        except ValueError as exc:
            preview = (s[:200] + "…") if len(s) > 200 else s
            raise LLMClientError(
                f"Failed to parse JSON array from Replicate output. Preview: {preview}"
            ) from exc
        if not isinstance(data, list):
            raise LLMClientError("Expected a JSON array of labels")
        labels: List[str] = []
        for item in data:
            label = str(item).strip().lower()
            if label and label not in labels:
                labels.append(label)
        return labels

    def _call(self, messages: List[Dict[str, str]]) -> str:
        payload: Dict[str, Any] = {
            "messages": messages,
            "max_completion_tokens": 100,
            "reasoning_effort": "minimal",
        }
        self.logger.debug("Replicate request | model=%s", self.model)
        try:
            out = replicate.run(self.model, input=payload)
            return self._join_output(out)
        except Exception as exc:
            self.logger.exception("Replicate request failed: %s", exc)
            raise LLMClientError(f"Replicate request failed: {exc}") from exc

    def _classify(self, section: str, text: str) -> List[str]:
        content = self._call(
            [
                {"role": "system", "content": self._prompt(section, "system")},
                {
                    "role": "user",
                    "content": self._prompt(section, "user").format(
                        text=text[:MAX_CLASSIFY_CHARS]
                    ),
                },
            ]
        )
        return self._parse_labels(content)

    def classify_emotions(self, text: str) -> List[str]:
        try:
            return self._classify("emotions", text)
        except LLMClientError as exc:
            self.logger.warning("classification_fallback", extra={"kind": "emotions", "reason": str(exc)})
            return self.fallback.classify_emotions(text)

    def classify_themes(self, text: str) -> List[str]:
        try:
            return self._classify("themes", text)
        except LLMClientError as exc:
            self.logger.warning("classification_fallback", extra={"kind": "themes", "reason": str(exc)})
            return self.fallback.classify_themes(text)

    def detect_pii(self, text: str) -> List[PIIDetection]:
        # Regex detection is more reliable than the LLM for PII
        return self.fallback.detect_pii(text)


__all__ = ["ReplicateClassificationClient", "LLMClientError"]
