"""Base exceptions for the domain layer."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DomainError(Exception):
    """Base class for all domain level exceptions."""


class NotFoundError(DomainError):
    """Raised when an entity cannot be located."""


class ForbiddenError(DomainError):
    """Raised when the caller may not access an entity."""


class NotReadyError(DomainError):
    """Raised when a fragment has not finished processing."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status


class ValidationError(DomainError):
    """Raised when data fails domain validation rules."""

    def __init__(
        self, message: str, details: Optional[List[Dict[str, Any]]] = None
    ) -> None:
        super().__init__(message)
        self.details = details or []


class DimensionMismatchError(DomainError):
    """Raised when two vectors of different length are compared."""


class ProviderUnavailableError(DomainError):
    """Raised when an embedding, index or lexical provider call fails."""


class SearchUnavailableError(DomainError):
    """Raised when every retrieval method failed; the caller may retry."""


__all__ = [
    "DomainError",
    "NotFoundError",
    "ForbiddenError",
    "NotReadyError",
    "ValidationError",
    "DimensionMismatchError",
    "ProviderUnavailableError",
    "SearchUnavailableError",
]
