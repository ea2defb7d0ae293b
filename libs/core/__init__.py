"""Core library exposing domain models, settings and exceptions."""

from .settings import Settings, get_settings
from .exceptions import (
    DomainError,
    NotFoundError,
    ForbiddenError,
    NotReadyError,
    ValidationError,
    DimensionMismatchError,
    ProviderUnavailableError,
    SearchUnavailableError,
)
from .models import (
    User,
    Fragment,
    ScoredFragment,
    Link,
    LinkType,
    FragmentStatus,
    Visibility,
    SearchCluster,
    SearchFilters,
    SearchWeights,
)

__all__ = [
    "Settings",
    "get_settings",
    "DomainError",
    "NotFoundError",
    "ForbiddenError",
    "NotReadyError",
    "ValidationError",
    "DimensionMismatchError",
    "ProviderUnavailableError",
    "SearchUnavailableError",
    "User",
    "Fragment",
    "ScoredFragment",
    "Link",
    "LinkType",
    "FragmentStatus",
    "Visibility",
    "SearchCluster",
    "SearchFilters",
    "SearchWeights",
]
