from .advanced_search import AdvancedSearch
from .link_rules import compute_rule_links
from .process_fragment import CreateFragment, ProcessFragment
from .recommendations import (
    FixtureRecommendationSource,
    LiveRecommendationSource,
    RecommendationSource,
)
from .recompute_links import RecomputeLinks
from .search import FindSimilar

__all__ = [
    "AdvancedSearch",
    "compute_rule_links",
    "CreateFragment",
    "ProcessFragment",
    "RecommendationSource",
    "LiveRecommendationSource",
    "FixtureRecommendationSource",
    "RecomputeLinks",
    "FindSimilar",
]
