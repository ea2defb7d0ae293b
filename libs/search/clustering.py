"""Group search results into theme clusters.

Each fragment goes to the bucket of its first theme (``"general"`` when it
has none). Buckets with at least two members become clusters; the rest are
returned as individual results. This is a single O(n) partition, not a
similarity-graph clustering, so the output is deterministic.
"""

from __future__ import annotations

import hashlib
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from libs.core.models import ScoredFragment, SearchCluster, TimeSpan

MIN_RESULTS = 3
MIN_CLUSTER_SIZE = 2
DEFAULT_BUCKET = "general"


def _common(values: Iterable[str], top: int = 3) -> List[str]:
    """Values seen at least twice, most frequent first."""
    counts = Counter(values)
    return [v for v, c in counts.most_common() if c >= 2][:top]


def time_span(fragments: Sequence[ScoredFragment]) -> Optional[TimeSpan]:
    dates = [f.created_at for f in fragments if f.created_at is not None]
    if not dates:
        return None
    return TimeSpan(start=min(dates), end=max(dates))


def significance(fragments: Sequence[ScoredFragment]) -> float:
    size_factor = min(len(fragments) / 10, 1.0)
    all_themes = [t for f in fragments for t in f.themes]
    unique = len(set(all_themes))
    consistency = len(all_themes) / unique / len(fragments) if unique else 0.0
    return (size_factor + consistency) / 2


def cluster_title(themes: Sequence[str], count: int) -> str:
    if not themes:
        return f"{count} Related Memories"
    if len(themes) == 1:
        return f"{themes[0]} Stories ({count})"
    return f"{themes[0]} & {themes[1]} Collection ({count})"


def cluster_description(
    themes: Sequence[str], emotions: Sequence[str], count: int
) -> str:
    theme_text = " and ".join(themes[:2]) if themes else "various themes"
    emotion_text = " and ".join(emotions[:2]) if emotions else "mixed emotions"
    return f"{count} memories exploring {theme_text} with {emotion_text}"


def _cluster_id(members: Sequence[ScoredFragment]) -> str:
    digest = hashlib.sha1("|".join(sorted(m.id for m in members)).encode("utf-8"))
    return f"cluster_{digest.hexdigest()[:12]}"


def _buckets(fragments: Sequence[ScoredFragment]) -> Dict[str, List[ScoredFragment]]:
    buckets: Dict[str, List[ScoredFragment]] = {}
    for fragment in fragments:
        key = fragment.themes[0] if fragment.themes else DEFAULT_BUCKET
        buckets.setdefault(key, []).append(fragment)
    return buckets


def _build(members: List[ScoredFragment]) -> SearchCluster:
    themes = _common(t for m in members for t in m.themes)
    emotions = _common(e for m in members for e in m.emotions)
    return SearchCluster(
        id=_cluster_id(members),
        title=cluster_title(themes, len(members)),
        description=cluster_description(themes, emotions, len(members)),
        fragments=members,
        common_themes=themes,
        common_emotions=emotions,
        time_span=time_span(members),
        significance=significance(members),
    )


def split_clusters(
    fragments: Sequence[ScoredFragment],
) -> Tuple[List[SearchCluster], List[ScoredFragment]]:
    """Return ``(clusters, individual results)``.

    With fewer than three inputs nothing is clustered.
    """
    if len(fragments) < MIN_RESULTS:
        return [], list(fragments)
    clusters: List[SearchCluster] = []
    clustered_ids = set()
    for members in _buckets(fragments).values():
        if len(members) < MIN_CLUSTER_SIZE:
            continue
        clusters.append(_build(members))
        clustered_ids.update(m.id for m in members)
    clusters.sort(key=lambda c: c.significance, reverse=True)
    individual = [f for f in fragments if f.id not in clustered_ids]
    return clusters, individual


def cluster_results(fragments: Sequence[ScoredFragment]) -> List[SearchCluster]:
    return split_clusters(fragments)[0]


__all__ = [
    "cluster_results",
    "split_clusters",
    "significance",
    "time_span",
    "cluster_title",
    "cluster_description",
]
