"""Rule-based link scoring: shared tags, time window and location."""

from __future__ import annotations

import math
from datetime import timedelta
from typing import List, Optional, Sequence

from libs.core.models import Fragment, LinkDraft, LinkType

TIMEWINDOW_SCORE = 0.8
EARTH_RADIUS_M = 6_371_000.0


def jaccard(a: Sequence[str], b: Sequence[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def describe_delta(delta: timedelta) -> str:
    seconds = abs(delta.total_seconds())
    days = int(seconds // 86400)
    if days >= 1:
        return f"{days} day{'s' if days != 1 else ''} apart"
    hours = int(seconds // 3600)
    if hours >= 1:
        return f"{hours} hour{'s' if hours != 1 else ''} apart"
    return "less than an hour apart"


def _norm_tags(tags: Sequence[str]) -> List[str]:
    return [t.strip().lower() for t in tags if t.strip()]


def _norm_place(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def shared_tag_link(source: Fragment, other: Fragment) -> Optional[LinkDraft]:
    mine, theirs = _norm_tags(source.tags), _norm_tags(other.tags)
    shared = sorted(set(mine) & set(theirs))
    if not shared:
        return None
    plural = "tag" if len(shared) == 1 else "tags"
    return LinkDraft(
        to_id=other.id,
        type=LinkType.SHARED_TAG,
        score=jaccard(mine, theirs),
        reason=f"Shares {len(shared)} {plural}: {', '.join(shared)}",
    )


def time_window_link(
    source: Fragment, other: Fragment, window: timedelta
) -> Optional[LinkDraft]:
    if source.event_at is None or other.event_at is None:
        return None
    delta = other.event_at - source.event_at
    if abs(delta) > window:
        return None
    return LinkDraft(
        to_id=other.id,
        type=LinkType.SAME_TIMEWINDOW,
        score=TIMEWINDOW_SCORE,
        reason=f"Occurred within the same time window ({describe_delta(delta)})",
    )


def location_link(
    source: Fragment, other: Fragment, radius_m: float
) -> Optional[LinkDraft]:
    """Coordinates win over place names when both fragments have them."""
    if None not in (source.lat, source.lng, other.lat, other.lng):
        distance = haversine_m(source.lat, source.lng, other.lat, other.lng)
        if distance > radius_m:
            return None
        place = source.location_text or "same area"
        return LinkDraft(
            to_id=other.id,
            type=LinkType.SAME_LOCATION,
            score=max(0.0, 1.0 - distance / radius_m),
            reason=f"Located nearby ({distance:.0f}m apart) in {place}",
        )
    place = _norm_place(source.location_text)
    if place and place == _norm_place(other.location_text):
        return LinkDraft(
            to_id=other.id,
            type=LinkType.SAME_LOCATION,
            score=1.0,
            reason=f"Both took place in {source.location_text.strip()}",
        )
    return None


def compute_rule_links(
    source: Fragment,
    candidates: Sequence[Fragment],
    window: timedelta,
    radius_m: float,
) -> List[LinkDraft]:
    """Evaluate every rule for every candidate other than ``source``."""
    drafts: List[LinkDraft] = []
    for other in candidates:
        if other.id == source.id:
            continue
        for draft in (
            shared_tag_link(source, other),
            time_window_link(source, other, window),
            location_link(source, other, radius_m),
        ):
            if draft is not None:
                drafts.append(draft)
    return drafts


__all__ = [
    "compute_rule_links",
    "shared_tag_link",
    "time_window_link",
    "location_link",
    "jaccard",
    "haversine_m",
]
