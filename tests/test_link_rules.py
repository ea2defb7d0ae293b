from datetime import timedelta

import pytest

from libs.core.models import LinkType
from libs.usecases.link_rules import (
    compute_rule_links,
    haversine_m,
    jaccard,
    location_link,
    shared_tag_link,
    time_window_link,
)

WEEK = timedelta(days=7)


def test_shared_tags_score_is_jaccard(make_fragment):
    a = make_fragment("a", tags=["summer", "lake", "family"])
    b = make_fragment("b", tags=["Lake", "family"])

    draft = shared_tag_link(a, b)

    assert draft.type == LinkType.SHARED_TAG
    assert draft.score == pytest.approx(2 / 3)
    assert "family, lake" in draft.reason


def test_no_shared_tags_no_link(make_fragment):
    assert shared_tag_link(make_fragment("a", tags=["x"]), make_fragment("b", tags=["y"])) is None
    assert shared_tag_link(make_fragment("a"), make_fragment("b")) is None


def test_time_window_inclusive(make_fragment, later):
    a = make_fragment("a", event_at=later())
    inside = make_fragment("b", event_at=later(days=7))
    outside = make_fragment("c", event_at=later(days=7, hours=1))

    draft = time_window_link(a, inside, WEEK)

    assert draft.score == pytest.approx(0.8)
    assert "7 days apart" in draft.reason
    assert time_window_link(a, outside, WEEK) is None


def test_time_window_requires_both_dates(make_fragment, later):
    a = make_fragment("a", event_at=later())
    assert time_window_link(a, make_fragment("b"), WEEK) is None


def test_haversine_known_distance():
    # One degree of latitude is roughly 111 km
    assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-3)
    assert haversine_m(48.85, 2.35, 48.85, 2.35) == 0.0


def test_location_by_coordinates(make_fragment):
    a = make_fragment("a", lat=48.8566, lng=2.3522, location_text="Paris")
    near = make_fragment("b", lat=48.8600, lng=2.3522)
    far = make_fragment("c", lat=48.9566, lng=2.3522, location_text="Paris")

    draft = location_link(a, near, 1000.0)

    assert draft.type == LinkType.SAME_LOCATION
    distance = haversine_m(48.8566, 2.3522, 48.8600, 2.3522)
    assert draft.score == pytest.approx(1 - distance / 1000.0)
    assert "Paris" in draft.reason
    # Coordinates take precedence over matching place names
    assert location_link(a, far, 1000.0) is None


def test_location_by_place_name(make_fragment):
    a = make_fragment("a", location_text=" Lisbon ")
    b = make_fragment("b", location_text="lisbon")
    c = make_fragment("c", location_text="Porto")

    assert location_link(a, b, 1000.0).score == 1.0
    assert location_link(a, c, 1000.0) is None


def test_compute_rule_links_skips_source_and_emits_each_rule(make_fragment, later):
    source = make_fragment("s", tags=["lake"], event_at=later(), location_text="Lisbon")
    other = make_fragment(
        "o", tags=["lake"], event_at=later(days=1), location_text="Lisbon"
    )
    unrelated = make_fragment("u", tags=["city"], event_at=later(days=30))

    drafts = compute_rule_links(source, [source, other, unrelated], WEEK, 1000.0)

    assert {(d.to_id, d.type) for d in drafts} == {
        ("o", LinkType.SHARED_TAG),
        ("o", LinkType.SAME_TIMEWINDOW),
        ("o", LinkType.SAME_LOCATION),
    }


def test_jaccard_edge_cases():
    assert jaccard([], []) == 0.0
    assert jaccard(["a"], ["a"]) == 1.0
