from attendance.coalescer import coalesce, last_seen, merge_intervals
from attendance.models import CoverageInterval
from helpers import at, event


def test_back_to_back_reconnects_coalesce():
    coverage = coalesce([event("a@x.com", 0, 30), event("a@x.com", 30, 60)])
    assert coverage == [CoverageInterval(at(0), at(60))]


def test_overlap_and_gap():
    coverage = coalesce([
        event("a@x.com", 0, 20),
        event("a@x.com", 10, 25),
        event("a@x.com", 30, 40),
    ])
    assert coverage == [CoverageInterval(at(0), at(25)), CoverageInterval(at(30), at(40))]


def test_contained_segment_does_not_shrink_interval():
    coverage = coalesce([event("a@x.com", 0, 50), event("a@x.com", 10, 20)])
    assert coverage == [CoverageInterval(at(0), at(50))]


def test_leave_before_join_is_clamped_not_dropped():
    coverage = coalesce([event("a@x.com", 10, 5), event("a@x.com", 20, 30)])
    assert coverage == [CoverageInterval(at(10), at(10)), CoverageInterval(at(20), at(30))]
    assert coverage[0].seconds == 0


def test_coalescing_is_idempotent():
    coverage = coalesce([
        event("a@x.com", 0, 20),
        event("a@x.com", 15, 25),
        event("a@x.com", 40, 45),
    ])
    assert merge_intervals(coverage) == coverage


def test_total_never_exceeds_span():
    segments = [event("a@x.com", 0, 20), event("a@x.com", 5, 35), event("a@x.com", 50, 55)]
    coverage = coalesce(segments)
    total = sum(iv.seconds for iv in coverage)
    assert total <= (at(55) - at(0)).total_seconds()
    assert all(a.end < b.start for a, b in zip(coverage, coverage[1:]))


def test_last_seen():
    assert last_seen([]) is None
    assert last_seen(coalesce([event("a@x.com", 0, 10), event("a@x.com", 20, 42)])) == at(42)
