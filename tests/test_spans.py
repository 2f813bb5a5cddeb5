"""Span planning and bookkeeping helpers"""

from mediacache.spans import (
    Segment, Span, adjacent, find_span, is_normalized, missing_ranges,
    next_span_start, overlaps, plan_segments,
)

SPANS = [Span(0, 100), Span(200, 300)]


class TestPlanSegments:
    def test_empty_cache_is_one_gap(self):
        assert plan_segments([], 100, 500) == [Segment(100, 500, cached=False)]

    def test_mixed_cached_and_missing(self):
        assert plan_segments(SPANS, 50, 250) == [
            Segment(50, 100, cached=True),
            Segment(100, 200, cached=False),
            Segment(200, 250, cached=True),
        ]

    def test_fully_cached(self):
        assert plan_segments(SPANS, 210, 290) == [Segment(210, 290, cached=True)]

    def test_open_ended_request_ends_with_unbounded_gap(self):
        assert plan_segments(SPANS, 250, None) == [
            Segment(250, 300, cached=True),
            Segment(300, None, cached=False),
        ]

    def test_request_between_spans(self):
        assert plan_segments(SPANS, 120, 180) == [Segment(120, 180, cached=False)]

    def test_missing_ranges(self):
        assert missing_ranges(SPANS, 0, 400) == [(100, 200), (300, 400)]
        assert missing_ranges(SPANS, 0, 100) == []


class TestLookup:
    def test_find_span(self):
        assert find_span(SPANS, 0) is SPANS[0]
        assert find_span(SPANS, 99) is SPANS[0]
        assert find_span(SPANS, 100) is None
        assert find_span(SPANS, 250) is SPANS[1]
        assert find_span([], 0) is None

    def test_next_span_start(self):
        assert next_span_start(SPANS, 100) == 200
        assert next_span_start(SPANS, 0) == 200
        assert next_span_start(SPANS, 250) is None

    def test_adjacent(self):
        left, right = adjacent(SPANS, 100, 200)
        assert left is SPANS[0]
        assert right is SPANS[1]
        assert adjacent(SPANS, 120, 150) == (None, None)

    def test_overlaps_with_unbounded_end(self):
        assert overlaps(0, None, 500, 600)
        assert not overlaps(0, 100, 100, 200)
        assert overlaps(50, 150, 100, None)
        assert not overlaps(300, None, 100, 300)


class TestNormalized:
    def test_normalized(self):
        assert is_normalized(SPANS)
        assert is_normalized([])

    def test_adjacent_spans_are_not_normalized(self):
        assert not is_normalized([Span(0, 100), Span(100, 200)])

    def test_overlapping_or_empty_spans_are_not_normalized(self):
        assert not is_normalized([Span(0, 150), Span(100, 200)])
        assert not is_normalized([Span(10, 10)])

    def test_span_size(self):
        assert Span(100, 350).size == 250
