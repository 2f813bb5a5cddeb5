"""Span bookkeeping: sorted, non-overlapping byte ranges of one resource."""

from bisect import bisect_right
from dataclasses import dataclass, field


@dataclass
class Span:
    start: int
    end: int
    last_access: float = 0.0

    @property
    def size(self) -> int:
        return self.end - self.start

    def contains(self, pos: int) -> bool:
        return self.start <= pos < self.end


@dataclass
class Segment:
    """One piece of a planned read: either served from a span or a gap to fetch."""
    start: int
    end: int | None
    cached: bool


@dataclass
class ResourceEntry:
    length: int | None = None
    spans: list[Span] = field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(s.size for s in self.spans)


def overlaps(a_start: int, a_end: int | None, b_start: int, b_end: int | None) -> bool:
    """Overlap test for closed-open ranges, None meaning unbounded."""
    if a_end is not None and a_end <= b_start:
        return False
    if b_end is not None and b_end <= a_start:
        return False
    return True


def find_span(spans: list[Span], pos: int) -> Span | None:
    """Return the span containing pos, if any."""
    i = bisect_right([s.start for s in spans], pos) - 1
    if i >= 0 and spans[i].contains(pos):
        return spans[i]
    return None


def next_span_start(spans: list[Span], pos: int) -> int | None:
    """Start of the first span beginning after pos."""
    i = bisect_right([s.start for s in spans], pos)
    return spans[i].start if i < len(spans) else None


def plan_segments(spans: list[Span], start: int, end: int | None) -> list[Segment]:
    """
    Intersect [start, end) with the sorted span list.

    Returns the ordered cached/missing pieces covering the whole request. With
    end=None the trailing gap is open-ended.
    """
    segments = []
    cur = start
    for s in spans:
        if s.end <= cur:
            continue
        if end is not None and s.start >= end:
            break
        if s.start > cur:
            segments.append(Segment(cur, s.start, cached=False))
            cur = s.start
        seg_end = s.end if end is None else min(s.end, end)
        segments.append(Segment(cur, seg_end, cached=True))
        cur = seg_end
        if end is not None and cur >= end:
            break
    if end is None:
        segments.append(Segment(cur, None, cached=False))
    elif cur < end:
        segments.append(Segment(cur, end, cached=False))
    return segments


def missing_ranges(spans: list[Span], start: int, end: int) -> list[tuple[int, int]]:
    return [(seg.start, seg.end) for seg in plan_segments(spans, start, end) if not seg.cached]


def adjacent(spans: list[Span], start: int, end: int) -> tuple[Span | None, Span | None]:
    """Neighbours that a new span [start, end) in a gap would merge with."""
    left = right = None
    for s in spans:
        if s.end == start:
            left = s
        elif s.start == end:
            right = s
    return left, right


def is_normalized(spans: list[Span]) -> bool:
    """True if spans are ascending, non-empty, non-overlapping and non-adjacent."""
    for s in spans:
        if s.size <= 0:
            return False
    return all(a.end < b.start for a, b in zip(spans, spans[1:]))
