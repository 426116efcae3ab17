import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Iterable, Optional

from hls_inspector.errors import ComputationError
from hls_inspector.hls.models import DateRangeInterval
from hls_inspector.hls.navigator import PlaylistView, SegmentView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverlapResult:
    date_range: DateRangeInterval
    anchor: datetime
    start: Fraction
    end: Optional[Fraction]
    media_sequences: tuple[int, ...]


def timedelta_to_seconds(delta: timedelta) -> Fraction:
    return Fraction(delta.days * 86400 + delta.seconds) + Fraction(delta.microseconds, 1_000_000)


def compute_overlap(
    segments: Iterable[SegmentView], date_range: DateRangeInterval, anchor: Optional[datetime]
) -> tuple[int, ...]:
    """
    Finds the segments whose timeline window intersects a date range.

    Windows are half-open on both sides: a segment ending exactly where the date range
    starts is excluded, one starting exactly there is included. A date range without
    duration or end is an instant and selects the segment containing it.

    Args:
        segments: Segment windows as produced by the navigator, in playlist order.
        date_range (DateRangeInterval): The date range to place on the timeline.
        anchor (datetime, optional): Wall-clock instant of the playlist timeline origin.

    Returns:
        tuple[int, ...]: Ascending media sequence numbers of the overlapping segments.

    Raises:
        ComputationError: If no anchor is available.
    """
    if anchor is None:
        raise ComputationError(
            f"date range {date_range.id!r} cannot be placed on a timeline without EXT-X-PROGRAM-DATE-TIME"
        )

    start = timedelta_to_seconds(date_range.start - anchor)
    end_instant = date_range.end
    end = timedelta_to_seconds(end_instant - anchor) if end_instant is not None else None

    sequences = []
    for segment in segments:
        if end is None or end == start:
            hit = segment.start <= start < segment.end
        else:
            hit = segment.start < end and segment.end > start
        if hit:
            sequences.append(segment.media_sequence)

    logger.debug(f"Date range {date_range.id} at [{float(start)}, {end}) overlaps segments {sequences}")
    return tuple(sorted(sequences))


def overlap_for(view: PlaylistView, daterange_id: str) -> OverlapResult:
    """Places the date range with ``daterange_id`` on the timeline of a navigated playlist."""
    date_range = view.playlist.date_range(daterange_id)
    if date_range is None:
        raise ComputationError(f"playlist has no date range with ID {daterange_id!r}")

    sequences = compute_overlap(view.segments, date_range, view.anchor)
    end_instant = date_range.end
    return OverlapResult(
        date_range=date_range,
        anchor=view.anchor,
        start=timedelta_to_seconds(date_range.start - view.anchor),
        end=timedelta_to_seconds(end_instant - view.anchor) if end_instant is not None else None,
        media_sequences=sequences,
    )
