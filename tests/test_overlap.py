from datetime import datetime, timedelta, timezone
from fractions import Fraction

import pytest

from hls_inspector.errors import ComputationError
from hls_inspector.hls.models import DateRangeInterval
from hls_inspector.hls.navigator import navigate
from hls_inspector.hls.overlap import compute_overlap, overlap_for
from hls_inspector.hls.parser import parse_playlist

ANCHOR = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXT-X-MEDIA-SEQUENCE:20
#EXT-X-PROGRAM-DATE-TIME:2024-05-01T10:00:00Z
#EXTINF:4,
s20.ts
#EXT-X-DATERANGE:ID="ad",START-DATE="2024-05-01T10:00:04Z",DURATION=8
#EXTINF:4,
s21.ts
#EXTINF:4,
s22.ts
#EXTINF:4,
s23.ts
#EXT-X-DATERANGE:ID="marker",START-DATE="2024-05-01T10:00:09.5Z"
"""


def _segments():
    return navigate(parse_playlist(PLAYLIST, "https://cdn.example.com/index.m3u8")).segments


def _interval(start_offset: float, duration=None, end_offset=None) -> DateRangeInterval:
    return DateRangeInterval(
        id="d",
        start=ANCHOR + timedelta(seconds=start_offset),
        line=1,
        duration=Fraction(duration) if duration is not None else None,
        end_date=ANCHOR + timedelta(seconds=end_offset) if end_offset is not None else None,
    )


def test_interval_start_is_half_open():
    # segment 20 ends exactly at 4s and is excluded, segment 21 starts there and is included
    assert compute_overlap(_segments(), _interval(4, duration=8), ANCHOR) == (21, 22)


def test_interval_spanning_part_of_segments():
    assert compute_overlap(_segments(), _interval(3, end_offset=9), ANCHOR) == (20, 21, 22)


def test_instant_selects_containing_segment():
    assert compute_overlap(_segments(), _interval(8), ANCHOR) == (22,)
    assert compute_overlap(_segments(), _interval(7.5, duration=0), ANCHOR) == (21,)


def test_interval_outside_timeline():
    assert compute_overlap(_segments(), _interval(100, duration=5), ANCHOR) == ()
    assert compute_overlap(_segments(), _interval(-10, duration=5), ANCHOR) == ()


def test_missing_anchor_raises():
    with pytest.raises(ComputationError):
        compute_overlap(_segments(), _interval(0, duration=4), None)


def test_overlap_for_playlist_date_range():
    view = navigate(parse_playlist(PLAYLIST, "https://cdn.example.com/index.m3u8"))

    result = overlap_for(view, "ad")
    assert result.anchor == ANCHOR
    assert result.start == 4
    assert result.end == 12
    assert result.media_sequences == (21, 22)

    marker = overlap_for(view, "marker")
    assert marker.end is None
    assert marker.media_sequences == (22,)


def test_overlap_for_unknown_date_range():
    view = navigate(parse_playlist(PLAYLIST, "https://cdn.example.com/index.m3u8"))

    with pytest.raises(ComputationError):
        overlap_for(view, "missing")


def test_overlap_without_program_date_time():
    view = navigate(
        parse_playlist(
            '#EXTM3U\n#EXT-X-DATERANGE:ID="a",START-DATE="2024-05-01T10:00:00Z"\n#EXTINF:4,\ns0.ts\n',
            "https://cdn.example.com/index.m3u8",
        )
    )

    with pytest.raises(ComputationError):
        overlap_for(view, "a")
