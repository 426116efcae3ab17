from datetime import datetime, timezone
from fractions import Fraction

import pytest

from hls_inspector.hls.models import ByteRange
from hls_inspector.hls.navigator import expand_byte_range, navigate
from hls_inspector.hls.parser import parse_playlist

MEDIA_URL = "https://cdn.example.com/live/index.m3u8"


def _navigate(text: str, url: str = MEDIA_URL):
    return navigate(parse_playlist(text, url))


def test_byte_range_continuation():
    view = _navigate(
        "#EXTM3U\n"
        "#EXT-X-TARGETDURATION:4\n"
        "#EXT-X-BYTERANGE:500@1000\n"
        "#EXTINF:4,\n"
        "main.mp4\n"
        "#EXT-X-BYTERANGE:@300\n"
        "#EXTINF:4,\n"
        "main.mp4\n"
        "#EXT-X-BYTERANGE:200\n"
        "#EXTINF:4,\n"
        "main.mp4\n"
    )

    ranges = [segment.segment.byte_range for segment in view.segments]
    assert ranges == [ByteRange(1000, 500), ByteRange(1500, 300), ByteRange(1800, 200)]
    assert view.errors == ()


def test_byte_range_continuation_on_another_resource_is_an_error():
    view = _navigate(
        "#EXTM3U\n"
        "#EXT-X-BYTERANGE:500@0\n"
        "#EXTINF:4,\n"
        "a.mp4\n"
        "#EXT-X-BYTERANGE:300\n"
        "#EXTINF:4,\n"
        "b.mp4\n"
    )

    second = view.segments[1]
    assert second.segment.byte_range is None
    assert second.errors[0].line == 5
    assert second.errors[0].tag == "EXT-X-BYTERANGE"


def test_map_byte_range_defaults_to_offset_zero():
    view = _navigate(
        "#EXTM3U\n"
        '#EXT-X-MAP:URI="main.mp4",BYTERANGE="720"\n'
        "#EXT-X-BYTERANGE:1000@720\n"
        "#EXTINF:4,\n"
        "main.mp4\n"
    )

    segment = view.segments[0].segment
    assert segment.map.uri.url == "https://cdn.example.com/live/main.mp4"
    assert segment.map.byte_range == ByteRange(0, 720)
    assert segment.byte_range == ByteRange(720, 1000)


def test_timeline_and_sequence_numbers():
    view = _navigate(
        "#EXTM3U\n"
        "#EXT-X-MEDIA-SEQUENCE:100\n"
        "#EXTINF:4.004,\n"
        "s100.ts\n"
        "#EXTINF:4.004,\n"
        "s101.ts\n"
        "#EXTINF:2,\n"
        "s102.ts\n"
        "#EXT-X-ENDLIST\n"
    )

    assert [segment.media_sequence for segment in view.segments] == [100, 101, 102]
    assert view.segments[1].start == Fraction("4.004")
    assert view.segments[1].end == Fraction("8.008")
    assert view.total_duration == Fraction("10.008")
    assert view.ended is True
    assert view.segment(102).segment.uri.url == "https://cdn.example.com/live/s102.ts"


def test_program_date_time_anchor():
    view = _navigate(
        "#EXTM3U\n"
        "#EXTINF:4,\n"
        "s0.ts\n"
        "#EXT-X-PROGRAM-DATE-TIME:2024-05-01T10:00:04Z\n"
        "#EXTINF:4,\n"
        "s1.ts\n"
        "#EXTINF:4,\n"
        "s2.ts\n"
    )

    assert view.anchor == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert view.segments[1].segment.program_date_time == datetime(2024, 5, 1, 10, 0, 4, tzinfo=timezone.utc)
    assert view.segment_date_time(view.segments[2]) == datetime(2024, 5, 1, 10, 0, 8, tzinfo=timezone.utc)


def test_playlist_without_program_date_time_has_no_anchor():
    view = _navigate("#EXTM3U\n#EXTINF:4,\ns0.ts\n")

    assert view.anchor is None
    assert view.segment_date_time(view.segments[0]) is None


def test_discontinuity_and_skip():
    view = _navigate(
        "#EXTM3U\n"
        "#EXT-X-MEDIA-SEQUENCE:10\n"
        "#EXT-X-DISCONTINUITY-SEQUENCE:3\n"
        "#EXT-X-SKIP:SKIPPED-SEGMENTS=5\n"
        "#EXTINF:4,\n"
        "s15.ts\n"
        "#EXT-X-DISCONTINUITY\n"
        "#EXTINF:4,\n"
        "s16.ts\n"
    )

    first, second = view.segments
    assert first.media_sequence == 15
    assert first.segment.skipped_before == 5
    assert first.segment.discontinuity is False
    assert first.segment.discontinuity_sequence == 3
    assert second.media_sequence == 16
    assert second.segment.skipped_before == 0
    assert second.segment.discontinuity is True
    assert second.segment.discontinuity_sequence == 4


def test_segment_with_malformed_duration_keeps_its_sequence_number():
    view = _navigate(
        "#EXTM3U\n"
        "#EXTINF:four,\n"
        "s0.ts\n"
        "#EXTINF:4,\n"
        "s1.ts\n"
    )

    assert [segment.media_sequence for segment in view.segments] == [1]


def test_partial_segments():
    view = _navigate(
        "#EXTM3U\n"
        '#EXT-X-PART:DURATION=1,URI="main.mp4",BYTERANGE="100@0",INDEPENDENT=YES\n'
        '#EXT-X-PART:DURATION=1,URI="main.mp4",BYTERANGE="50"\n'
        "#EXTINF:2,\n"
        "main.mp4\n"
        '#EXT-X-PART:DURATION=1,URI="next.mp4"\n'
    )

    parts = view.segments[0].segment.parts
    assert [part.byte_range for part in parts] == [ByteRange(0, 100), ByteRange(100, 50)]
    assert parts[0].independent is True
    assert parts[1].independent is False
    assert len(view.trailing_parts) == 1
    assert view.trailing_parts[0].uri.url == "https://cdn.example.com/live/next.mp4"


def test_uri_attributes_are_paired_with_resolved_uris():
    view = _navigate(
        "#EXTM3U\n"
        '#EXT-X-DATERANGE:ID="i1",CLASS="com.apple.hls.interstitial",START-DATE="2024-05-01T10:00:00Z",'
        'X-ASSET-LIST="/ads/list.json"\n'
        "#EXTINF:4,\n"
        "s0.ts\n"
    )

    daterange_view = view.tags[1]
    assert daterange_view.uris["X-ASSET-LIST"].url == "https://cdn.example.com/ads/list.json"
    extinf_view = view.tags[2]
    assert extinf_view.uris["URI"].url == "https://cdn.example.com/live/s0.ts"
    assert extinf_view.segment_sequence == 0


def test_dangling_byte_range_is_an_error():
    view = _navigate("#EXTM3U\n#EXTINF:4,\ns0.ts\n#EXT-X-BYTERANGE:100@0\n")

    assert view.errors[-1].line == 4


def test_expand_byte_range():
    previous = ("https://x/a.mp4", 1500)

    assert expand_byte_range("300", "https://x/a.mp4", previous) == ByteRange(1500, 300)
    assert expand_byte_range("720", "https://x/a.mp4", None, default_offset=0) == ByteRange(0, 720)
    with pytest.raises(ValueError):
        expand_byte_range("@300", "https://x/b.mp4", previous)
    with pytest.raises(ValueError):
        expand_byte_range(f"{2 ** 64}@0", "https://x/a.mp4", None)
