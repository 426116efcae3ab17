"""
Cross-referenced view over a parsed playlist.

The navigator walks the tags once, in order, carrying the state that HLS makes implicit:
the next media sequence number, the current initialization section, the end of the
previous byte range and the cumulative duration. The result pairs every URI-bearing
tag with its resolved target and every segment with its absolute byte range and its
``[start, end)`` window on the playlist timeline.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Optional

from hls_inspector.errors import InspectorError, ParseError
from hls_inspector.hls.models import (
    ByteRange,
    MapReference,
    PartialSegment,
    Playlist,
    ResolvedURI,
    Segment,
    Tag,
    TagKind,
)
from hls_inspector.hls.parser import parse_byterange_spec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagView:
    tag: Tag
    uris: dict[str, ResolvedURI] = field(default_factory=dict)
    segment_sequence: Optional[int] = None
    byte_range: Optional[ByteRange] = None
    errors: tuple[InspectorError, ...] = ()


@dataclass(frozen=True)
class SegmentView:
    segment: Segment
    start: Fraction
    end: Fraction
    tag_line: int
    errors: tuple[InspectorError, ...] = ()

    @property
    def media_sequence(self) -> int:
        return self.segment.media_sequence


@dataclass(frozen=True)
class PlaylistView:
    playlist: Playlist
    tags: tuple[TagView, ...]
    segments: tuple[SegmentView, ...] = ()
    trailing_parts: tuple[PartialSegment, ...] = ()
    anchor: Optional[datetime] = None
    ended: bool = False
    errors: tuple[InspectorError, ...] = ()

    @property
    def total_duration(self) -> Fraction:
        return self.segments[-1].end if self.segments else Fraction(0)

    def segment(self, media_sequence: int) -> Optional[SegmentView]:
        for segment_view in self.segments:
            if segment_view.media_sequence == media_sequence:
                return segment_view
        return None

    def segment_date_time(self, segment_view: SegmentView) -> Optional[datetime]:
        """Wall-clock instant at which a segment starts, when the playlist has an anchor."""
        if segment_view.segment.program_date_time is not None:
            return segment_view.segment.program_date_time
        if self.anchor is None:
            return None
        return self.anchor + seconds_to_timedelta(segment_view.start)


def seconds_to_timedelta(seconds: Fraction) -> timedelta:
    return timedelta(microseconds=round(seconds * 1_000_000))


def expand_byte_range(
    declaration: str, url: str, previous: Optional[tuple[str, int]], default_offset: Optional[int] = None
) -> ByteRange:
    """
    Turns a byte-range declaration into an absolute ``ByteRange``.

    Args:
        declaration (str): ``len@off``, ``len`` or ``@len``.
        url (str): Absolute URL of the resource the range applies to.
        previous (tuple, optional): (url, end offset) of the immediately preceding range.
        default_offset (int, optional): Offset to use instead of continuing, as EXT-X-MAP does.

    Raises:
        ValueError: If the declaration is malformed, continues without a preceding range on the
            same resource, or overflows 64 bits.
    """
    length, offset = parse_byterange_spec(declaration)
    if offset is None and default_offset is not None:
        offset = default_offset
    if offset is None:
        if previous is None or previous[0] != url:
            raise ValueError(f"byte range {declaration!r} continues without a preceding range on {url}")
        offset = previous[1]
    return ByteRange(offset=offset, length=length)


class PlaylistNavigator:
    def __init__(self, playlist: Playlist):
        self.playlist = playlist
        self.tag_views: list[TagView] = []
        self.segments: list[SegmentView] = []
        self.errors: list[InspectorError] = []

        self.next_sequence = 0
        self.discontinuity_sequence = 0
        self.current_map: Optional[MapReference] = None
        self.previous_range: Optional[tuple[str, int]] = None
        self.previous_part_range: Optional[tuple[str, int]] = None
        self.elapsed = Fraction(0)
        self.anchor: Optional[datetime] = None
        self.ended = False
        self._reset_pending()

    def _reset_pending(self):
        self.pending_byterange: Optional[Tag] = None
        self.pending_date_time: Optional[datetime] = None
        self.pending_discontinuity = False
        self.pending_gap = False
        self.pending_skipped = 0
        self.pending_parts: list[PartialSegment] = []

    def build(self) -> PlaylistView:
        for tag in self.playlist.tags:
            self.tag_views.append(self.visit(tag))

        if self.pending_byterange is not None:
            self.errors.append(
                ParseError("EXT-X-BYTERANGE is not followed by a segment", line=self.pending_byterange.line)
            )

        return PlaylistView(
            playlist=self.playlist,
            tags=tuple(self.tag_views),
            segments=tuple(self.segments),
            trailing_parts=tuple(self.pending_parts),
            anchor=self.anchor,
            ended=self.ended,
            errors=tuple(self.errors),
        )

    def visit(self, tag: Tag) -> TagView:
        uris = dict(tag.resolved_uris)
        if tag.uri is not None:
            uris["URI"] = tag.uri

        if not self.playlist.is_media:
            return TagView(tag=tag, uris=uris)
        if tag.errors:
            if tag.kind is TagKind.SEGMENT:
                # the segment still occupies a sequence number
                self.next_sequence += 1
                self.previous_range = None
                self._reset_pending()
            return TagView(tag=tag, uris=uris)

        if tag.kind is TagKind.MEDIA_SEQUENCE:
            if self.segments:
                return self._tag_error(tag, uris, "EXT-X-MEDIA-SEQUENCE must precede the first segment")
            self.next_sequence = tag.attribute("VALUE")
        elif tag.kind is TagKind.DISCONTINUITY_SEQUENCE:
            self.discontinuity_sequence = tag.attribute("VALUE")
        elif tag.kind is TagKind.DISCONTINUITY:
            self.pending_discontinuity = True
        elif tag.kind is TagKind.PROGRAM_DATE_TIME:
            self.pending_date_time = tag.attribute("VALUE")
        elif tag.name == "EXT-X-GAP":
            self.pending_gap = True
        elif tag.name == "EXT-X-ENDLIST":
            self.ended = True
        elif tag.kind is TagKind.SKIP:
            skipped = tag.attribute("SKIPPED-SEGMENTS")
            self.next_sequence += skipped
            self.pending_skipped += skipped
            self.previous_range = None
        elif tag.kind is TagKind.MAP:
            return self._visit_map(tag, uris)
        elif tag.kind is TagKind.BYTERANGE:
            self.pending_byterange = tag
        elif tag.kind is TagKind.PART:
            return self._visit_part(tag, uris)
        elif tag.kind is TagKind.SEGMENT:
            return self._visit_segment(tag, uris)
        return TagView(tag=tag, uris=uris)

    def _tag_error(self, tag: Tag, uris: dict, message: str) -> TagView:
        error = ParseError(message, line=tag.line, tag=tag.name)
        logger.debug(error.message)
        self.errors.append(error)
        return TagView(tag=tag, uris=uris, errors=(error,))

    def _visit_map(self, tag: Tag, uris: dict) -> TagView:
        uri = tag.resolved_uris.get("URI")
        if uri is None:
            self.current_map = None
            return TagView(tag=tag, uris=uris)
        byte_range = None
        declaration = tag.attribute("BYTERANGE")
        if declaration is not None:
            try:
                byte_range = expand_byte_range(declaration, uri.url, None, default_offset=0)
            except ValueError as e:
                self.current_map = None
                return self._tag_error(tag, uris, str(e))
        self.current_map = MapReference(uri=uri, byte_range=byte_range)
        return TagView(tag=tag, uris=uris, byte_range=byte_range)

    def _visit_part(self, tag: Tag, uris: dict) -> TagView:
        uri = tag.resolved_uris.get("URI")
        if uri is None:
            return TagView(tag=tag, uris=uris)
        byte_range = None
        declaration = tag.attribute("BYTERANGE")
        if declaration is not None:
            try:
                byte_range = expand_byte_range(declaration, uri.url, self.previous_part_range)
            except ValueError as e:
                self.previous_part_range = None
                return self._tag_error(tag, uris, str(e))
        self.previous_part_range = (uri.url, byte_range.end) if byte_range is not None else None
        part = PartialSegment(
            index=len(self.pending_parts),
            duration=Fraction(tag.attribute("DURATION")),
            uri=uri,
            byte_range=byte_range,
            independent=tag.attribute("INDEPENDENT") == "YES",
            gap=tag.attribute("GAP") == "YES",
        )
        self.pending_parts.append(part)
        return TagView(tag=tag, uris=uris, byte_range=byte_range)

    def _visit_segment(self, tag: Tag, uris: dict) -> TagView:
        sequence = self.next_sequence
        duration = tag.attribute("DURATION")
        start = self.elapsed
        end = start + duration
        self.next_sequence += 1
        self.elapsed = end

        errors: list[InspectorError] = []
        byte_range = None
        if tag.uri is None:
            errors.append(ParseError(f"segment {sequence} has no resolvable URI", line=tag.line, tag=tag.name))
            self.previous_range = None
        elif self.pending_byterange is not None:
            try:
                byte_range = expand_byte_range(
                    self.pending_byterange.attribute("VALUE"), tag.uri.url, self.previous_range
                )
            except ValueError as e:
                errors.append(
                    ParseError(f"segment {sequence}: {e}", line=self.pending_byterange.line, tag="EXT-X-BYTERANGE")
                )
            self.previous_range = (tag.uri.url, byte_range.end) if byte_range is not None else None
        else:
            self.previous_range = None

        if self.pending_discontinuity:
            self.discontinuity_sequence += 1

        if tag.uri is not None:
            segment = Segment(
                media_sequence=sequence,
                duration=duration,
                uri=tag.uri,
                byte_range=byte_range,
                map=self.current_map,
                title=tag.attribute("TITLE", ""),
                discontinuity=self.pending_discontinuity,
                discontinuity_sequence=self.discontinuity_sequence,
                skipped_before=self.pending_skipped,
                program_date_time=self.pending_date_time,
                gap=self.pending_gap,
                parts=tuple(self.pending_parts),
            )
            self.segments.append(
                SegmentView(segment=segment, start=start, end=end, tag_line=tag.line, errors=tuple(errors))
            )

        if self.anchor is None and self.pending_date_time is not None:
            self.anchor = self.pending_date_time - seconds_to_timedelta(start)

        for error in errors:
            logger.debug(error.message)
        self.errors.extend(errors)
        self._reset_pending()
        self.previous_part_range = None
        return TagView(tag=tag, uris=uris, segment_sequence=sequence, byte_range=byte_range, errors=tuple(errors))


def navigate(playlist: Playlist) -> PlaylistView:
    """
    Builds the cross-referenced view of a playlist.

    Errors found while expanding byte ranges or numbering segments are attached to the
    affected tag and segment and never abort the walk.
    """
    return PlaylistNavigator(playlist).build()
