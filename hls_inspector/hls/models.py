"""
Immutable data model of a resolved HLS playlist.

Everything here is created once per resolution pass and never mutated. A
refreshed playlist yields a new ``Playlist`` and every downstream view has to
be recomputed from it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from fractions import Fraction
from typing import Any, Optional

from hls_inspector.const import SCTE35_ATTRIBUTES
from hls_inspector.errors import InspectorError, ResolutionError

MAX_UINT64 = (1 << 64) - 1


class PlaylistKind(str, Enum):
    MULTIVARIANT = "multivariant"
    MEDIA = "media"


class TagKind(str, Enum):
    RENDITION = "rendition"
    SEGMENT = "segment"
    BYTERANGE = "byterange"
    MAP = "map"
    DATERANGE = "daterange"
    SESSION_DATA = "session_data"
    DEFINE = "define"
    MEDIA_SEQUENCE = "media_sequence"
    DISCONTINUITY_SEQUENCE = "discontinuity_sequence"
    PROGRAM_DATE_TIME = "program_date_time"
    DISCONTINUITY = "discontinuity"
    SKIP = "skip"
    KEY = "key"
    PART = "part"
    GENERIC = "generic"


class AttributeType(str, Enum):
    STRING = "string"
    QUOTED_STRING = "quoted_string"
    DECIMAL_INTEGER = "decimal_integer"
    DECIMAL_FLOAT = "decimal_float"
    HEXADECIMAL = "hexadecimal"
    ENUMERATED = "enumerated"
    RESOLUTION = "resolution"


class LineKind(str, Enum):
    TAG = "tag"
    URI = "uri"
    COMMENT = "comment"
    BLANK = "blank"


@dataclass(frozen=True)
class AttributeValue:
    type: AttributeType
    raw: str
    value: Any


@dataclass(frozen=True)
class ResolvedURI:
    """An absolute URL together with what it was resolved from."""

    url: str
    reference: str
    base_url: str
    tag: str
    line: int


@dataclass(frozen=True)
class ByteRange:
    offset: int
    length: int

    def __post_init__(self):
        if self.offset < 0 or self.length < 0:
            raise ValueError(f"byte range must be unsigned: {self.length}@{self.offset}")
        if self.offset + self.length > MAX_UINT64:
            raise ValueError(f"byte range overflows 64 bits: {self.length}@{self.offset}")

    @property
    def end(self) -> int:
        """Exclusive end offset."""
        return self.offset + self.length

    @property
    def last(self) -> int:
        """Inclusive offset of the last byte, as used by the Range header."""
        return self.end - 1

    def range_header(self) -> str:
        return f"bytes={self.offset}-{self.last}"

    def fits(self, resource_size: Optional[int]) -> bool:
        return resource_size is None or self.end <= resource_size

    def __str__(self):
        return f"{self.length}@{self.offset}"


@dataclass(frozen=True)
class Line:
    number: int
    kind: LineKind
    text: str
    tag_index: Optional[int] = None


@dataclass(frozen=True)
class Tag:
    name: str
    kind: TagKind
    line: int
    value: str = ""
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    uri: Optional[ResolvedURI] = None
    resolved_uris: dict[str, ResolvedURI] = field(default_factory=dict)
    errors: tuple[InspectorError, ...] = ()
    warnings: tuple[ResolutionError, ...] = ()

    def attribute(self, name: str, default: Any = None) -> Any:
        """Typed value of an attribute, or ``default`` when absent."""
        attribute = self.attributes.get(name)
        return attribute.value if attribute is not None else default


@dataclass(frozen=True)
class DateRangeInterval:
    id: str
    start: datetime
    line: int
    class_name: Optional[str] = None
    duration: Optional[Fraction] = None
    planned_duration: Optional[Fraction] = None
    end_date: Optional[datetime] = None
    end_on_next: bool = False
    attributes: dict[str, AttributeValue] = field(default_factory=dict)

    @property
    def end(self) -> Optional[datetime]:
        """End instant from END-DATE, else from START-DATE plus DURATION."""
        if self.end_date is not None:
            return self.end_date
        if self.duration is not None:
            return self.start + timedelta(seconds=float(self.duration))
        return None

    def splice_payloads(self) -> list[tuple[str, str]]:
        """(attribute name, encoded payload) for each SCTE35-* attribute present."""
        payloads = []
        for name in SCTE35_ATTRIBUTES:
            attribute = self.attributes.get(name)
            if attribute is not None:
                payloads.append((name, attribute.raw))
        return payloads


@dataclass(frozen=True)
class Playlist:
    url: str
    kind: PlaylistKind
    tags: tuple[Tag, ...]
    lines: tuple[Line, ...]
    variables: dict[str, str] = field(default_factory=dict)
    date_ranges: tuple[DateRangeInterval, ...] = ()
    errors: tuple[InspectorError, ...] = ()

    @property
    def is_media(self) -> bool:
        return self.kind is PlaylistKind.MEDIA

    def tags_named(self, name: str) -> list[Tag]:
        return [tag for tag in self.tags if tag.name == name]

    def date_range(self, daterange_id: str) -> Optional[DateRangeInterval]:
        for date_range in self.date_ranges:
            if date_range.id == daterange_id:
                return date_range
        return None


@dataclass(frozen=True)
class MapReference:
    """The initialization section (EXT-X-MAP) applying to a segment."""

    uri: ResolvedURI
    byte_range: Optional[ByteRange] = None


@dataclass(frozen=True)
class PartialSegment:
    index: int
    duration: Fraction
    uri: ResolvedURI
    byte_range: Optional[ByteRange] = None
    independent: bool = False
    gap: bool = False


@dataclass(frozen=True)
class Segment:
    media_sequence: int
    duration: Fraction
    uri: ResolvedURI
    byte_range: Optional[ByteRange] = None
    map: Optional[MapReference] = None
    title: str = ""
    discontinuity: bool = False
    discontinuity_sequence: int = 0
    skipped_before: int = 0
    program_date_time: Optional[datetime] = None
    gap: bool = False
    parts: tuple[PartialSegment, ...] = ()
