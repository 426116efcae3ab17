import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from fractions import Fraction
from typing import Optional
from urllib.parse import parse_qs, urljoin, urlsplit

from hls_inspector.const import (
    ATTRIBUTE_LIST_TAGS,
    COMMENT_PREFIX,
    INTEGER_TAGS,
    MEDIA_TAGS,
    MULTIVARIANT_TAGS,
    NUMERIC_ATTRIBUTES,
    PLAYLIST_HEADER,
    QUOTED_STRING_ATTRIBUTES,
    REQUIRED_ATTRIBUTES,
    TAG_PREFIX,
    URI_ATTRIBUTES,
)
from hls_inspector.errors import InspectorError, ParseError, ResolutionError
from hls_inspector.hls.models import (
    AttributeType,
    AttributeValue,
    DateRangeInterval,
    Line,
    LineKind,
    Playlist,
    PlaylistKind,
    ResolvedURI,
    Tag,
    TagKind,
)

logger = logging.getLogger(__name__)

TAG_KINDS = {
    "EXT-X-STREAM-INF": TagKind.RENDITION,
    "EXT-X-I-FRAME-STREAM-INF": TagKind.RENDITION,
    "EXT-X-MEDIA": TagKind.RENDITION,
    "EXTINF": TagKind.SEGMENT,
    "EXT-X-BYTERANGE": TagKind.BYTERANGE,
    "EXT-X-MAP": TagKind.MAP,
    "EXT-X-DATERANGE": TagKind.DATERANGE,
    "EXT-X-SESSION-DATA": TagKind.SESSION_DATA,
    "EXT-X-DEFINE": TagKind.DEFINE,
    "EXT-X-MEDIA-SEQUENCE": TagKind.MEDIA_SEQUENCE,
    "EXT-X-DISCONTINUITY-SEQUENCE": TagKind.DISCONTINUITY_SEQUENCE,
    "EXT-X-PROGRAM-DATE-TIME": TagKind.PROGRAM_DATE_TIME,
    "EXT-X-DISCONTINUITY": TagKind.DISCONTINUITY,
    "EXT-X-SKIP": TagKind.SKIP,
    "EXT-X-KEY": TagKind.KEY,
    "EXT-X-SESSION-KEY": TagKind.KEY,
    "EXT-X-PART": TagKind.PART,
}

VARIABLE_REFERENCE_RE = re.compile(r"\{\$([A-Za-z0-9_-]+)\}")
ATTRIBUTE_NAME_RE = re.compile(r"[A-Z0-9-]+")
DECIMAL_INTEGER_RE = re.compile(r"\d+")
DECIMAL_FLOAT_RE = re.compile(r"-?\d+(\.\d*)?|-?\.\d+")
HEXADECIMAL_RE = re.compile(r"0[xX][0-9A-Fa-f]+")
RESOLUTION_RE = re.compile(r"(\d+)x(\d+)")
ENUMERATED_RE = re.compile(r"[A-Za-z0-9_.-]+")
BYTERANGE_RE = re.compile(r"(\d*)(?:@(\d+))?")
FRACTIONAL_SECONDS_RE = re.compile(r"(.*T\d{2}:\d{2}:\d{2})\.(\d+)(.*)")


def resolve_uri(reference: str, base_url: str, tag: str = "", line: int = 0) -> ResolvedURI:
    """
    Resolves a URI reference found in a playlist against the playlist URL.

    Absolute references are returned unchanged. Relative references (scheme-relative,
    path-relative and query-relative) are joined with ``urljoin``.

    Args:
        reference (str): The reference as written in the playlist, after variable substitution.
        base_url (str): The URL the playlist was fetched from.
        tag (str, optional): Name of the tag owning the reference.
        line (int, optional): 1-based line number of the reference.

    Returns:
        ResolvedURI: The absolute URL together with the reference and base it came from.

    Raises:
        ResolutionError: If the reference cannot be parsed or the base URL has no scheme or host.
    """
    try:
        parsed_reference = urlsplit(reference)
    except ValueError as e:
        raise ResolutionError(f"unparsable URI reference {reference!r}: {e}", line=line, tag=tag, reference=reference)

    if parsed_reference.scheme and parsed_reference.netloc:
        return ResolvedURI(url=reference, reference=reference, base_url=base_url, tag=tag, line=line)

    try:
        parsed_base = urlsplit(base_url)
    except ValueError as e:
        raise ResolutionError(f"unparsable base URL {base_url!r}: {e}", line=line, tag=tag, reference=reference)
    if not parsed_base.scheme or not parsed_base.netloc:
        raise ResolutionError(
            f"cannot resolve {reference!r} against base URL {base_url!r} without scheme and host",
            line=line,
            tag=tag,
            reference=reference,
        )

    try:
        url = urljoin(base_url, reference)
    except ValueError as e:
        raise ResolutionError(f"cannot resolve {reference!r}: {e}", line=line, tag=tag, reference=reference)
    return ResolvedURI(url=url, reference=reference, base_url=base_url, tag=tag, line=line)


def parse_datetime(value: str) -> datetime:
    """Parses an ISO-8601 date-time, assuming UTC when no offset is given."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    match = FRACTIONAL_SECONDS_RE.fullmatch(text)
    if match:
        # datetime stops at microseconds
        text = f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}{match.group(3)}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_byterange_spec(value: str) -> tuple[int, Optional[int]]:
    """
    Splits a byte-range declaration into (length, offset).

    ``len@off`` yields an explicit offset, while ``len`` and ``@len`` yield ``None`` to signal
    that the range continues where the previous range on the same resource ended.
    """
    match = BYTERANGE_RE.fullmatch(value.strip())
    if not match or not (match.group(1) or match.group(2)):
        raise ValueError(f"malformed byte range {value!r}")
    length, offset = match.group(1), match.group(2)
    if length and offset is not None:
        return int(length), int(offset)
    if length:
        return int(length), None
    return int(offset), None


def parse_decimal(value: str) -> Fraction:
    if not DECIMAL_FLOAT_RE.fullmatch(value):
        raise ValueError(f"malformed decimal {value!r}")
    return Fraction(value)


def split_attribute_list(text: str) -> list[tuple[str, str, bool]]:
    """
    Tokenises an attribute list into (name, raw value, quoted) triples.

    Commas inside quoted strings do not separate attributes.

    Raises:
        ValueError: On a missing ``=``, an invalid name, an empty value or an unterminated quote.
    """
    pairs = []
    position = 0
    length = len(text)
    while position < length:
        equals = text.find("=", position)
        if equals == -1:
            raise ValueError(f"attribute without value at column {position + 1}")
        name = text[position:equals].strip()
        if not ATTRIBUTE_NAME_RE.fullmatch(name):
            raise ValueError(f"invalid attribute name {name!r}")
        position = equals + 1

        if position < length and text[position] == '"':
            closing = text.find('"', position + 1)
            if closing == -1:
                raise ValueError(f"unterminated quoted string in {name}")
            pairs.append((name, text[position + 1 : closing], True))
            position = closing + 1
            if position < length and text[position] != ",":
                raise ValueError(f"unexpected character after quoted value of {name}")
        else:
            comma = text.find(",", position)
            if comma == -1:
                comma = length
            raw = text[position:comma].strip()
            if not raw:
                raise ValueError(f"empty value for {name}")
            pairs.append((name, raw, False))
            position = comma
        position += 1
    return pairs


def type_attribute_value(raw: str, quoted: bool) -> AttributeValue:
    if quoted:
        return AttributeValue(AttributeType.QUOTED_STRING, raw, raw)
    if HEXADECIMAL_RE.fullmatch(raw):
        return AttributeValue(AttributeType.HEXADECIMAL, raw, int(raw, 16))
    if DECIMAL_INTEGER_RE.fullmatch(raw):
        return AttributeValue(AttributeType.DECIMAL_INTEGER, raw, int(raw))
    if DECIMAL_FLOAT_RE.fullmatch(raw):
        return AttributeValue(AttributeType.DECIMAL_FLOAT, raw, Fraction(raw))
    match = RESOLUTION_RE.fullmatch(raw)
    if match:
        return AttributeValue(AttributeType.RESOLUTION, raw, (int(match.group(1)), int(match.group(2))))
    if ENUMERATED_RE.fullmatch(raw):
        return AttributeValue(AttributeType.ENUMERATED, raw, raw)
    return AttributeValue(AttributeType.STRING, raw, raw)


class PlaylistParser:
    """
    Single-pass parser turning playlist text into a ``Playlist``.

    One instance parses one document. Variables are recorded in declaration order so that a
    reference only ever sees the definitions of earlier lines.
    """

    def __init__(self, url: str, imported_variables: Optional[dict[str, str]] = None):
        """
        Args:
            url (str): The URL the playlist was fetched from, used as the base for relative URIs.
            imported_variables (dict, optional): Variables of the parent multivariant playlist,
                available to ``EXT-X-DEFINE:IMPORT``.
        """
        self.url = url
        self.imported_variables = imported_variables
        self.variables: dict[str, str] = {}
        self.kind: Optional[PlaylistKind] = None
        self.tags: list[Tag] = []
        self.lines: list[Line] = []
        self.orphan_errors: list[InspectorError] = []
        self.date_ranges: list[DateRangeInterval] = []
        self._pending_uri_tag: Optional[int] = None

    def parse(self, text: str) -> Playlist:
        if text.startswith("\ufeff"):
            text = text[1:]
        if not text.strip():
            raise ParseError("playlist is empty")

        raw_lines = text.splitlines()
        if raw_lines[0].strip() != PLAYLIST_HEADER:
            raise ParseError(f"first line must be {PLAYLIST_HEADER}", line=1)

        for number, raw_line in enumerate(raw_lines, start=1):
            line = raw_line.strip()
            if not line:
                self.lines.append(Line(number, LineKind.BLANK, raw_line))
            elif line.startswith(TAG_PREFIX):
                self.tags.append(self.parse_tag(line, number))
                self.lines.append(Line(number, LineKind.TAG, raw_line, len(self.tags) - 1))
            elif line.startswith(COMMENT_PREFIX):
                self.lines.append(Line(number, LineKind.COMMENT, raw_line))
            else:
                self.lines.append(Line(number, LineKind.URI, raw_line, self.attach_uri_line(line, number)))

        errors = list(self.orphan_errors)
        for tag in self.tags:
            errors.extend(tag.errors)
            errors.extend(tag.warnings)

        return Playlist(
            url=self.url,
            kind=self.kind or PlaylistKind.MEDIA,
            tags=tuple(self.tags),
            lines=tuple(self.lines),
            variables=dict(self.variables),
            date_ranges=tuple(self.date_ranges),
            errors=tuple(errors),
        )

    def substitute(self, value: str, number: int, tag: str, warnings: list) -> str:
        """Replaces ``{$NAME}`` references with variables defined so far."""

        def replace_reference(match):
            name = match.group(1)
            if name in self.variables:
                return self.variables[name]
            warning = ResolutionError(
                f"undefined variable reference {match.group(0)}", line=number, tag=tag, reference=match.group(0)
            )
            logger.debug(warning.message)
            warnings.append(warning)
            return match.group(0)

        return VARIABLE_REFERENCE_RE.sub(replace_reference, value)

    def check_context(self, name: str, number: int, errors: list):
        if name in MEDIA_TAGS:
            tag_kind = PlaylistKind.MEDIA
        elif name in MULTIVARIANT_TAGS:
            tag_kind = PlaylistKind.MULTIVARIANT
        else:
            return
        if self.kind is None:
            self.kind = tag_kind
        elif self.kind is not tag_kind:
            errors.append(ParseError(f"{name} is not allowed in a {self.kind.value} playlist", line=number, tag=name))

    def parse_tag(self, line: str, number: int) -> Tag:
        name, _, value = line[1:].partition(":")
        kind = TAG_KINDS.get(name, TagKind.GENERIC)
        errors: list[InspectorError] = []
        warnings: list[ResolutionError] = []
        attributes: dict[str, AttributeValue] = {}
        resolved_uris: dict[str, ResolvedURI] = {}

        self.check_context(name, number, errors)

        if name in ATTRIBUTE_LIST_TAGS:
            attributes = self.parse_attributes(name, value, number, errors, warnings)
            for attribute_name in REQUIRED_ATTRIBUTES.get(name, ()):
                if attribute_name not in attributes:
                    errors.append(
                        ParseError(f"{name} is missing required attribute {attribute_name}", line=number, tag=name)
                    )
            for attribute_name in URI_ATTRIBUTES:
                attribute = attributes.get(attribute_name)
                if attribute is None or attribute.type is not AttributeType.QUOTED_STRING:
                    continue
                try:
                    resolved_uris[attribute_name] = resolve_uri(attribute.value, self.url, name, number)
                except ResolutionError as e:
                    logger.debug(e.message)
                    warnings.append(e)
        elif name == "EXTINF":
            attributes = self.parse_extinf(value, number, errors)
        elif name in INTEGER_TAGS:
            if DECIMAL_INTEGER_RE.fullmatch(value.strip()):
                attributes = {"VALUE": AttributeValue(AttributeType.DECIMAL_INTEGER, value, int(value))}
            else:
                errors.append(ParseError(f"{name} expects a decimal integer, got {value!r}", line=number, tag=name))
        elif name == "EXT-X-BYTERANGE":
            try:
                parse_byterange_spec(value)
                attributes = {"VALUE": AttributeValue(AttributeType.STRING, value, value.strip())}
            except ValueError as e:
                errors.append(ParseError(str(e), line=number, tag=name))
        elif name == "EXT-X-PROGRAM-DATE-TIME":
            try:
                attributes = {"VALUE": AttributeValue(AttributeType.STRING, value, parse_datetime(value))}
            except ValueError:
                errors.append(ParseError(f"malformed date-time {value!r}", line=number, tag=name))

        if name == "EXT-X-DEFINE" and not errors:
            self.define_variable(attributes, number, errors, warnings)
        elif name == "EXT-X-DATERANGE" and not errors:
            try:
                self.date_ranges.append(self.build_date_range(attributes, number))
            except ParseError as e:
                errors.append(e)

        tag = Tag(
            name=name,
            kind=kind,
            line=number,
            value=value,
            attributes=attributes,
            resolved_uris=resolved_uris,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )
        for error in errors:
            logger.debug(error.message)

        if name in ("EXT-X-STREAM-INF", "EXTINF"):
            self._pending_uri_tag = len(self.tags)
        return tag

    def parse_attributes(self, name: str, value: str, number: int, errors: list, warnings: list) -> dict:
        try:
            pairs = split_attribute_list(value)
        except ValueError as e:
            errors.append(ParseError(f"malformed attribute list: {e}", line=number, tag=name))
            return {}

        attributes = {}
        for attribute_name, raw, quoted in pairs:
            if attribute_name in attributes:
                errors.append(ParseError(f"duplicate attribute {attribute_name}", line=number, tag=name))
                continue
            # definitions are taken literally
            if name != "EXT-X-DEFINE" and (quoted or raw.lower().startswith("0x")):
                raw = self.substitute(raw, number, name, warnings)
            attribute = type_attribute_value(raw, quoted)
            if attribute_name in NUMERIC_ATTRIBUTES and attribute.type not in (
                AttributeType.DECIMAL_INTEGER,
                AttributeType.DECIMAL_FLOAT,
            ):
                errors.append(
                    ParseError(f"malformed numeric value {raw!r} for {attribute_name}", line=number, tag=name)
                )
                continue
            if attribute_name in QUOTED_STRING_ATTRIBUTES and attribute.type is not AttributeType.QUOTED_STRING:
                errors.append(
                    ParseError(f"{attribute_name} must be a quoted string, got {raw!r}", line=number, tag=name)
                )
                continue
            attributes[attribute_name] = attribute
        return attributes

    def parse_extinf(self, value: str, number: int, errors: list) -> dict:
        duration, _, title = value.partition(",")
        try:
            parsed = parse_decimal(duration.strip())
        except ValueError:
            errors.append(ParseError(f"malformed segment duration {duration!r}", line=number, tag="EXTINF"))
            return {"TITLE": AttributeValue(AttributeType.STRING, title, title)}
        if parsed < 0:
            errors.append(ParseError(f"negative segment duration {duration!r}", line=number, tag="EXTINF"))
        return {
            "DURATION": AttributeValue(AttributeType.DECIMAL_FLOAT, duration.strip(), parsed),
            "TITLE": AttributeValue(AttributeType.STRING, title, title),
        }

    def define_variable(self, attributes: dict, number: int, errors: list, warnings: list):
        """Records an EXT-X-DEFINE in one of its NAME/VALUE, IMPORT or QUERYPARAM forms."""
        tag = "EXT-X-DEFINE"
        if "NAME" in attributes:
            if "VALUE" not in attributes:
                errors.append(ParseError("NAME requires a VALUE attribute", line=number, tag=tag))
                return
            name, value = attributes["NAME"].value, attributes["VALUE"].value
        elif "IMPORT" in attributes:
            name = attributes["IMPORT"].value
            if self.imported_variables is None or name not in self.imported_variables:
                warnings.append(
                    ResolutionError(
                        f"imported variable {name!r} is not defined by a parent playlist",
                        line=number,
                        tag=tag,
                        reference=name,
                    )
                )
                return
            value = self.imported_variables[name]
        elif "QUERYPARAM" in attributes:
            name = attributes["QUERYPARAM"].value
            query = parse_qs(urlsplit(self.url).query, keep_blank_values=True)
            if name not in query:
                warnings.append(
                    ResolutionError(
                        f"query parameter {name!r} is not present in {self.url}", line=number, tag=tag, reference=name
                    )
                )
                return
            value = query[name][0]
        else:
            errors.append(ParseError("expected one of NAME, IMPORT or QUERYPARAM", line=number, tag=tag))
            return

        if name in self.variables:
            errors.append(ParseError(f"variable {name!r} is already defined", line=number, tag=tag))
            return
        self.variables[name] = value

    def build_date_range(self, attributes: dict, number: int) -> DateRangeInterval:
        tag = "EXT-X-DATERANGE"

        def value(name):
            attribute = attributes.get(name)
            return attribute.value if attribute is not None else None

        try:
            start = parse_datetime(value("START-DATE"))
            end_date = parse_datetime(value("END-DATE")) if "END-DATE" in attributes else None
        except (TypeError, ValueError) as e:
            raise ParseError(f"malformed date-time: {e}", line=number, tag=tag)

        duration = value("DURATION")
        if duration is not None and duration < 0:
            raise ParseError("DURATION must not be negative", line=number, tag=tag)
        if end_date is not None and end_date < start:
            raise ParseError("END-DATE precedes START-DATE", line=number, tag=tag)

        planned_duration = value("PLANNED-DURATION")
        return DateRangeInterval(
            id=value("ID"),
            start=start,
            line=number,
            class_name=value("CLASS"),
            duration=Fraction(duration) if duration is not None else None,
            planned_duration=Fraction(planned_duration) if planned_duration is not None else None,
            end_date=end_date,
            end_on_next=value("END-ON-NEXT") == "YES",
            attributes=dict(attributes),
        )

    def attach_uri_line(self, line: str, number: int) -> Optional[int]:
        """Attaches a URI line to the preceding EXT-X-STREAM-INF or EXTINF tag."""
        if self._pending_uri_tag is None:
            error = ParseError("URI line without a preceding EXT-X-STREAM-INF or EXTINF tag", line=number)
            logger.debug(error.message)
            self.orphan_errors.append(error)
            return None

        index = self._pending_uri_tag
        self._pending_uri_tag = None
        owner = self.tags[index]
        warnings = list(owner.warnings)
        reference = self.substitute(line, number, owner.name, warnings)
        try:
            uri = resolve_uri(reference, self.url, owner.name, number)
        except ResolutionError as e:
            logger.debug(e.message)
            warnings.append(e)
            uri = None
        self.tags[index] = replace(owner, uri=uri, warnings=tuple(warnings))
        return index


def parse_playlist(text: str, url: str, imported_variables: Optional[dict[str, str]] = None) -> Playlist:
    """
    Parses playlist text fetched from ``url``.

    Errors local to a tag are attached to it and collected in ``Playlist.errors``; only a
    document without any recognisable structure raises.

    Args:
        text (str): The playlist text.
        url (str): The URL the playlist was fetched from.
        imported_variables (dict, optional): Variables of the parent multivariant playlist.

    Returns:
        Playlist: The parsed playlist.

    Raises:
        ParseError: If the text is empty or does not start with #EXTM3U.
    """
    return PlaylistParser(url, imported_variables).parse(text)
