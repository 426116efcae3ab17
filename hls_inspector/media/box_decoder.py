"""
ISO base media file format box tree decoder.

Provides:
- Box header reading (32-bit, 64-bit largesize and size-to-end variants)
- Box tree decoding through a bounded work-list, with per-box errors
- Resynchronisation after an invalid box size, at the top level and inside containers
- Segment inspection: caption track indicators and timed metadata (emsg/ID32 with ID3)
"""

import logging
import re
import struct
from dataclasses import dataclass, field
from typing import Iterator, Optional

from hls_inspector.configs import settings
from hls_inspector.const import ID3_EMSG_SCHEMES
from hls_inspector.errors import DecodeError
from hls_inspector.media.box_properties import (
    AUDIO_SAMPLE_ENTRIES,
    AUDIO_SAMPLE_ENTRY_SIZE,
    CAPTION_HANDLERS,
    CAPTION_SAMPLE_ENTRIES,
    SAMPLE_ENTRY_SIZE,
    VISUAL_SAMPLE_ENTRIES,
    VISUAL_SAMPLE_ENTRY_SIZE,
    decode_properties,
)
from hls_inspector.media.id3 import Id3Tag, parse_id3

logger = logging.getLogger(__name__)

# Minimum bytes needed to read a standard box header
_BOX_HEADER_SIZE = 8
_LARGE_BOX_HEADER_SIZE = 16

_PLAUSIBLE_TYPE = re.compile(rb"[A-Za-z0-9 \xa9_-]{4}")

# Container box type -> bytes of fixed fields between the header and the first child
CONTAINER_PREFIXES = {
    "moov": 0,
    "trak": 0,
    "mdia": 0,
    "minf": 0,
    "stbl": 0,
    "dinf": 0,
    "edts": 0,
    "mvex": 0,
    "moof": 0,
    "traf": 0,
    "mfra": 0,
    "udta": 0,
    "tref": 0,
    "sinf": 0,
    "schi": 0,
    "meta": 4,
    "stsd": 8,
    "dref": 8,
    "wvtt": SAMPLE_ENTRY_SIZE,
    **{box_type: VISUAL_SAMPLE_ENTRY_SIZE for box_type in VISUAL_SAMPLE_ENTRIES},
    **{box_type: AUDIO_SAMPLE_ENTRY_SIZE for box_type in AUDIO_SAMPLE_ENTRIES},
}


@dataclass(frozen=True)
class Box:
    type: str
    size: int
    offset: int
    header_size: int
    children: tuple["Box", ...] = ()
    payload: bytes = b""
    properties: dict = field(default_factory=dict)
    errors: tuple[DecodeError, ...] = ()

    @property
    def end(self) -> int:
        return self.offset + self.size

    def walk(self) -> Iterator["Box"]:
        """This box and all of its descendants, depth first."""
        stack = [self]
        while stack:
            box = stack.pop()
            yield box
            stack.extend(reversed(box.children))

    def find(self, box_type: str) -> Optional["Box"]:
        for box in self.walk():
            if box.type == box_type:
                return box
        return None


@dataclass
class _PendingBox:
    type: str
    size: int
    offset: int
    header_size: int
    payload: bytes = b""
    properties: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)
    children: list = field(default_factory=list)


def read_box_header(data: bytes, offset: int, end: int) -> tuple[str, int, int]:
    """
    Read a box header at the given offset.

    Args:
        data (bytes): The buffer.
        offset (int): Offset of the header.
        end (int): End of the enclosing range; a size of 0 extends to it.

    Returns:
        (box_type, header_size, total_box_size)

    Raises:
        DecodeError: If the header itself is truncated.
    """
    if offset + _BOX_HEADER_SIZE > end:
        raise DecodeError(f"truncated box header, {end - offset} bytes left", offset=offset)

    size, raw_type = struct.unpack_from(">I4s", data, offset)
    box_type = raw_type.decode("latin-1")
    header_size = _BOX_HEADER_SIZE

    if size == 1:  # Extended size (64-bit)
        if offset + _LARGE_BOX_HEADER_SIZE > end:
            raise DecodeError("truncated 64-bit size", box_type=box_type, offset=offset)
        size = struct.unpack_from(">Q", data, offset + 8)[0]
        header_size = _LARGE_BOX_HEADER_SIZE
    elif size == 0:  # Box extends to end of data
        size = end - offset

    if box_type == "uuid":
        header_size += 16
    return box_type, header_size, size


def is_plausible_box(data: bytes, offset: int, end: int) -> bool:
    if offset + _BOX_HEADER_SIZE > end:
        return False
    size = struct.unpack_from(">I", data, offset)[0]
    if not _PLAUSIBLE_TYPE.fullmatch(data[offset + 4 : offset + 8]):
        return False
    if size == 1:
        if offset + _LARGE_BOX_HEADER_SIZE > end:
            return False
        size = struct.unpack_from(">Q", data, offset + 8)[0]
        return _LARGE_BOX_HEADER_SIZE <= size <= end - offset
    return _BOX_HEADER_SIZE <= size <= end - offset


def find_next_box(data: bytes, offset: int, end: int) -> Optional[int]:
    """Scan forward for the next offset that holds a plausible box header."""
    for candidate in range(offset, end - _BOX_HEADER_SIZE + 1):
        if is_plausible_box(data, candidate, end):
            return candidate
    return None


def container_prefix(box_type: str, data: bytes, body_start: int) -> int:
    prefix = CONTAINER_PREFIXES[box_type]
    if box_type == "meta" and data[body_start + 4 : body_start + 8] == b"hdlr":
        # QuickTime meta has no version and flags
        return 0
    return prefix


class BoxDecoder:
    """
    Decodes a buffer into a box tree without recursion.

    Each work item is a byte range holding a sequence of sibling boxes. Decoding a
    range yields its boxes and queues one work item per container child, so nesting
    depth only grows the queue and is capped by ``max_depth``.
    """

    def __init__(self, data: bytes, max_depth: Optional[int] = None):
        self.data = data
        self.max_depth = settings.max_box_depth if max_depth is None else max_depth
        self.nodes: list[_PendingBox] = []
        self.errors: list[DecodeError] = []

    def decode(self, offset: int = 0) -> tuple[Box, ...]:
        top_level = self._decode_top_level(offset)

        work = [(index, depth) for index, depth in top_level if self.nodes[index].type in CONTAINER_PREFIXES]
        while work:
            index, depth = work.pop()
            for child_index in self._expand(index, depth):
                if self.nodes[child_index].type in CONTAINER_PREFIXES:
                    work.append((child_index, depth + 1))

        return self._freeze([index for index, _ in top_level])

    def _new_node(self, box_type: str, size: int, offset: int, header_size: int) -> int:
        self.nodes.append(_PendingBox(type=box_type, size=size, offset=offset, header_size=header_size))
        return len(self.nodes) - 1

    def _record(self, node: _PendingBox, error: DecodeError):
        logger.debug(f"[box_decoder] {error.message}")
        node.errors.append(error)
        self.errors.append(error)

    def _decode_leaf(self, node: _PendingBox, body_start: int, body_end: int):
        body = self.data[body_start:body_end]
        node.payload = body
        self._decode_properties(node, body)

    def _decode_properties(self, node: _PendingBox, body: bytes):
        try:
            node.properties = decode_properties(node.type, body)
        except DecodeError as e:
            self._record(node, DecodeError(e.message, box_type=node.type, offset=node.offset))
            return
        carries_id3 = node.properties.get("scheme_id_uri") in ID3_EMSG_SCHEMES or node.properties.get(
            "message_data", b""
        ).startswith(b"ID3")
        if node.type == "ID32" or (node.type == "emsg" and carries_id3):
            try:
                node.properties["id3"] = parse_id3(node.properties["message_data"])
            except DecodeError as e:
                self._record(node, DecodeError(f"embedded ID3: {e.message}", box_type=node.type, offset=node.offset))

    def _decode_top_level(self, offset: int) -> list[tuple[int, int]]:
        """Decode the top-level boxes, resynchronising after an invalid size."""
        end = len(self.data)
        top_level = []
        while offset < end:
            try:
                box_type, header_size, size = read_box_header(self.data, offset, end)
            except DecodeError as e:
                logger.debug(f"[box_decoder] {e.message}")
                self.errors.append(e)
                break

            if size < header_size:
                index = self._new_node(box_type, size, offset, header_size)
                self._record(
                    self.nodes[index],
                    DecodeError(
                        f"declared size {size} is smaller than its {header_size}-byte header",
                        box_type=box_type,
                        offset=offset,
                    ),
                )
                top_level.append((index, 0))
                next_offset = find_next_box(self.data, offset + header_size, end)
                if next_offset is None:
                    break
                logger.debug(f"[box_decoder] resynchronised at offset {next_offset}")
                offset = next_offset
                continue

            index = self._new_node(box_type, size, offset, header_size)
            top_level.append((index, 0))
            if offset + size > end:
                node = self.nodes[index]
                self._record(
                    node,
                    DecodeError(
                        f"declared size {size} exceeds the {end - offset} bytes remaining",
                        box_type=box_type,
                        offset=offset,
                    ),
                )
                node.payload = self.data[offset + header_size : end]
                break

            if box_type not in CONTAINER_PREFIXES:
                self._decode_leaf(self.nodes[index], offset + header_size, offset + size)
            offset += size
        return top_level

    def _expand(self, index: int, depth: int) -> list[int]:
        """Decode the children of a container box, checking they fill it exactly."""
        node = self.nodes[index]
        body_start = node.offset + node.header_size
        # a top-level box overrunning the buffer only exposes the children that are present
        body_end = min(node.offset + node.size, len(self.data))

        if depth >= self.max_depth:
            self._record(
                node,
                DecodeError(
                    f"nesting deeper than {self.max_depth} levels, children left undecoded",
                    box_type=node.type,
                    offset=node.offset,
                ),
            )
            node.payload = self.data[body_start:body_end]
            return []

        prefix = container_prefix(node.type, self.data, body_start)
        if body_start + prefix > body_end:
            self._record(
                node,
                DecodeError(
                    f"body of {body_end - body_start} bytes is shorter than its {prefix} fixed bytes",
                    box_type=node.type,
                    offset=node.offset,
                ),
            )
            node.payload = self.data[body_start:body_end]
            return []
        if prefix:
            self._decode_properties(node, self.data[body_start:body_end])

        children = []
        offset = body_start + prefix
        while offset < body_end:
            try:
                box_type, header_size, size = read_box_header(self.data, offset, body_end)
            except DecodeError as e:
                self._record(node, DecodeError(e.message, box_type=node.type, offset=node.offset))
                break
            child_index = self._new_node(box_type, size, offset, header_size)
            child = self.nodes[child_index]
            children.append(child_index)
            if size < header_size:
                self._record(
                    child,
                    DecodeError(
                        f"declared size {size} is smaller than its {header_size}-byte header",
                        box_type=box_type,
                        offset=offset,
                    ),
                )
                next_offset = find_next_box(self.data, offset + header_size, body_end)
                if next_offset is None:
                    child.payload = self.data[offset + header_size : body_end]
                    break
                logger.debug(f"[box_decoder] resynchronised inside {node.type} at offset {next_offset}")
                offset = next_offset
                continue
            if offset + size > body_end:
                self._record(
                    child,
                    DecodeError(
                        f"declared size {size} does not fit the {body_end - offset} bytes left in {node.type}",
                        box_type=box_type,
                        offset=offset,
                    ),
                )
                child.payload = self.data[offset + header_size : body_end]
                break
            if box_type not in CONTAINER_PREFIXES:
                self._decode_leaf(child, offset + header_size, offset + size)
            offset += size

        node.children = children
        occupied = offset - node.offset
        if occupied != node.size:
            self._record(
                node,
                DecodeError(
                    f"children occupy {occupied} bytes including headers, declared size is {node.size}",
                    box_type=node.type,
                    offset=node.offset,
                ),
            )
        return [i for i in children if not self.nodes[i].errors]

    def _freeze(self, top_level: list[int]) -> tuple[Box, ...]:
        # children are always created after their parent
        frozen: dict[int, Box] = {}
        for index in range(len(self.nodes) - 1, -1, -1):
            node = self.nodes[index]
            frozen[index] = Box(
                type=node.type,
                size=node.size,
                offset=node.offset,
                header_size=node.header_size,
                children=tuple(frozen[i] for i in node.children),
                payload=node.payload,
                properties=node.properties,
                errors=tuple(node.errors),
            )
        return tuple(frozen[i] for i in top_level)


def decode_boxes(data: bytes, offset: int = 0, max_depth: Optional[int] = None) -> tuple[Box, ...]:
    """
    Decode the box tree of ``data`` starting at ``offset``.

    Args:
        data (bytes): A segment or initialization section.
        offset (int): Where the first top-level box starts.
        max_depth (int, optional): Deepest container level to expand. Defaults to settings.

    Returns:
        tuple[Box, ...]: The top-level boxes. Decode errors are attached to the boxes.
    """
    return BoxDecoder(data, max_depth).decode(offset)


@dataclass(frozen=True)
class CaptionTrack:
    track_id: Optional[int]
    handler_type: Optional[str]
    sample_entry: Optional[str]
    language: Optional[str]
    properties: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TimedMetadata:
    box_type: str
    offset: int
    scheme_id_uri: Optional[str]
    value: Optional[str]
    id3: Optional[Id3Tag]
    properties: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SegmentInspection:
    size: int
    boxes: tuple[Box, ...]
    errors: tuple[DecodeError, ...]
    caption_tracks: tuple[CaptionTrack, ...]
    timed_metadata: tuple[TimedMetadata, ...]


def find_caption_tracks(boxes: tuple[Box, ...]) -> list[CaptionTrack]:
    tracks = []
    for top in boxes:
        for trak in (box for box in top.walk() if box.type == "trak"):
            hdlr, tkhd, mdhd, stsd = (trak.find(t) for t in ("hdlr", "tkhd", "mdhd", "stsd"))
            handler_type = hdlr.properties.get("handler_type") if hdlr else None
            entries = list(stsd.children) if stsd else []
            caption_entries = [entry for entry in entries if entry.type in CAPTION_SAMPLE_ENTRIES]
            if handler_type not in CAPTION_HANDLERS and not caption_entries:
                continue
            entry = caption_entries[0] if caption_entries else (entries[0] if entries else None)
            tracks.append(
                CaptionTrack(
                    track_id=tkhd.properties.get("track_id") if tkhd else None,
                    handler_type=handler_type,
                    sample_entry=entry.type if entry else None,
                    language=mdhd.properties.get("language") if mdhd else None,
                    properties=dict(entry.properties) if entry else {},
                )
            )
    return tracks


def find_timed_metadata(boxes: tuple[Box, ...]) -> list[TimedMetadata]:
    metadata = []
    for top in boxes:
        for box in top.walk():
            if box.type not in ("emsg", "ID32") or not box.properties:
                continue
            properties = {k: v for k, v in box.properties.items() if k not in ("id3", "message_data")}
            metadata.append(
                TimedMetadata(
                    box_type=box.type,
                    offset=box.offset,
                    scheme_id_uri=box.properties.get("scheme_id_uri"),
                    value=box.properties.get("value"),
                    id3=box.properties.get("id3"),
                    properties=properties,
                )
            )
    return metadata


def inspect_segment(data: bytes, max_depth: Optional[int] = None) -> SegmentInspection:
    """
    Decode a fetched segment and surface what a developer looks for in it.

    Raises:
        DecodeError: If the buffer is empty.
    """
    if not data:
        raise DecodeError("segment is empty")
    decoder = BoxDecoder(data, max_depth)
    boxes = decoder.decode()
    return SegmentInspection(
        size=len(data),
        boxes=boxes,
        errors=tuple(decoder.errors),
        caption_tracks=tuple(find_caption_tracks(boxes)),
        timed_metadata=tuple(find_timed_metadata(boxes)),
    )
