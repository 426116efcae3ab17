import logging
import struct
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

from hls_inspector.const import SEGMENT_CONTENT_TYPES, SEGMENT_EXTENSIONS

logger = logging.getLogger(__name__)

_WEBVTT_SIGNATURE = b"WEBVTT"
_UTF8_BOM = b"\xef\xbb\xbf"
_MP4_SIGNATURE_BOXES = {b"ftyp", b"styp", b"moof", b"moov", b"sidx", b"emsg", b"prft"}


class SegmentType(str, Enum):
    MP4 = "mp4"
    WEBVTT = "webvtt"
    UNKNOWN = "unknown"


def is_mp4_header(data: bytes) -> bool:
    """Check if the data starts with a box header typical of an MP4 segment."""
    if len(data) < 8:
        return False
    size = struct.unpack_from(">I", data, 0)[0]
    return data[4:8] in _MP4_SIGNATURE_BOXES and (size in (0, 1) or size >= 8)


def is_webvtt(data: bytes) -> bool:
    if data.startswith(_UTF8_BOM):
        data = data[len(_UTF8_BOM) :]
    if not data.startswith(_WEBVTT_SIGNATURE):
        return False
    # the signature is followed by a space, tab or line terminator, or ends the file
    rest = data[len(_WEBVTT_SIGNATURE) : len(_WEBVTT_SIGNATURE) + 1]
    return rest in (b"", b" ", b"\t", b"\n", b"\r")


def probe_segment_type(url: str, data: bytes, content_type: Optional[str] = None) -> SegmentType:
    """
    Decide how a fetched segment should be inspected.

    The Content-Type header wins, then the URL path extension, then the leading bytes.

    Args:
        url (str): The URL the segment was fetched from.
        data (bytes): The segment bytes.
        content_type (str, optional): The Content-Type response header.

    Returns:
        SegmentType: MP4 for box-structured data, WEBVTT for subtitle text, UNKNOWN otherwise.
    """
    if content_type:
        mime_type = content_type.split(";", 1)[0].strip().lower()
        if mime_type in SEGMENT_CONTENT_TYPES:
            return SegmentType(SEGMENT_CONTENT_TYPES[mime_type])

    path = urlsplit(url).path
    extension = path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
    if extension in SEGMENT_EXTENSIONS:
        return SegmentType(SEGMENT_EXTENSIONS[extension])

    if is_mp4_header(data):
        return SegmentType.MP4
    if is_webvtt(data):
        return SegmentType.WEBVTT
    logger.debug(f"Could not determine segment type of {url} (content type {content_type!r})")
    return SegmentType.UNKNOWN
