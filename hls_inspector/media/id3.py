"""
ID3v2 tag parser for timed metadata.

Only what HLS timed metadata actually carries is interpreted: text and URL frames,
TXXX/WXXX, COMM and PRIV (including the transport stream timestamp that Apple
packagers attach). Every other frame is returned with its payload as hex.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Any

from hls_inspector.errors import DecodeError

logger = logging.getLogger(__name__)

ID3_HEADER_SIZE = 10
TRANSPORT_STREAM_TIMESTAMP_OWNER = "com.apple.streaming.transportStreamTimestamp"

# text encoding byte -> (codec, terminator)
TEXT_ENCODINGS = {
    0: ("latin-1", b"\x00"),
    1: ("utf-16", b"\x00\x00"),
    2: ("utf-16-be", b"\x00\x00"),
    3: ("utf-8", b"\x00"),
}


@dataclass(frozen=True)
class Id3Frame:
    frame_id: str
    size: int
    value: Any


@dataclass(frozen=True)
class Id3Tag:
    version: str
    flags: int
    size: int
    frames: tuple[Id3Frame, ...]

    def items(self) -> list[tuple[str, Any]]:
        """Frames as (frame id, value) pairs, in tag order."""
        return [(frame.frame_id, frame.value) for frame in self.frames]


def decode_syncsafe(data: bytes) -> int:
    value = 0
    for byte in data:
        if byte & 0x80:
            raise DecodeError(f"invalid syncsafe integer {data.hex()}")
        value = (value << 7) | byte
    return value


def remove_unsynchronisation(data: bytes) -> bytes:
    return data.replace(b"\xff\x00", b"\xff")


def split_terminated(data: bytes, terminator: bytes) -> tuple[bytes, bytes]:
    """Splits at the first terminator aligned to the terminator width."""
    width = len(terminator)
    for position in range(0, len(data) - width + 1, width):
        if data[position : position + width] == terminator:
            return data[:position], data[position + width :]
    return data, b""


def decode_text(data: bytes, encoding: int) -> str:
    if encoding not in TEXT_ENCODINGS:
        raise DecodeError(f"unknown ID3 text encoding {encoding}")
    codec, terminator = TEXT_ENCODINGS[encoding]
    while data.endswith(terminator):
        data = data[: -len(terminator)]
    return data.decode(codec, errors="replace")


def parse_text_frame(body: bytes) -> Any:
    encoding = body[0]
    _, terminator = TEXT_ENCODINGS.get(encoding, (None, b"\x00"))
    values = []
    rest = body[1:]
    while rest:
        value, rest = split_terminated(rest, terminator)
        values.append(decode_text(value, encoding))
    values = [value for value in values if value] or [""]
    return values[0] if len(values) == 1 else values


def parse_described_frame(body: bytes, value_is_url: bool = False) -> dict:
    """TXXX and WXXX: a description followed by a value."""
    encoding = body[0]
    if encoding not in TEXT_ENCODINGS:
        raise DecodeError(f"unknown ID3 text encoding {encoding}")
    description, value = split_terminated(body[1:], TEXT_ENCODINGS[encoding][1])
    return {
        "description": decode_text(description, encoding),
        "value": decode_text(value, 0 if value_is_url else encoding),
    }


def parse_comment_frame(body: bytes) -> dict:
    encoding = body[0]
    if encoding not in TEXT_ENCODINGS:
        raise DecodeError(f"unknown ID3 text encoding {encoding}")
    language = body[1:4].decode("latin-1")
    description, text = split_terminated(body[4:], TEXT_ENCODINGS[encoding][1])
    return {
        "language": language,
        "description": decode_text(description, encoding),
        "text": decode_text(text, encoding),
    }


def parse_private_frame(body: bytes) -> dict:
    owner, data = split_terminated(body, b"\x00")
    owner = owner.decode("latin-1")
    value = {"owner": owner, "data": data.hex()}
    if owner == TRANSPORT_STREAM_TIMESTAMP_OWNER and len(data) == 8:
        # 33-bit MPEG-2 PTS in the low bits of a big-endian 64-bit field
        value["timestamp"] = struct.unpack(">Q", data)[0] & 0x1FFFFFFFF
    return value


def parse_frame(frame_id: str, body: bytes) -> Any:
    if not body:
        return ""
    if frame_id == "TXXX":
        return parse_described_frame(body)
    if frame_id == "WXXX":
        return parse_described_frame(body, value_is_url=True)
    if frame_id.startswith("T"):
        return parse_text_frame(body)
    if frame_id.startswith("W"):
        return decode_text(body, 0)
    if frame_id == "COMM":
        return parse_comment_frame(body)
    if frame_id == "PRIV":
        return parse_private_frame(body)
    return body.hex()


def parse_id3(data: bytes) -> Id3Tag:
    """
    Parses an ID3v2.3 or ID3v2.4 tag at the start of ``data``.

    Args:
        data (bytes): Buffer starting with the ``ID3`` signature.

    Returns:
        Id3Tag: The tag header and its frames.

    Raises:
        DecodeError: If the signature, version or frame layout is invalid.
    """
    if len(data) < ID3_HEADER_SIZE or data[:3] != b"ID3":
        raise DecodeError("missing ID3 signature")

    major, revision, flags = data[3], data[4], data[5]
    if major not in (3, 4):
        raise DecodeError(f"unsupported ID3 version 2.{major}")
    size = decode_syncsafe(data[6:10])
    if ID3_HEADER_SIZE + size > len(data):
        raise DecodeError(f"ID3 tag declares {size} bytes but only {len(data) - ID3_HEADER_SIZE} are present")

    body = data[ID3_HEADER_SIZE : ID3_HEADER_SIZE + size]
    if flags & 0x80 and major == 3:
        body = remove_unsynchronisation(body)

    position = 0
    if flags & 0x40:
        if len(body) < 4:
            raise DecodeError("truncated ID3 extended header")
        if major == 4:
            position = decode_syncsafe(body[:4])
        else:
            position = struct.unpack_from(">I", body, 0)[0] + 4

    frames = []
    while position + ID3_HEADER_SIZE <= len(body):
        if body[position] == 0:
            break  # padding
        frame_id = body[position : position + 4].decode("latin-1")
        if major == 4:
            frame_size = decode_syncsafe(body[position + 4 : position + 8])
        else:
            frame_size = struct.unpack_from(">I", body, position + 4)[0]
        frame_flags = struct.unpack_from(">H", body, position + 8)[0]
        start = position + ID3_HEADER_SIZE
        if start + frame_size > len(body):
            raise DecodeError(f"ID3 frame {frame_id} overruns the tag", offset=ID3_HEADER_SIZE + position)

        frame_body = body[start : start + frame_size]
        if major == 4 and frame_flags & 0x0002:
            frame_body = remove_unsynchronisation(frame_body)
        if major == 4 and frame_flags & 0x0001:
            # data length indicator precedes the frame content
            frame_body = frame_body[4:]
        frames.append(Id3Frame(frame_id=frame_id, size=frame_size, value=parse_frame(frame_id, frame_body)))
        position = start + frame_size

    logger.debug(f"Parsed ID3v2.{major}.{revision} tag with {len(frames)} frames")
    return Id3Tag(version=f"2.{major}.{revision}", flags=flags, size=size, frames=tuple(frames))
