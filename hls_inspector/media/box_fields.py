"""
Field readers shared by the box property decoders.
"""

import struct

from hls_inspector.errors import DecodeError


def parse_full_box_header(data: bytes) -> tuple[int, int, int]:
    """
    Parse a full box header (version + flags).

    Returns:
        (version, flags, header_size) where header_size is 4 bytes.
    """
    if len(data) < 4:
        raise DecodeError(f"full box header needs 4 bytes, got {len(data)}")
    version = data[0]
    flags = (data[1] << 16) | (data[2] << 8) | data[3]
    return version, flags, 4


def read_cstring(data: bytes, pos: int) -> tuple[str, int]:
    """Reads a null-terminated UTF-8 string, returning it with the position after the null."""
    end = data.find(b"\x00", pos)
    if end == -1:
        raise DecodeError("unterminated string")
    return data[pos:end].decode("utf-8", errors="replace"), end + 1


def read_length_prefixed(data: bytes, pos: int, length_format: str = ">H") -> tuple[bytes, int]:
    """Reads a blob preceded by its length, returning it with the position after it."""
    length = struct.unpack_from(length_format, data, pos)[0]
    pos += struct.calcsize(length_format)
    if pos + length > len(data):
        raise DecodeError(f"{length}-byte field overruns the box body")
    return data[pos : pos + length], pos + length


def decode_language(packed: int) -> str:
    """ISO-639-2/T code packed as three 5-bit letters."""
    return "".join(chr(((packed >> shift) & 0x1F) + 0x60) for shift in (10, 5, 0))


def fourcc(data: bytes) -> str:
    return data.decode("latin-1")


def read_table(data: bytes, pos: int, count: int, entry_format: str, name: str) -> list[tuple]:
    """
    Reads ``count`` fixed-size entries starting at ``pos``.

    The count is checked against the bytes present before anything is allocated, so a
    forged count cannot make the table larger than the box body.

    Raises:
        DecodeError: If the body holds fewer than ``count`` entries.
    """
    entry_size = struct.calcsize(entry_format)
    if count * entry_size > len(data) - pos:
        raise DecodeError(f"{name} of {count} entries is truncated")
    return list(struct.iter_unpack(entry_format, data[pos : pos + count * entry_size]))
