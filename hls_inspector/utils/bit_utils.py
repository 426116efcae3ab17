"""Bit-level reading of big-endian fields, shared by the SCTE-35 and codec configuration decoders."""

from hls_inspector.errors import DecodeError


class BitReader:
    """Reads big-endian bit fields from a byte buffer."""

    def __init__(self, data: bytes):
        self.data = data
        self.position = 0

    @property
    def bits_left(self) -> int:
        return len(self.data) * 8 - self.position

    @property
    def byte_position(self) -> int:
        return self.position // 8

    def read(self, bits: int) -> int:
        if bits > self.bits_left:
            raise DecodeError(f"needs {bits} bits but only {self.bits_left} are left", offset=self.byte_position)
        value = 0
        for _ in range(bits):
            byte = self.data[self.position // 8]
            value = (value << 1) | ((byte >> (7 - self.position % 8)) & 1)
            self.position += 1
        return value

    def read_flag(self) -> bool:
        return bool(self.read(1))

    def skip(self, bits: int):
        self.read(bits)

    def read_bytes(self, count: int) -> bytes:
        if self.position % 8:
            raise DecodeError("byte read is not aligned", offset=self.byte_position)
        if count * 8 > self.bits_left:
            raise DecodeError(f"needs {count} bytes but only {self.bits_left // 8} are left", offset=self.byte_position)
        start = self.byte_position
        self.position += count * 8
        return self.data[start : start + count]
