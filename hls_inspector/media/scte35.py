"""
SCTE-35 splice_info_section decoder.

Decodes the section header, the splice command and the first level of splice
descriptors. Encrypted sections are reported, not decrypted.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from hls_inspector.errors import DecodeError
from hls_inspector.utils.base64_utils import decode_binary_payload
from hls_inspector.utils.bit_utils import BitReader

logger = logging.getLogger(__name__)

SPLICE_INFO_TABLE_ID = 0xFC
SPLICE_COMMAND_LENGTH_UNSPECIFIED = 0xFFF
# protocol_version through splice_command_type, descriptor_loop_length and CRC_32
SECTION_MINIMUM_LENGTH = 11 + 2 + 4

SPLICE_NULL = 0x00
SPLICE_SCHEDULE = 0x04
SPLICE_INSERT = 0x05
TIME_SIGNAL = 0x06
BANDWIDTH_RESERVATION = 0x07
PRIVATE_COMMAND = 0xFF

COMMAND_NAMES = {
    SPLICE_NULL: "splice_null",
    SPLICE_SCHEDULE: "splice_schedule",
    SPLICE_INSERT: "splice_insert",
    TIME_SIGNAL: "time_signal",
    BANDWIDTH_RESERVATION: "bandwidth_reservation",
    PRIVATE_COMMAND: "private_command",
}

AVAIL_DESCRIPTOR = 0x00
DTMF_DESCRIPTOR = 0x01
SEGMENTATION_DESCRIPTOR = 0x02
TIME_DESCRIPTOR = 0x03

# segmentation_type_id values followed by sub_segment_num and sub_segments_expected
SUB_SEGMENT_TYPES = {0x30, 0x32, 0x34, 0x36, 0x38, 0x3A, 0x44, 0x46}


# ============================================================================
# CRC32 for MPEG-2 sections
# ============================================================================

# Pre-computed CRC32 table for MPEG-2 (polynomial 0x04C11DB7)
_CRC32_TABLE = None


def _init_crc32_table():
    """Initialize CRC32 lookup table for MPEG-2."""
    global _CRC32_TABLE
    if _CRC32_TABLE is not None:
        return

    _CRC32_TABLE = []
    for i in range(256):
        crc = i << 24
        for _ in range(8):
            if crc & 0x80000000:
                crc = (crc << 1) ^ 0x04C11DB7
            else:
                crc <<= 1
        _CRC32_TABLE.append(crc & 0xFFFFFFFF)


def crc32_mpeg2(data: bytes) -> int:
    """Calculate CRC32 for MPEG-2 sections."""
    _init_crc32_table()
    crc = 0xFFFFFFFF
    for byte in data:
        crc = (_CRC32_TABLE[((crc >> 24) ^ byte) & 0xFF] ^ (crc << 8)) & 0xFFFFFFFF
    return crc


# ============================================================================
# Splice commands
# ============================================================================


@dataclass(frozen=True)
class BreakDuration:
    auto_return: bool
    duration: int


@dataclass(frozen=True)
class SpliceComponent:
    component_tag: int
    pts_time: Optional[int] = None
    utc_splice_time: Optional[int] = None


@dataclass(frozen=True)
class SpliceNull:
    name: str = "splice_null"


@dataclass(frozen=True)
class ScheduledEvent:
    splice_event_id: int
    cancel_indicator: bool
    out_of_network_indicator: Optional[bool] = None
    program_splice_flag: Optional[bool] = None
    utc_splice_time: Optional[int] = None
    components: tuple[SpliceComponent, ...] = ()
    break_duration: Optional[BreakDuration] = None
    unique_program_id: Optional[int] = None
    avail_num: Optional[int] = None
    avails_expected: Optional[int] = None


@dataclass(frozen=True)
class SpliceSchedule:
    events: tuple[ScheduledEvent, ...]
    name: str = "splice_schedule"


@dataclass(frozen=True)
class SpliceInsert:
    splice_event_id: int
    cancel_indicator: bool
    out_of_network_indicator: Optional[bool] = None
    program_splice_flag: Optional[bool] = None
    splice_immediate_flag: Optional[bool] = None
    pts_time: Optional[int] = None
    components: tuple[SpliceComponent, ...] = ()
    break_duration: Optional[BreakDuration] = None
    unique_program_id: Optional[int] = None
    avail_num: Optional[int] = None
    avails_expected: Optional[int] = None
    name: str = "splice_insert"


@dataclass(frozen=True)
class TimeSignal:
    pts_time: Optional[int]
    name: str = "time_signal"


@dataclass(frozen=True)
class BandwidthReservation:
    name: str = "bandwidth_reservation"


@dataclass(frozen=True)
class PrivateCommand:
    identifier: int
    private_bytes: bytes
    name: str = "private_command"


SpliceCommand = Union[SpliceNull, SpliceSchedule, SpliceInsert, TimeSignal, BandwidthReservation, PrivateCommand]


# ============================================================================
# Splice descriptors
# ============================================================================


@dataclass(frozen=True)
class AvailDescriptor:
    identifier: str
    provider_avail_id: int
    tag: int = AVAIL_DESCRIPTOR


@dataclass(frozen=True)
class DtmfDescriptor:
    identifier: str
    preroll: int
    dtmf_chars: str
    tag: int = DTMF_DESCRIPTOR


@dataclass(frozen=True)
class SegmentationComponent:
    component_tag: int
    pts_offset: int


@dataclass(frozen=True)
class SegmentationDescriptor:
    identifier: str
    segmentation_event_id: int
    segmentation_event_cancel_indicator: bool
    program_segmentation_flag: Optional[bool] = None
    segmentation_duration_flag: Optional[bool] = None
    delivery_not_restricted_flag: Optional[bool] = None
    web_delivery_allowed_flag: Optional[bool] = None
    no_regional_blackout_flag: Optional[bool] = None
    archive_allowed_flag: Optional[bool] = None
    device_restrictions: Optional[int] = None
    components: tuple[SegmentationComponent, ...] = ()
    segmentation_duration: Optional[int] = None
    segmentation_upid_type: Optional[int] = None
    segmentation_upid: Optional[bytes] = None
    segmentation_type_id: Optional[int] = None
    segment_num: Optional[int] = None
    segments_expected: Optional[int] = None
    sub_segment_num: Optional[int] = None
    sub_segments_expected: Optional[int] = None
    tag: int = SEGMENTATION_DESCRIPTOR


@dataclass(frozen=True)
class TimeDescriptor:
    identifier: str
    tai_seconds: int
    tai_ns: int
    utc_offset: int
    tag: int = TIME_DESCRIPTOR


@dataclass(frozen=True)
class GenericDescriptor:
    tag: int
    identifier: str
    data: bytes


SpliceDescriptor = Union[AvailDescriptor, DtmfDescriptor, SegmentationDescriptor, TimeDescriptor, GenericDescriptor]


@dataclass(frozen=True)
class SpliceInfoSection:
    table_id: int
    section_syntax_indicator: bool
    private_indicator: bool
    sap_type: int
    section_length: int
    protocol_version: int
    encrypted_packet: bool
    encryption_algorithm: int
    pts_adjustment: int
    cw_index: int
    tier: int
    splice_command_length: int
    splice_command_type: int
    splice_command: SpliceCommand
    descriptors: tuple[SpliceDescriptor, ...] = ()
    crc_32: int = 0
    crc_valid: bool = False
    errors: tuple[DecodeError, ...] = field(default_factory=tuple)


def read_splice_time(reader: BitReader) -> Optional[int]:
    if reader.read_flag():
        reader.skip(6)
        return reader.read(33)
    reader.skip(7)
    return None


def read_break_duration(reader: BitReader) -> BreakDuration:
    auto_return = reader.read_flag()
    reader.skip(6)
    return BreakDuration(auto_return=auto_return, duration=reader.read(33))


def read_splice_schedule(reader: BitReader) -> SpliceSchedule:
    events = []
    for _ in range(reader.read(8)):
        event_id = reader.read(32)
        cancel = reader.read_flag()
        reader.skip(7)
        if cancel:
            events.append(ScheduledEvent(splice_event_id=event_id, cancel_indicator=True))
            continue
        out_of_network = reader.read_flag()
        program_splice = reader.read_flag()
        duration_flag = reader.read_flag()
        reader.skip(5)
        utc_splice_time = None
        components = []
        if program_splice:
            utc_splice_time = reader.read(32)
        else:
            for _ in range(reader.read(8)):
                components.append(SpliceComponent(component_tag=reader.read(8), utc_splice_time=reader.read(32)))
        break_duration = read_break_duration(reader) if duration_flag else None
        events.append(
            ScheduledEvent(
                splice_event_id=event_id,
                cancel_indicator=False,
                out_of_network_indicator=out_of_network,
                program_splice_flag=program_splice,
                utc_splice_time=utc_splice_time,
                components=tuple(components),
                break_duration=break_duration,
                unique_program_id=reader.read(16),
                avail_num=reader.read(8),
                avails_expected=reader.read(8),
            )
        )
    return SpliceSchedule(events=tuple(events))


def read_splice_insert(reader: BitReader) -> SpliceInsert:
    event_id = reader.read(32)
    cancel = reader.read_flag()
    reader.skip(7)
    if cancel:
        return SpliceInsert(splice_event_id=event_id, cancel_indicator=True)

    out_of_network = reader.read_flag()
    program_splice = reader.read_flag()
    duration_flag = reader.read_flag()
    splice_immediate = reader.read_flag()
    reader.skip(4)

    pts_time = None
    components = []
    if program_splice and not splice_immediate:
        pts_time = read_splice_time(reader)
    if not program_splice:
        for _ in range(reader.read(8)):
            tag = reader.read(8)
            components.append(
                SpliceComponent(component_tag=tag, pts_time=None if splice_immediate else read_splice_time(reader))
            )
    break_duration = read_break_duration(reader) if duration_flag else None
    return SpliceInsert(
        splice_event_id=event_id,
        cancel_indicator=False,
        out_of_network_indicator=out_of_network,
        program_splice_flag=program_splice,
        splice_immediate_flag=splice_immediate,
        pts_time=pts_time,
        components=tuple(components),
        break_duration=break_duration,
        unique_program_id=reader.read(16),
        avail_num=reader.read(8),
        avails_expected=reader.read(8),
    )


def read_splice_command(command_type: int, reader: BitReader, length: Optional[int]) -> SpliceCommand:
    if command_type == SPLICE_NULL:
        return SpliceNull()
    if command_type == SPLICE_SCHEDULE:
        return read_splice_schedule(reader)
    if command_type == SPLICE_INSERT:
        return read_splice_insert(reader)
    if command_type == TIME_SIGNAL:
        return TimeSignal(pts_time=read_splice_time(reader))
    if command_type == BANDWIDTH_RESERVATION:
        return BandwidthReservation()
    if command_type == PRIVATE_COMMAND:
        if length is None:
            raise DecodeError("private_command requires an explicit splice_command_length")
        identifier = reader.read(32)
        return PrivateCommand(identifier=identifier, private_bytes=reader.read_bytes(length - 4))
    raise DecodeError(f"unsupported splice command type 0x{command_type:02X}")


def read_segmentation_descriptor(identifier: str, reader: BitReader) -> SegmentationDescriptor:
    event_id = reader.read(32)
    cancel = reader.read_flag()
    reader.skip(7)
    if cancel:
        return SegmentationDescriptor(
            identifier=identifier, segmentation_event_id=event_id, segmentation_event_cancel_indicator=True
        )

    program_segmentation = reader.read_flag()
    duration_flag = reader.read_flag()
    delivery_not_restricted = reader.read_flag()
    restrictions = {}
    if delivery_not_restricted:
        reader.skip(5)
    else:
        restrictions = {
            "web_delivery_allowed_flag": reader.read_flag(),
            "no_regional_blackout_flag": reader.read_flag(),
            "archive_allowed_flag": reader.read_flag(),
            "device_restrictions": reader.read(2),
        }

    components = []
    if not program_segmentation:
        for _ in range(reader.read(8)):
            tag = reader.read(8)
            reader.skip(7)
            components.append(SegmentationComponent(component_tag=tag, pts_offset=reader.read(33)))

    duration = reader.read(40) if duration_flag else None
    upid_type = reader.read(8)
    upid = reader.read_bytes(reader.read(8))
    type_id = reader.read(8)
    segment_num = reader.read(8)
    segments_expected = reader.read(8)
    sub_segments = {}
    # older encoders omit the sub-segment fields
    if type_id in SUB_SEGMENT_TYPES and reader.bits_left >= 16:
        sub_segments = {"sub_segment_num": reader.read(8), "sub_segments_expected": reader.read(8)}

    return SegmentationDescriptor(
        identifier=identifier,
        segmentation_event_id=event_id,
        segmentation_event_cancel_indicator=False,
        program_segmentation_flag=program_segmentation,
        segmentation_duration_flag=duration_flag,
        delivery_not_restricted_flag=delivery_not_restricted,
        components=tuple(components),
        segmentation_duration=duration,
        segmentation_upid_type=upid_type,
        segmentation_upid=upid,
        segmentation_type_id=type_id,
        segment_num=segment_num,
        segments_expected=segments_expected,
        **restrictions,
        **sub_segments,
    )


def read_descriptor(tag: int, body: bytes) -> SpliceDescriptor:
    reader = BitReader(body)
    identifier = reader.read_bytes(4).decode("latin-1")
    if tag == AVAIL_DESCRIPTOR:
        return AvailDescriptor(identifier=identifier, provider_avail_id=reader.read(32))
    if tag == DTMF_DESCRIPTOR:
        preroll = reader.read(8)
        count = reader.read(3)
        reader.skip(5)
        dtmf_chars = reader.read_bytes(count).decode("latin-1")
        return DtmfDescriptor(identifier=identifier, preroll=preroll, dtmf_chars=dtmf_chars)
    if tag == SEGMENTATION_DESCRIPTOR:
        return read_segmentation_descriptor(identifier, reader)
    if tag == TIME_DESCRIPTOR:
        return TimeDescriptor(
            identifier=identifier, tai_seconds=reader.read(48), tai_ns=reader.read(32), utc_offset=reader.read(16)
        )
    return GenericDescriptor(tag=tag, identifier=identifier, data=body[4:])


def read_descriptors(data: bytes, base_offset: int) -> tuple[list[SpliceDescriptor], list[DecodeError]]:
    """Decode a descriptor loop; a malformed descriptor is reported and skipped."""
    descriptors, errors = [], []
    pos = 0
    while pos < len(data):
        if pos + 2 > len(data):
            errors.append(DecodeError("truncated splice descriptor header", offset=base_offset + pos))
            break
        tag, length = data[pos], data[pos + 1]
        body = data[pos + 2 : pos + 2 + length]
        if len(body) < length:
            errors.append(
                DecodeError(f"splice descriptor 0x{tag:02X} overruns the descriptor loop", offset=base_offset + pos)
            )
            break
        try:
            descriptors.append(read_descriptor(tag, body))
        except DecodeError as e:
            errors.append(DecodeError(f"splice descriptor 0x{tag:02X}: {e.message}", offset=base_offset + pos))
        pos += 2 + length
    return descriptors, errors


def parse_splice_info_section(data: bytes) -> SpliceInfoSection:
    """
    Decode a binary splice_info_section.

    Raises:
        DecodeError: If the table ID, section length or command cannot be decoded, or the
            section is encrypted.
    """
    reader = BitReader(data)
    table_id = reader.read(8)
    if table_id != SPLICE_INFO_TABLE_ID:
        raise DecodeError(f"table_id 0x{table_id:02X} is not a splice_info_section", offset=0)
    section_syntax_indicator = reader.read_flag()
    private_indicator = reader.read_flag()
    sap_type = reader.read(2)
    section_length = reader.read(12)
    if 3 + section_length > len(data):
        raise DecodeError(f"section_length {section_length} exceeds the {len(data) - 3} bytes present", offset=1)
    if section_length < SECTION_MINIMUM_LENGTH:
        raise DecodeError(
            f"section_length {section_length} is shorter than the {SECTION_MINIMUM_LENGTH} bytes of fixed fields",
            offset=1,
        )

    protocol_version = reader.read(8)
    encrypted_packet = reader.read_flag()
    encryption_algorithm = reader.read(6)
    pts_adjustment = reader.read(33)
    cw_index = reader.read(8)
    tier = reader.read(12)
    splice_command_length = reader.read(12)
    splice_command_type = reader.read(8)
    if encrypted_packet:
        name = COMMAND_NAMES.get(splice_command_type, f"0x{splice_command_type:02X}")
        raise DecodeError(
            f"encrypted splice_info_section (algorithm {encryption_algorithm}, command {name}) cannot be decoded"
        )

    command_start = reader.byte_position
    section_end = 3 + section_length
    # the descriptor loop length and the CRC follow the command
    command_limit = section_end - 6
    if splice_command_length == SPLICE_COMMAND_LENGTH_UNSPECIFIED:
        length = None
        command_reader = BitReader(data[command_start:command_limit])
    else:
        length = splice_command_length
        if command_start + length > command_limit:
            raise DecodeError(
                f"splice_command_length {length} overruns the {command_limit - command_start} bytes left "
                "before the descriptor loop",
                offset=11,
            )
        command_reader = BitReader(data[command_start : command_start + length])
    try:
        splice_command = read_splice_command(splice_command_type, command_reader, length)
    except DecodeError as e:
        name = COMMAND_NAMES.get(splice_command_type, "splice command")
        raise DecodeError(f"{name} (type 0x{splice_command_type:02X}): {e.message}", offset=command_start)
    if length is None:
        length = (command_reader.position + 7) // 8

    loop_start = command_start + length
    reader = BitReader(data[loop_start : section_end - 4])
    descriptor_loop_length = reader.read(16)
    available = reader.bits_left // 8
    descriptors, errors = read_descriptors(reader.read_bytes(min(descriptor_loop_length, available)), loop_start + 2)
    if descriptor_loop_length > available:
        errors.append(DecodeError("descriptor loop overruns the section", offset=loop_start))

    crc_32 = int.from_bytes(data[section_end - 4 : section_end], "big")
    crc_valid = crc32_mpeg2(data[: section_end - 4]) == crc_32
    if not crc_valid:
        logger.warning(f"SCTE-35 CRC mismatch: section carries 0x{crc_32:08X}")
        errors.append(DecodeError(f"CRC_32 0x{crc_32:08X} does not match the section", offset=section_end - 4))

    return SpliceInfoSection(
        table_id=table_id,
        section_syntax_indicator=section_syntax_indicator,
        private_indicator=private_indicator,
        sap_type=sap_type,
        section_length=section_length,
        protocol_version=protocol_version,
        encrypted_packet=encrypted_packet,
        encryption_algorithm=encryption_algorithm,
        pts_adjustment=pts_adjustment,
        cw_index=cw_index,
        tier=tier,
        splice_command_length=splice_command_length,
        splice_command_type=splice_command_type,
        splice_command=splice_command,
        descriptors=tuple(descriptors),
        crc_32=crc_32,
        crc_valid=crc_valid,
        errors=tuple(errors),
    )


def decode_splice_info(payload: str) -> SpliceInfoSection:
    """
    Decode a splice_info_section carried as hex (``0x`` optional) or base64 text.

    Args:
        payload (str): The encoded section, e.g. the value of an SCTE35-OUT attribute.

    Returns:
        SpliceInfoSection: The decoded section.

    Raises:
        DecodeError: If the text encoding or the binary section is malformed.
    """
    return parse_splice_info_section(decode_binary_payload(payload))
