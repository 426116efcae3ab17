import pytest

from hls_inspector.errors import DecodeError
from hls_inspector.media.scte35 import (
    AvailDescriptor,
    SegmentationDescriptor,
    SpliceInsert,
    SpliceNull,
    TimeSignal,
    crc32_mpeg2,
    decode_splice_info,
    parse_splice_info_section,
)

TIME_SIGNAL_BASE64 = "/DA0AAAAAAAA///wBQb+cr0AUAAeAhxDVUVJSAAAjn/PAAGlmbAICAAAAAAsoKGKNAIAmsnRfg=="
SPLICE_INSERT_HEX = (
    "fc302f000000000000fffff014054800008f7feffe7369c02efe0052ccf500000000000a0008435545490000013562dba30a"
)


def _splice_null_section(command_length: int = 0) -> bytes:
    body = bytes.fromhex("fc3011" "00" "0000000000" "ff" f"fff{command_length:03x}" "00" "0000")
    return body + crc32_mpeg2(body).to_bytes(4, "big")


def test_time_signal_with_segmentation_descriptor():
    section = decode_splice_info(TIME_SIGNAL_BASE64)

    assert section.section_length == 52
    assert section.sap_type == 3
    assert section.cw_index == 0xFF
    assert section.tier == 0xFFF
    assert section.splice_command_length == 5
    assert section.splice_command_type == 6
    assert isinstance(section.splice_command, TimeSignal)
    assert section.splice_command.pts_time == 1924989008

    (descriptor,) = section.descriptors
    assert isinstance(descriptor, SegmentationDescriptor)
    assert descriptor.identifier == "CUEI"
    assert descriptor.segmentation_event_id == 1207959694
    assert descriptor.program_segmentation_flag is True
    assert descriptor.segmentation_duration_flag is True
    assert descriptor.delivery_not_restricted_flag is False
    assert descriptor.web_delivery_allowed_flag is False
    assert descriptor.no_regional_blackout_flag is True
    assert descriptor.archive_allowed_flag is True
    assert descriptor.device_restrictions == 3
    assert descriptor.segmentation_duration == 27630000
    assert descriptor.segmentation_upid_type == 8
    assert descriptor.segmentation_upid.hex() == "000000002ca0a18a"
    assert descriptor.segmentation_type_id == 0x34
    assert descriptor.segment_num == 2
    assert descriptor.segments_expected == 0
    assert descriptor.sub_segment_num is None

    assert section.crc_32 == 0x9AC9D17E
    assert section.crc_valid is True
    assert section.errors == ()


def test_splice_insert():
    section = decode_splice_info(SPLICE_INSERT_HEX)

    command = section.splice_command
    assert isinstance(command, SpliceInsert)
    assert command.name == "splice_insert"
    assert command.splice_event_id == 1207959695
    assert command.out_of_network_indicator is True
    assert command.program_splice_flag is True
    assert command.splice_immediate_flag is False
    assert command.pts_time == 1936310318
    assert command.break_duration.auto_return is True
    assert command.break_duration.duration == 5426421
    assert command.unique_program_id == 0
    assert command.avail_num == 0
    assert command.avails_expected == 0

    (descriptor,) = section.descriptors
    assert descriptor == AvailDescriptor(identifier="CUEI", provider_avail_id=309)
    assert section.crc_32 == 0x62DBA30A
    assert section.crc_valid is True


def test_hex_prefix_and_case_are_accepted():
    section = decode_splice_info("0x" + SPLICE_INSERT_HEX.upper())

    assert section.splice_command.splice_event_id == 1207959695


def test_url_safe_base64_without_padding():
    url_safe = TIME_SIGNAL_BASE64.replace("/", "_").replace("+", "-").rstrip("=")

    assert decode_splice_info(url_safe).splice_command.pts_time == 1924989008


def test_splice_null():
    section = parse_splice_info_section(_splice_null_section())

    assert section.splice_command == SpliceNull()
    assert section.descriptors == ()
    assert section.crc_valid is True


def test_crc_mismatch_is_reported():
    corrupted = SPLICE_INSERT_HEX[:-2] + "00"

    section = decode_splice_info(corrupted)
    assert section.crc_valid is False
    assert isinstance(section.splice_command, SpliceInsert)
    (error,) = section.errors
    assert "CRC_32" in error.message
    assert error.offset == 3 + section.section_length - 4


def test_section_length_shorter_than_fixed_fields():
    section = bytes.fromhex("fc3000" + "00" * 17)

    with pytest.raises(DecodeError) as exc_info:
        parse_splice_info_section(section)
    assert "section_length 0" in exc_info.value.message
    assert exc_info.value.offset == 1


def test_command_length_overrunning_descriptor_loop():
    with pytest.raises(DecodeError) as exc_info:
        parse_splice_info_section(_splice_null_section(command_length=5))
    assert "splice_command_length 5" in exc_info.value.message


def test_unsupported_command_names_the_type():
    unsupported = SPLICE_INSERT_HEX[:26] + "08" + SPLICE_INSERT_HEX[28:]

    with pytest.raises(DecodeError) as exc_info:
        decode_splice_info(unsupported)
    assert "0x08" in exc_info.value.message


def test_encrypted_section_names_the_command():
    encrypted = SPLICE_INSERT_HEX[:8] + "80" + SPLICE_INSERT_HEX[10:]

    with pytest.raises(DecodeError) as exc_info:
        decode_splice_info(encrypted)
    assert "encrypted" in exc_info.value.message
    assert "splice_insert" in exc_info.value.message


def test_wrong_table_id():
    with pytest.raises(DecodeError):
        decode_splice_info("fd" + SPLICE_INSERT_HEX[2:])


def test_truncated_section():
    with pytest.raises(DecodeError):
        decode_splice_info(SPLICE_INSERT_HEX[:40])


@pytest.mark.parametrize("payload", ["", "0xzz", "not base64!", "0x123"])
def test_malformed_encodings(payload):
    with pytest.raises(DecodeError):
        decode_splice_info(payload)
