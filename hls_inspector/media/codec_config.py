"""
Decoders for codec configuration boxes found inside sample entries.

Covers the video configurations (avcC, hvcC, av1C, vpcC), the audio ones (esds, dOps,
dac3, dec3, dac4) and the generic sample entry extensions (colr, pasp, btrt).
"""

import struct

from hls_inspector.errors import DecodeError
from hls_inspector.media.box_fields import fourcc, parse_full_box_header, read_length_prefixed
from hls_inspector.utils.bit_utils import BitReader

# MPEG-4 descriptor tags used by esds
ES_DESCRIPTOR = 0x03
DECODER_CONFIG_DESCRIPTOR = 0x04
DECODER_SPECIFIC_INFO = 0x05
SL_CONFIG_DESCRIPTOR = 0x06

AAC_OBJECT_TYPE_INDICATION = 0x40
AAC_SAMPLING_FREQUENCIES = [96000, 88200, 64000, 48000, 44100, 32000, 24000, 22050, 16000, 12000, 11025, 8000, 7350]

AC3_SAMPLE_RATES = {0: 48000, 1: 44100, 2: 32000}
# kbit/s by bit_rate_code
AC3_BIT_RATES = [32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 384, 448, 512, 576, 640]
# full bandwidth channels by acmod
AC3_CHANNEL_COUNTS = [2, 1, 2, 3, 3, 4, 4, 5]


def parse_avcc(data: bytes) -> dict:
    version, profile, compatibility, level, length_size, sps_count = struct.unpack_from(">BBBBBB", data, 0)
    pos = 6
    sequence_parameter_sets = []
    for _ in range(sps_count & 0x1F):
        nal_unit, pos = read_length_prefixed(data, pos)
        sequence_parameter_sets.append(nal_unit.hex())
    pps_count = data[pos]
    pos += 1
    picture_parameter_sets = []
    for _ in range(pps_count):
        nal_unit, pos = read_length_prefixed(data, pos)
        picture_parameter_sets.append(nal_unit.hex())
    return {
        "configuration_version": version,
        "profile": profile,
        "profile_compatibility": compatibility,
        "level": level,
        "profile_level_id": f"{profile:02x}{compatibility:02x}{level:02x}",
        "nal_unit_length": (length_size & 0x03) + 1,
        "sequence_parameter_sets": sequence_parameter_sets,
        "picture_parameter_sets": picture_parameter_sets,
    }


def parse_hvcc(data: bytes) -> dict:
    reader = BitReader(data[:23])
    version = reader.read(8)
    profile_space = reader.read(2)
    tier_flag = reader.read_flag()
    profile_idc = reader.read(5)
    compatibility_flags = reader.read(32)
    constraint_flags = reader.read(48)
    level_idc = reader.read(8)
    reader.skip(4)
    min_spatial_segmentation = reader.read(12)
    reader.skip(6)
    parallelism_type = reader.read(2)
    reader.skip(6)
    chroma_format = reader.read(2)
    reader.skip(5)
    bit_depth_luma = reader.read(3) + 8
    reader.skip(5)
    bit_depth_chroma = reader.read(3) + 8
    avg_frame_rate = reader.read(16)
    constant_frame_rate = reader.read(2)
    temporal_layers = reader.read(3)
    temporal_id_nested = reader.read_flag()
    nal_unit_length = reader.read(2) + 1
    array_count = reader.read(8)

    pos = 23
    arrays = []
    for _ in range(array_count):
        header, unit_count = struct.unpack_from(">BH", data, pos)
        pos += 3
        units = []
        for _ in range(unit_count):
            nal_unit, pos = read_length_prefixed(data, pos)
            units.append(nal_unit.hex())
        arrays.append({"array_completeness": bool(header >> 7), "nal_unit_type": header & 0x3F, "nal_units": units})

    return {
        "configuration_version": version,
        "general_profile_space": profile_space,
        "general_tier_flag": tier_flag,
        "general_profile_idc": profile_idc,
        "general_profile_compatibility_flags": compatibility_flags,
        "general_constraint_indicator_flags": f"{constraint_flags:012x}",
        "general_level_idc": level_idc,
        "min_spatial_segmentation_idc": min_spatial_segmentation,
        "parallelism_type": parallelism_type,
        "chroma_format_idc": chroma_format,
        "bit_depth_luma": bit_depth_luma,
        "bit_depth_chroma": bit_depth_chroma,
        "avg_frame_rate": avg_frame_rate,
        "constant_frame_rate": constant_frame_rate,
        "num_temporal_layers": temporal_layers,
        "temporal_id_nested": temporal_id_nested,
        "nal_unit_length": nal_unit_length,
        "arrays": arrays,
    }


def parse_av1c(data: bytes) -> dict:
    reader = BitReader(data[:4])
    if not reader.read_flag():
        raise DecodeError("av1C marker bit is not set")
    version = reader.read(7)
    seq_profile = reader.read(3)
    seq_level_idx_0 = reader.read(5)
    seq_tier_0 = reader.read(1)
    high_bitdepth = reader.read_flag()
    twelve_bit = reader.read_flag()
    monochrome = reader.read_flag()
    chroma_subsampling_x = reader.read(1)
    chroma_subsampling_y = reader.read(1)
    chroma_sample_position = reader.read(2)
    reader.skip(3)
    delay_present = reader.read_flag()
    delay_minus_one = reader.read(4)
    return {
        "version": version,
        "seq_profile": seq_profile,
        "seq_level_idx_0": seq_level_idx_0,
        "seq_tier_0": seq_tier_0,
        "bit_depth": 12 if twelve_bit else 10 if high_bitdepth else 8,
        "monochrome": monochrome,
        "chroma_subsampling_x": chroma_subsampling_x,
        "chroma_subsampling_y": chroma_subsampling_y,
        "chroma_sample_position": chroma_sample_position,
        "initial_presentation_delay": delay_minus_one + 1 if delay_present else None,
        "config_obus": data[4:].hex(),
    }


def parse_vpcc(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    profile, level, packed, primaries, transfer, matrix = struct.unpack_from(">BBBBBB", data, pos)
    initialization_data, _ = read_length_prefixed(data, pos + 6)
    return {
        "profile": profile,
        "level": level,
        "bit_depth": packed >> 4,
        "chroma_subsampling": (packed >> 1) & 0x07,
        "video_full_range": bool(packed & 0x01),
        "colour_primaries": primaries,
        "transfer_characteristics": transfer,
        "matrix_coefficients": matrix,
        "codec_initialization_data": initialization_data.hex(),
    }


def read_descriptor_header(data: bytes, pos: int) -> tuple[int, int, int]:
    """
    Reads an MPEG-4 descriptor tag and its variable-length size.

    Returns:
        (tag, size, body_start)
    """
    tag = data[pos]
    pos += 1
    size = 0
    for _ in range(4):
        byte = data[pos]
        pos += 1
        size = (size << 7) | (byte & 0x7F)
        if not byte & 0x80:
            break
    if pos + size > len(data):
        raise DecodeError(f"descriptor 0x{tag:02X} of {size} bytes overruns the box body")
    return tag, size, pos


def parse_audio_specific_config(info: bytes) -> dict:
    reader = BitReader(info)
    object_type = reader.read(5)
    if object_type == 31:
        object_type = 32 + reader.read(6)
    frequency_index = reader.read(4)
    if frequency_index == 0x0F:
        sampling_frequency = reader.read(24)
    elif frequency_index < len(AAC_SAMPLING_FREQUENCIES):
        sampling_frequency = AAC_SAMPLING_FREQUENCIES[frequency_index]
    else:
        sampling_frequency = None
    return {
        "audio_object_type": object_type,
        "sampling_frequency": sampling_frequency,
        "channel_configuration": reader.read(4),
        "codec": f"mp4a.40.{object_type}",
    }


def parse_decoder_config(body: bytes) -> dict:
    object_type, stream = struct.unpack_from(">BB", body, 0)
    max_bitrate, avg_bitrate = struct.unpack_from(">II", body, 5)
    properties = {
        "object_type_indication": object_type,
        "stream_type": stream >> 2,
        "buffer_size": int.from_bytes(body[2:5], "big"),
        "max_bitrate": max_bitrate,
        "avg_bitrate": avg_bitrate,
    }
    pos = 13
    if pos < len(body):
        tag, size, pos = read_descriptor_header(body, pos)
        if tag == DECODER_SPECIFIC_INFO:
            info = body[pos : pos + size]
            properties["decoder_specific_info"] = info.hex()
            if object_type == AAC_OBJECT_TYPE_INDICATION and info:
                properties.update(parse_audio_specific_config(info))
    return properties


def parse_esds(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    tag, size, pos = read_descriptor_header(data, pos)
    if tag != ES_DESCRIPTOR:
        raise DecodeError(f"expected an ES_Descriptor, found tag 0x{tag:02X}")
    end = pos + size
    es_id, flags = struct.unpack_from(">HB", data, pos)
    pos += 3
    if flags & 0x80:  # streamDependenceFlag
        pos += 2
    if flags & 0x40:  # URL_Flag
        pos += 1 + data[pos]
    if flags & 0x20:  # OCRstreamFlag
        pos += 2

    properties = {"es_id": es_id, "stream_priority": flags & 0x1F}
    while pos < end:
        tag, size, body_start = read_descriptor_header(data, pos)
        if tag == DECODER_CONFIG_DESCRIPTOR:
            properties.update(parse_decoder_config(data[body_start : body_start + size]))
        elif tag == SL_CONFIG_DESCRIPTOR and size:
            properties["sl_predefined"] = data[body_start]
        pos = body_start + size
    return properties


def parse_dops(data: bytes) -> dict:
    version, channel_count, pre_skip, sample_rate, gain, family = struct.unpack_from(">BBHIhB", data, 0)
    properties = {
        "version": version,
        "output_channel_count": channel_count,
        "pre_skip": pre_skip,
        "input_sample_rate": sample_rate,
        "output_gain": gain / 256,
        "channel_mapping_family": family,
    }
    if family != 0:
        stream_count, coupled_count = struct.unpack_from(">BB", data, 11)
        mapping = data[13 : 13 + channel_count]
        if len(mapping) < channel_count:
            raise DecodeError(f"channel mapping of {channel_count} channels is truncated")
        properties.update(
            {"stream_count": stream_count, "coupled_count": coupled_count, "channel_mapping": list(mapping)}
        )
    return properties


def parse_dac3(data: bytes) -> dict:
    reader = BitReader(data[:3])
    fscod = reader.read(2)
    bsid = reader.read(5)
    bsmod = reader.read(3)
    acmod = reader.read(3)
    lfeon = reader.read(1)
    bit_rate_code = reader.read(5)
    return {
        "sample_rate": AC3_SAMPLE_RATES.get(fscod),
        "bsid": bsid,
        "bsmod": bsmod,
        "acmod": acmod,
        "lfe": bool(lfeon),
        "channel_count": AC3_CHANNEL_COUNTS[acmod] + lfeon,
        "bit_rate": AC3_BIT_RATES[bit_rate_code] * 1000 if bit_rate_code < len(AC3_BIT_RATES) else None,
    }


def parse_dec3(data: bytes) -> dict:
    reader = BitReader(data)
    data_rate = reader.read(13)
    substream_count = reader.read(3) + 1
    substreams = []
    for _ in range(substream_count):
        fscod = reader.read(2)
        bsid = reader.read(5)
        reader.skip(1)
        asvc = reader.read_flag()
        bsmod = reader.read(3)
        acmod = reader.read(3)
        lfeon = reader.read(1)
        reader.skip(3)
        dependent_count = reader.read(4)
        if dependent_count:
            channel_locations = reader.read(9)
        else:
            channel_locations = None
            reader.skip(1)
        substreams.append(
            {
                "sample_rate": AC3_SAMPLE_RATES.get(fscod),
                "bsid": bsid,
                "asvc": asvc,
                "bsmod": bsmod,
                "acmod": acmod,
                "lfe": bool(lfeon),
                "channel_count": AC3_CHANNEL_COUNTS[acmod] + lfeon,
                "dependent_substreams": dependent_count,
                "channel_locations": channel_locations,
            }
        )
    return {"data_rate": data_rate, "substreams": substreams}


def parse_dac4(data: bytes) -> dict:
    reader = BitReader(data[:4])
    dsi_version = reader.read(3)
    bitstream_version = reader.read(7)
    fs_index = reader.read(1)
    frame_rate_index = reader.read(4)
    presentation_count = reader.read(9)
    return {
        "ac4_dsi_version": dsi_version,
        "bitstream_version": bitstream_version,
        "sample_rate": 48000 if fs_index else 44100,
        "frame_rate_index": frame_rate_index,
        "n_presentations": presentation_count,
    }


def parse_colr(data: bytes) -> dict:
    colour_type = fourcc(data[:4])
    if len(colour_type) != 4:
        raise DecodeError("colour type is truncated")
    properties = {"colour_type": colour_type}
    if colour_type in ("nclx", "nclc"):
        primaries, transfer, matrix = struct.unpack_from(">HHH", data, 4)
        properties.update(
            {"colour_primaries": primaries, "transfer_characteristics": transfer, "matrix_coefficients": matrix}
        )
        if colour_type == "nclx":
            properties["full_range"] = bool(data[10] >> 7)
    elif colour_type in ("rICC", "prof"):
        properties["icc_profile_size"] = len(data) - 4
    return properties


def parse_pasp(data: bytes) -> dict:
    h_spacing, v_spacing = struct.unpack_from(">II", data, 0)
    return {"h_spacing": h_spacing, "v_spacing": v_spacing}


def parse_btrt(data: bytes) -> dict:
    buffer_size, max_bitrate, avg_bitrate = struct.unpack_from(">III", data, 0)
    return {"buffer_size": buffer_size, "max_bitrate": max_bitrate, "avg_bitrate": avg_bitrate}


CODEC_CONFIG_DECODERS = {
    "avcC": parse_avcc,
    "hvcC": parse_hvcc,
    "av1C": parse_av1c,
    "vpcC": parse_vpcc,
    "esds": parse_esds,
    "dOps": parse_dops,
    "dac3": parse_dac3,
    "dec3": parse_dec3,
    "dac4": parse_dac4,
    "colr": parse_colr,
    "pasp": parse_pasp,
    "btrt": parse_btrt,
}
