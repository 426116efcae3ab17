"""
Decoders for the fields of known ISO-BMFF boxes.

Each decoder receives the box body (the bytes after the box header) and returns a dict
of decoded fields. Decoders raise ``struct.error`` or ``DecodeError`` on truncated or
malformed bodies; the box decoder records those against the box.
"""

import struct

from hls_inspector.errors import DecodeError
from hls_inspector.media.box_fields import decode_language, fourcc, parse_full_box_header, read_cstring, read_table
from hls_inspector.media.codec_config import CODEC_CONFIG_DECODERS
from hls_inspector.media.encryption import ENCRYPTION_DECODERS

# Sample entries by the size of their fixed fields before child boxes
VISUAL_SAMPLE_ENTRIES = {"avc1", "avc3", "hvc1", "hev1", "dvh1", "dvhe", "vp08", "vp09", "av01", "encv", "mp4v"}
AUDIO_SAMPLE_ENTRIES = {"mp4a", "enca", "ac-3", "ec-3", "ac-4", "Opus", "fLaC", "alac", "mha1", "mhm1"}
CAPTION_SAMPLE_ENTRIES = {"wvtt", "stpp", "tx3g", "c608", "c708"}
CAPTION_HANDLERS = {"text", "subt", "sbtl", "clcp"}

VISUAL_SAMPLE_ENTRY_SIZE = 78
AUDIO_SAMPLE_ENTRY_SIZE = 28
SAMPLE_ENTRY_SIZE = 8


def parse_ftyp(data: bytes) -> dict:
    major_brand, minor_version = struct.unpack_from(">4sI", data, 0)
    brands = [fourcc(data[pos : pos + 4]) for pos in range(8, len(data) - 3, 4)]
    return {"major_brand": fourcc(major_brand), "minor_version": minor_version, "compatible_brands": brands}


def parse_mvhd(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    if version == 1:
        creation_time, modification_time, timescale, duration = struct.unpack_from(">QQIQ", data, pos)
        pos += 28
    else:
        creation_time, modification_time, timescale, duration = struct.unpack_from(">IIII", data, pos)
        pos += 16
    rate, volume = struct.unpack_from(">iH", data, pos)
    # rate(4) + volume(2) + reserved(10) + matrix(36) + pre_defined(24)
    next_track_id = struct.unpack_from(">I", data, pos + 76)[0]
    return {
        "version": version,
        "creation_time": creation_time,
        "modification_time": modification_time,
        "timescale": timescale,
        "duration": duration,
        "rate": rate / 65536,
        "volume": volume / 256,
        "next_track_id": next_track_id,
    }


def parse_tkhd(data: bytes) -> dict:
    version, flags, pos = parse_full_box_header(data)
    if version == 1:
        creation_time, modification_time, track_id, _, duration = struct.unpack_from(">QQIIQ", data, pos)
        pos += 32
    else:
        creation_time, modification_time, track_id, _, duration = struct.unpack_from(">IIIII", data, pos)
        pos += 20
    # reserved(8) + layer(2) + alternate_group(2) + volume(2) + reserved(2) + matrix(36)
    width, height = struct.unpack_from(">II", data, pos + 52)
    return {
        "version": version,
        "flags": flags,
        "enabled": bool(flags & 0x1),
        "creation_time": creation_time,
        "modification_time": modification_time,
        "track_id": track_id,
        "duration": duration,
        "width": width / 65536,
        "height": height / 65536,
    }


def parse_mdhd(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    if version == 1:
        creation_time, modification_time, timescale, duration = struct.unpack_from(">QQIQ", data, pos)
        pos += 28
    else:
        creation_time, modification_time, timescale, duration = struct.unpack_from(">IIII", data, pos)
        pos += 16
    language = struct.unpack_from(">H", data, pos)[0]
    return {
        "version": version,
        "creation_time": creation_time,
        "modification_time": modification_time,
        "timescale": timescale,
        "duration": duration,
        "language": decode_language(language),
    }


def parse_hdlr(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    handler_type = fourcc(data[pos + 4 : pos + 8])
    if len(handler_type) != 4:
        raise DecodeError("handler type is truncated")
    name = data[pos + 20 :].split(b"\x00", 1)[0].decode("utf-8", errors="replace")
    return {"handler_type": handler_type, "name": name}


def parse_mehd(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    fragment_duration = struct.unpack_from(">Q" if version == 1 else ">I", data, pos)[0]
    return {"fragment_duration": fragment_duration}


def parse_trex(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    track_id, description_index, duration, size, flags = struct.unpack_from(">IIIII", data, pos)
    return {
        "track_id": track_id,
        "default_sample_description_index": description_index,
        "default_sample_duration": duration,
        "default_sample_size": size,
        "default_sample_flags": flags,
    }


def parse_mfhd(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    return {"sequence_number": struct.unpack_from(">I", data, pos)[0]}


def parse_tfhd(data: bytes) -> dict:
    _, flags, pos = parse_full_box_header(data)
    properties = {"track_id": struct.unpack_from(">I", data, pos)[0]}
    pos += 4
    if flags & 0x000001:
        properties["base_data_offset"] = struct.unpack_from(">Q", data, pos)[0]
        pos += 8
    for flag, name in (
        (0x000002, "sample_description_index"),
        (0x000008, "default_sample_duration"),
        (0x000010, "default_sample_size"),
        (0x000020, "default_sample_flags"),
    ):
        if flags & flag:
            properties[name] = struct.unpack_from(">I", data, pos)[0]
            pos += 4
    properties["duration_is_empty"] = bool(flags & 0x010000)
    properties["default_base_is_moof"] = bool(flags & 0x020000)
    return properties


def parse_tfdt(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    return {"base_media_decode_time": struct.unpack_from(">Q" if version == 1 else ">I", data, pos)[0]}


def parse_trun(data: bytes) -> dict:
    version, flags, pos = parse_full_box_header(data)
    sample_count = struct.unpack_from(">I", data, pos)[0]
    pos += 4
    properties = {"sample_count": sample_count}
    if flags & 0x000001:
        properties["data_offset"] = struct.unpack_from(">i", data, pos)[0]
        pos += 4
    if flags & 0x000004:
        properties["first_sample_flags"] = struct.unpack_from(">I", data, pos)[0]
        pos += 4

    fields = [
        (flag, name)
        for flag, name in (
            (0x000100, "duration"),
            (0x000200, "size"),
            (0x000400, "flags"),
            (0x000800, "composition_time_offset"),
        )
        if flags & flag
    ]
    if not fields:
        # Every sample takes the tfhd/trex defaults
        return properties
    if len(data) < pos + sample_count * 4 * len(fields):
        raise DecodeError(f"sample table of {sample_count} samples is truncated")

    samples = []
    for _ in range(sample_count):
        sample = {}
        for _, name in fields:
            signed = name == "composition_time_offset" and version == 1
            sample[name] = struct.unpack_from(">i" if signed else ">I", data, pos)[0]
            pos += 4
        samples.append(sample)
    properties["samples"] = samples
    if flags & 0x000100:
        properties["total_duration"] = sum(sample["duration"] for sample in samples)
    if flags & 0x000200:
        properties["total_size"] = sum(sample["size"] for sample in samples)
    return properties


def parse_sidx(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    reference_id, timescale = struct.unpack_from(">II", data, pos)
    pos += 8
    if version == 0:
        earliest_presentation_time, first_offset = struct.unpack_from(">II", data, pos)
        pos += 8
    else:
        earliest_presentation_time, first_offset = struct.unpack_from(">QQ", data, pos)
        pos += 16
    reference_count = struct.unpack_from(">H", data, pos + 2)[0]
    pos += 4
    references = []
    for _ in range(reference_count):
        first, duration, sap = struct.unpack_from(">III", data, pos)
        references.append(
            {
                "reference_type": first >> 31,
                "referenced_size": first & 0x7FFFFFFF,
                "subsegment_duration": duration,
                "starts_with_sap": bool(sap >> 31),
            }
        )
        pos += 12
    return {
        "reference_id": reference_id,
        "timescale": timescale,
        "earliest_presentation_time": earliest_presentation_time,
        "first_offset": first_offset,
        "references": references,
    }


def parse_emsg(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    if version == 0:
        scheme_id_uri, pos = read_cstring(data, pos)
        value, pos = read_cstring(data, pos)
        timescale, presentation_time_delta, event_duration, event_id = struct.unpack_from(">IIII", data, pos)
        pos += 16
        timing = {"presentation_time_delta": presentation_time_delta}
    elif version == 1:
        timescale, presentation_time, event_duration, event_id = struct.unpack_from(">IQII", data, pos)
        pos += 20
        scheme_id_uri, pos = read_cstring(data, pos)
        value, pos = read_cstring(data, pos)
        timing = {"presentation_time": presentation_time}
    else:
        raise DecodeError(f"unsupported emsg version {version}")
    return {
        "version": version,
        "scheme_id_uri": scheme_id_uri,
        "value": value,
        "timescale": timescale,
        **timing,
        "event_duration": event_duration,
        "id": event_id,
        "message_data": data[pos:],
    }


def parse_id32(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    language = struct.unpack_from(">H", data, pos)[0]
    return {"language": decode_language(language & 0x7FFF), "message_data": data[pos + 2 :]}


def parse_prft(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    reference_track_id, ntp_timestamp = struct.unpack_from(">IQ", data, pos)
    pos += 12
    media_time = struct.unpack_from(">Q" if version == 1 else ">I", data, pos)[0]
    return {"reference_track_id": reference_track_id, "ntp_timestamp": ntp_timestamp, "media_time": media_time}


def parse_smhd(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    return {"balance": struct.unpack_from(">h", data, pos)[0] / 256}


def parse_vmhd(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    graphics_mode, red, green, blue = struct.unpack_from(">HHHH", data, pos)
    return {"graphics_mode": graphics_mode, "opcolor": [red, green, blue]}


def _table_header(data: bytes) -> tuple[int, int, int]:
    """Returns (version, entry_count, first_entry_offset) for the common full box + count layout."""
    version, _, pos = parse_full_box_header(data)
    return version, struct.unpack_from(">I", data, pos)[0], pos + 4


def parse_stts(data: bytes) -> dict:
    _, entry_count, pos = _table_header(data)
    entries = read_table(data, pos, entry_count, ">II", "stts")
    return {
        "entries": [{"sample_count": count, "sample_delta": delta} for count, delta in entries],
        "sample_count": sum(count for count, _ in entries),
        "duration": sum(count * delta for count, delta in entries),
    }


def parse_ctts(data: bytes) -> dict:
    version, entry_count, pos = _table_header(data)
    entries = read_table(data, pos, entry_count, ">Ii" if version == 1 else ">II", "ctts")
    return {"entries": [{"sample_count": count, "sample_offset": offset} for count, offset in entries]}


def parse_stsc(data: bytes) -> dict:
    _, entry_count, pos = _table_header(data)
    return {
        "entries": [
            {"first_chunk": first, "samples_per_chunk": per_chunk, "sample_description_index": index}
            for first, per_chunk, index in read_table(data, pos, entry_count, ">III", "stsc")
        ]
    }


def parse_stsz(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    sample_size, sample_count = struct.unpack_from(">II", data, pos)
    properties = {"sample_size": sample_size, "sample_count": sample_count}
    if sample_size:
        properties["total_size"] = sample_size * sample_count
    else:
        sizes = [size for (size,) in read_table(data, pos + 8, sample_count, ">I", "stsz")]
        properties["entry_sizes"] = sizes
        properties["total_size"] = sum(sizes)
    return properties


def parse_stco(data: bytes) -> dict:
    _, entry_count, pos = _table_header(data)
    return {"chunk_offsets": [offset for (offset,) in read_table(data, pos, entry_count, ">I", "stco")]}


def parse_co64(data: bytes) -> dict:
    _, entry_count, pos = _table_header(data)
    return {"chunk_offsets": [offset for (offset,) in read_table(data, pos, entry_count, ">Q", "co64")]}


def parse_stss(data: bytes) -> dict:
    _, entry_count, pos = _table_header(data)
    return {"sync_samples": [number for (number,) in read_table(data, pos, entry_count, ">I", "stss")]}


def parse_elst(data: bytes) -> dict:
    version, entry_count, pos = _table_header(data)
    entries = read_table(data, pos, entry_count, ">Qqhh" if version == 1 else ">Iihh", "elst")
    return {
        "entries": [
            {
                "segment_duration": duration,
                "media_time": media_time,
                "media_rate": rate_integer + rate_fraction / 65536,
            }
            for duration, media_time, rate_integer, rate_fraction in entries
        ]
    }


def parse_stsd(data: bytes) -> dict:
    _, _, pos = parse_full_box_header(data)
    return {"entry_count": struct.unpack_from(">I", data, pos)[0]}


def parse_sample_entry(data: bytes) -> dict:
    return {"data_reference_index": struct.unpack_from(">H", data, 6)[0]}


def parse_visual_sample_entry(data: bytes) -> dict:
    properties = parse_sample_entry(data)
    width, height = struct.unpack_from(">HH", data, 24)
    name_length = data[42]
    properties.update(
        {
            "width": width,
            "height": height,
            "compressor_name": data[43 : 43 + min(name_length, 31)].decode("utf-8", errors="replace"),
            "depth": struct.unpack_from(">H", data, 74)[0],
        }
    )
    return properties


def parse_audio_sample_entry(data: bytes) -> dict:
    properties = parse_sample_entry(data)
    channel_count, sample_size = struct.unpack_from(">HH", data, 16)
    properties.update(
        {
            "channel_count": channel_count,
            "sample_size": sample_size,
            "sample_rate": struct.unpack_from(">I", data, 24)[0] >> 16,
        }
    )
    return properties


def parse_stpp(data: bytes) -> dict:
    properties = parse_sample_entry(data)
    pos = SAMPLE_ENTRY_SIZE
    namespace, pos = read_cstring(data, pos)
    schema_location, pos = read_cstring(data, pos) if pos < len(data) else ("", pos)
    auxiliary_mime_types, pos = read_cstring(data, pos) if pos < len(data) else ("", pos)
    properties.update(
        {"namespace": namespace, "schema_location": schema_location, "auxiliary_mime_types": auxiliary_mime_types}
    )
    return properties


def parse_tx3g(data: bytes) -> dict:
    properties = parse_sample_entry(data)
    display_flags, horizontal, vertical = struct.unpack_from(">Ibb", data, SAMPLE_ENTRY_SIZE)
    properties.update(
        {
            "display_flags": display_flags,
            "horizontal_justification": horizontal,
            "vertical_justification": vertical,
            "background_color": data[SAMPLE_ENTRY_SIZE + 6 : SAMPLE_ENTRY_SIZE + 10].hex(),
        }
    )
    return properties


def parse_text_config(data: bytes) -> dict:
    """vttC and vlab carry a bare UTF-8 string."""
    return {"text": data.decode("utf-8", errors="replace")}


PROPERTY_DECODERS = {
    "ftyp": parse_ftyp,
    "styp": parse_ftyp,
    "mvhd": parse_mvhd,
    "tkhd": parse_tkhd,
    "mdhd": parse_mdhd,
    "hdlr": parse_hdlr,
    "mehd": parse_mehd,
    "trex": parse_trex,
    "mfhd": parse_mfhd,
    "tfhd": parse_tfhd,
    "tfdt": parse_tfdt,
    "trun": parse_trun,
    "sidx": parse_sidx,
    "emsg": parse_emsg,
    "ID32": parse_id32,
    "prft": parse_prft,
    "smhd": parse_smhd,
    "vmhd": parse_vmhd,
    "stts": parse_stts,
    "ctts": parse_ctts,
    "stsc": parse_stsc,
    "stsz": parse_stsz,
    "stco": parse_stco,
    "co64": parse_co64,
    "stss": parse_stss,
    "elst": parse_elst,
    "stsd": parse_stsd,
    "wvtt": parse_sample_entry,
    "c608": parse_sample_entry,
    "c708": parse_sample_entry,
    "stpp": parse_stpp,
    "tx3g": parse_tx3g,
    "vttC": parse_text_config,
    "vlab": parse_text_config,
    **{box_type: parse_visual_sample_entry for box_type in VISUAL_SAMPLE_ENTRIES},
    **{box_type: parse_audio_sample_entry for box_type in AUDIO_SAMPLE_ENTRIES},
    **CODEC_CONFIG_DECODERS,
    **ENCRYPTION_DECODERS,
}


def decode_properties(box_type: str, body: bytes) -> dict:
    """
    Decodes the fields of a known box type, or returns an empty dict for unknown ones.

    Raises:
        DecodeError: If the body is truncated or malformed.
    """
    decoder = PROPERTY_DECODERS.get(box_type)
    if decoder is None:
        return {}
    try:
        return decoder(body)
    except (struct.error, IndexError) as e:
        raise DecodeError(f"truncated body: {e}")
