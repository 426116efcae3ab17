"""
Decoders for Common Encryption boxes and DRM system specific data.

The protection scheme boxes (frma, schm, tenc) describe how a track is encrypted, the
auxiliary information boxes (senc, saio, saiz) carry per-sample IVs and subsample maps,
and sbgp/sgpd carry sample group overrides such as key rotation. pssh data is decoded
for Widevine (protobuf wire format) and PlayReady (a PlayReady Object holding an XML
header); other systems are reported as hex.
"""

import logging
import struct
import uuid
from typing import Optional
from xml.parsers.expat import ExpatError

import xmltodict

from hls_inspector.errors import DecodeError
from hls_inspector.media.box_fields import fourcc, parse_full_box_header, read_length_prefixed, read_table
from hls_inspector.utils.base64_utils import decode_base64_payload

logger = logging.getLogger(__name__)

WIDEVINE_SYSTEM_ID = "edef8ba9-79d6-4ace-a3c8-27dcd51d21ed"
PLAYREADY_SYSTEM_ID = "9a04f079-9840-4286-ab92-e65be0885f95"
FAIRPLAY_SYSTEM_ID = "94ce86fb-07ff-4f43-adb8-93d2fa968ca2"
CLEARKEY_SYSTEM_ID = "1077efec-c0b2-4d02-ace3-3c1e52e2fb4b"

DRM_SYSTEM_NAMES = {
    WIDEVINE_SYSTEM_ID: "Widevine",
    PLAYREADY_SYSTEM_ID: "PlayReady",
    FAIRPLAY_SYSTEM_ID: "FairPlay",
    CLEARKEY_SYSTEM_ID: "ClearKey",
}

# Per-sample IV sizes tried when senc does not say which one it uses
SENC_IV_SIZES = (16, 8, 0)

# Sample group entries without a declared length
SAMPLE_GROUP_ENTRY_SIZES = {"seig": 20, "roll": 2, "prol": 2, "rap ": 1, "tele": 1}

WIDEVINE_ALGORITHMS = {0: "UNENCRYPTED", 1: "AESCTR"}
WIDEVINE_TYPES = {0: "SINGLE", 1: "ENTITLEMENT", 2: "ENTITLED_KEY"}
WIDEVINE_FIELDS = {
    1: "algorithm",
    2: "key_ids",
    3: "provider",
    4: "content_id",
    6: "policy",
    7: "crypto_period_index",
    8: "grouped_license",
    9: "protection_scheme",
    10: "crypto_period_seconds",
    11: "type",
    12: "key_sequence",
    13: "group_ids",
    14: "entitled_keys",
    15: "video_feature",
}
WIDEVINE_REPEATED_FIELDS = {"key_ids", "group_ids", "entitled_keys"}
WIDEVINE_STRING_FIELDS = {"provider", "policy", "video_feature"}

PLAYREADY_RECORD_TYPES = {1: "rights_management_header", 2: "reserved", 3: "embedded_license_store"}


def parse_frma(data: bytes) -> dict:
    data_format = fourcc(data[:4])
    if len(data_format) != 4:
        raise DecodeError("original format is truncated")
    return {"data_format": data_format}


def parse_schm(data: bytes) -> dict:
    _, flags, pos = parse_full_box_header(data)
    scheme_type, scheme_version = struct.unpack_from(">4sI", data, pos)
    properties = {
        "scheme_type": fourcc(scheme_type),
        "scheme_version": f"{scheme_version >> 16}.{scheme_version & 0xFFFF}",
    }
    if flags & 0x000001:
        properties["scheme_uri"] = data[pos + 8 :].split(b"\x00", 1)[0].decode("utf-8", errors="replace")
    return properties


def read_encryption_defaults(data: bytes, pos: int, with_pattern: bool) -> dict:
    """
    Reads the layout shared by tenc and the seig sample group entry.

    Args:
        data (bytes): The box body or group entry.
        pos (int): Offset of the reserved byte preceding the pattern byte.
        with_pattern (bool): Whether the pattern byte carries crypt and skip block counts.
    """
    _, pattern, is_protected, iv_size = struct.unpack_from(">BBBB", data, pos)
    pos += 4
    kid = data[pos : pos + 16]
    if len(kid) < 16:
        raise DecodeError("default KID is truncated")
    pos += 16
    properties = {
        "is_protected": bool(is_protected),
        "per_sample_iv_size": iv_size,
        "kid": str(uuid.UUID(bytes=kid)),
    }
    if with_pattern:
        properties["crypt_byte_block"] = pattern >> 4
        properties["skip_byte_block"] = pattern & 0x0F
    if is_protected == 1 and iv_size == 0:
        constant_iv, _ = read_length_prefixed(data, pos, ">B")
        properties["constant_iv"] = constant_iv.hex()
    return properties


def parse_tenc(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    return {f"default_{name}": value for name, value in read_encryption_defaults(data, pos, version > 0).items()}


def _read_senc_samples(data: bytes, pos: int, count: int, iv_size: int, uses_subsamples: bool) -> Optional[list]:
    """Reads senc entries with a guessed IV size, or returns None when the body does not fit it exactly."""
    minimum = iv_size + (2 if uses_subsamples else 0)
    if count * minimum > len(data) - pos:
        return None
    samples = []
    for _ in range(count):
        sample = {"iv": data[pos : pos + iv_size].hex()}
        pos += iv_size
        if uses_subsamples:
            if pos + 2 > len(data):
                return None
            subsample_count = struct.unpack_from(">H", data, pos)[0]
            pos += 2
            if pos + subsample_count * 6 > len(data):
                return None
            sample["subsamples"] = [
                {"clear_bytes": clear, "protected_bytes": protected}
                for clear, protected in struct.iter_unpack(">HI", data[pos : pos + subsample_count * 6])
            ]
            pos += subsample_count * 6
        samples.append(sample)
    return samples if pos == len(data) else None


def parse_senc(data: bytes) -> dict:
    """
    senc does not record its IV size; that lives in tenc or seig. The sizes in use are
    tried in turn and the first one that consumes the body exactly is kept.
    """
    _, flags, pos = parse_full_box_header(data)
    sample_count = struct.unpack_from(">I", data, pos)[0]
    pos += 4
    uses_subsamples = bool(flags & 0x000002)
    properties = {"sample_count": sample_count, "subsample_encryption": uses_subsamples}

    if not uses_subsamples and pos == len(data):
        # Constant IV with full sample encryption, nothing per sample
        properties["per_sample_iv_size"] = 0
        return properties

    for iv_size in SENC_IV_SIZES:
        if iv_size == 0 and not uses_subsamples:
            continue
        samples = _read_senc_samples(data, pos, sample_count, iv_size, uses_subsamples)
        if samples is not None:
            properties["per_sample_iv_size"] = iv_size
            properties["samples"] = samples
            return properties
    raise DecodeError(f"{len(data) - pos} bytes of sample encryption data fit no IV size")


def _read_aux_info_type(data: bytes, flags: int, pos: int, properties: dict) -> int:
    if flags & 0x000001:
        aux_info_type, parameter = struct.unpack_from(">4sI", data, pos)
        properties["aux_info_type"] = fourcc(aux_info_type)
        properties["aux_info_type_parameter"] = parameter
        pos += 8
    return pos


def parse_saiz(data: bytes) -> dict:
    _, flags, pos = parse_full_box_header(data)
    properties = {}
    pos = _read_aux_info_type(data, flags, pos, properties)
    default_size, sample_count = struct.unpack_from(">BI", data, pos)
    pos += 5
    properties["default_sample_info_size"] = default_size
    properties["sample_count"] = sample_count
    if default_size == 0:
        properties["sample_info_sizes"] = [size for (size,) in read_table(data, pos, sample_count, ">B", "saiz")]
    return properties


def parse_saio(data: bytes) -> dict:
    version, flags, pos = parse_full_box_header(data)
    properties = {}
    pos = _read_aux_info_type(data, flags, pos, properties)
    entry_count = struct.unpack_from(">I", data, pos)[0]
    pos += 4
    entries = read_table(data, pos, entry_count, ">Q" if version == 1 else ">I", "saio")
    properties["offsets"] = [offset for (offset,) in entries]
    return properties


def parse_sbgp(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    properties = {"grouping_type": fourcc(data[pos : pos + 4])}
    pos += 4
    if version == 1:
        properties["grouping_type_parameter"] = struct.unpack_from(">I", data, pos)[0]
        pos += 4
    entry_count = struct.unpack_from(">I", data, pos)[0]
    pos += 4
    properties["entries"] = [
        {"sample_count": sample_count, "group_description_index": index}
        for sample_count, index in read_table(data, pos, entry_count, ">II", "sbgp")
    ]
    return properties


def parse_group_entry(grouping_type: str, entry: bytes) -> dict:
    if grouping_type == "seig":
        return read_encryption_defaults(entry, 0, with_pattern=True)
    if grouping_type in ("roll", "prol"):
        return {"roll_distance": struct.unpack_from(">h", entry, 0)[0]}
    return {"data": entry.hex()}


def parse_sgpd(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    grouping_type = fourcc(data[pos : pos + 4])
    pos += 4
    properties = {"grouping_type": grouping_type}
    default_length = None
    if version == 1:
        default_length = struct.unpack_from(">I", data, pos)[0]
        pos += 4
    elif version >= 2:
        properties["default_sample_description_index"] = struct.unpack_from(">I", data, pos)[0]
        pos += 4
    entry_count = struct.unpack_from(">I", data, pos)[0]
    pos += 4
    properties["entry_count"] = entry_count

    if version == 1 and default_length == 0:
        entry_length = None
    else:
        entry_length = default_length or SAMPLE_GROUP_ENTRY_SIZES.get(grouping_type)
        if entry_length is None:
            properties["data"] = data[pos:].hex()
            return properties
        if entry_count * entry_length > len(data) - pos:
            raise DecodeError(f"sgpd of {entry_count} entries is truncated")

    entries = []
    for _ in range(entry_count):
        if entry_length is None:
            length = struct.unpack_from(">I", data, pos)[0]
            pos += 4
        else:
            length = entry_length
        if pos + length > len(data):
            raise DecodeError(f"sample group entry of {length} bytes is truncated")
        entries.append(parse_group_entry(grouping_type, data[pos : pos + length]))
        pos += length
    properties["entries"] = entries
    return properties


def read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Reads a protobuf base-128 varint, returning it with the position after it."""
    value = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise DecodeError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            raise DecodeError("varint is longer than 10 bytes")


def read_protobuf_fields(data: bytes) -> list[tuple]:
    """
    Splits a protobuf message into (field_number, value) pairs.

    Varint and fixed-width fields yield integers, length-delimited fields yield bytes.
    Nested messages are left undecoded.
    """
    fields = []
    pos = 0
    while pos < len(data):
        key, pos = read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x07
        if wire_type == 0:
            value, pos = read_varint(data, pos)
        elif wire_type == 1:
            value = struct.unpack_from("<Q", data, pos)[0]
            pos += 8
        elif wire_type == 2:
            length, pos = read_varint(data, pos)
            if pos + length > len(data):
                raise DecodeError(f"field {number} of {length} bytes overruns the message")
            value = data[pos : pos + length]
            pos += length
        elif wire_type == 5:
            value = struct.unpack_from("<I", data, pos)[0]
            pos += 4
        else:
            raise DecodeError(f"unsupported protobuf wire type {wire_type} for field {number}")
        fields.append((number, value))
    return fields


def _widevine_value(name: str, value):
    if isinstance(value, int):
        if name == "algorithm":
            return WIDEVINE_ALGORITHMS.get(value, value)
        if name == "type":
            return WIDEVINE_TYPES.get(value, value)
        if name == "protection_scheme" and value < 1 << 32:
            return value.to_bytes(4, "big").decode("latin-1")
        return value
    if name == "key_ids" and len(value) == 16:
        return str(uuid.UUID(bytes=value))
    if name in WIDEVINE_STRING_FIELDS:
        return value.decode("utf-8", errors="replace")
    if name == "content_id" and value.isascii() and value.decode("ascii").isprintable():
        return value.decode("ascii")
    return value.hex()


def parse_widevine_pssh_data(data: bytes) -> dict:
    """
    Decodes a WidevinePsshData message.

    Example:
        >>> parse_widevine_pssh_data(bytes.fromhex("120431323334"))
        {'key_ids': ['31323334']}
    """
    properties = {}
    for number, value in read_protobuf_fields(data):
        name = WIDEVINE_FIELDS.get(number, f"field_{number}")
        decoded = _widevine_value(name, value)
        if name in WIDEVINE_REPEATED_FIELDS:
            properties.setdefault(name, []).append(decoded)
        else:
            properties[name] = decoded
    return properties


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def playready_kid_to_uuid(encoded: str) -> str:
    """PlayReady KIDs are base64 GUIDs in little-endian byte order."""
    raw = decode_base64_payload(encoded)
    if len(raw) != 16:
        raise DecodeError(f"PlayReady KID has {len(raw)} bytes")
    return str(uuid.UUID(bytes_le=raw))


def parse_playready_header(xml_text: str) -> dict:
    document = xmltodict.parse(xml_text.lstrip("\ufeff"))
    header = document.get("WRMHEADER") or {}
    data = header.get("DATA") or {}
    protect_info = data.get("PROTECTINFO") or {}

    kids = []
    if isinstance(data.get("KID"), str):
        # Version 4.0 puts a single KID straight under DATA
        kids.append(
            {
                "kid": playready_kid_to_uuid(data["KID"]),
                "algid": protect_info.get("ALGID"),
                "checksum": data.get("CHECKSUM"),
            }
        )
    kids_node = protect_info.get("KIDS") or {}
    for kid in _as_list(kids_node.get("KID")) + _as_list(protect_info.get("KID")):
        if isinstance(kid, dict) and kid.get("@VALUE"):
            kids.append(
                {
                    "kid": playready_kid_to_uuid(kid["@VALUE"]),
                    "algid": kid.get("@ALGID"),
                    "checksum": kid.get("@CHECKSUM"),
                }
            )

    return {
        "version": header.get("@version"),
        "kids": kids,
        "la_url": data.get("LA_URL"),
        "lui_url": data.get("LUI_URL"),
        "ds_id": data.get("DS_ID"),
        "custom_attributes": data.get("CUSTOMATTRIBUTES"),
    }


def parse_playready_object(data: bytes) -> dict:
    """
    Decodes a PlayReady Object: a little-endian length and record count followed by
    typed records. Rights management records hold a UTF-16LE WRMHEADER document.
    """
    length, record_count = struct.unpack_from("<IH", data, 0)
    pos = 6
    records = []
    for _ in range(record_count):
        record_type, record_length = struct.unpack_from("<HH", data, pos)
        pos += 4
        value = data[pos : pos + record_length]
        if len(value) < record_length:
            raise DecodeError(f"PlayReady record of {record_length} bytes is truncated")
        pos += record_length
        record = {"type": PLAYREADY_RECORD_TYPES.get(record_type, record_type)}
        if record_type == 1:
            record["header"] = parse_playready_header(value.decode("utf-16-le"))
        else:
            record["data"] = value.hex()
        records.append(record)
    return {"length": length, "records": records}


SYSTEM_DATA_DECODERS = {
    WIDEVINE_SYSTEM_ID: parse_widevine_pssh_data,
    PLAYREADY_SYSTEM_ID: parse_playready_object,
}


def parse_pssh(data: bytes) -> dict:
    version, _, pos = parse_full_box_header(data)
    if len(data) < pos + 16:
        raise DecodeError("system ID is truncated")
    system_id = str(uuid.UUID(bytes=data[pos : pos + 16]))
    properties = {"system_id": system_id, "system_name": DRM_SYSTEM_NAMES.get(system_id)}
    pos += 16
    if version > 0:
        kid_count = struct.unpack_from(">I", data, pos)[0]
        pos += 4
        key_ids = read_table(data, pos, kid_count, "16s", "KIDs")
        properties["key_ids"] = [str(uuid.UUID(bytes=kid)) for (kid,) in key_ids]
        pos += kid_count * 16
    system_data, _ = read_length_prefixed(data, pos, ">I")
    properties["data"] = system_data.hex()

    decoder = SYSTEM_DATA_DECODERS.get(system_id)
    if decoder is not None and system_data:
        try:
            properties["system_data"] = decoder(system_data)
        except (DecodeError, struct.error, ValueError, ExpatError) as e:
            # The raw data is still reported
            logger.warning(f"Could not decode {properties['system_name']} pssh data: {e}")
            properties["system_data_error"] = str(e)
    return properties


ENCRYPTION_DECODERS = {
    "frma": parse_frma,
    "schm": parse_schm,
    "tenc": parse_tenc,
    "senc": parse_senc,
    "saiz": parse_saiz,
    "saio": parse_saio,
    "sbgp": parse_sbgp,
    "sgpd": parse_sgpd,
    "pssh": parse_pssh,
}
