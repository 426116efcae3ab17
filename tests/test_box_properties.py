import base64
import struct
import uuid

from hls_inspector.media.box_decoder import decode_boxes
from hls_inspector.media.encryption import PLAYREADY_SYSTEM_ID, WIDEVINE_SYSTEM_ID

KID = uuid.UUID("10000000-1000-1000-1000-100000000000")


def _box(box_type: str, body: bytes = b"") -> bytes:
    return struct.pack(">I4s", 8 + len(body), box_type.encode("latin-1")) + body


def _full_box(box_type: str, body: bytes = b"", version: int = 0, flags: int = 0) -> bytes:
    return _box(box_type, struct.pack(">I", (version << 24) | flags) + body)


def _varint(value: int) -> bytes:
    encoded = bytearray()
    while value > 0x7F:
        encoded.append((value & 0x7F) | 0x80)
        value >>= 7
    encoded.append(value)
    return bytes(encoded)


def _pssh(system_id: str, data: bytes, key_ids: tuple = ()) -> bytes:
    body = uuid.UUID(system_id).bytes
    if key_ids:
        body += struct.pack(">I", len(key_ids)) + b"".join(kid.bytes for kid in key_ids)
    body += struct.pack(">I", len(data)) + data
    return _full_box("pssh", body, version=1 if key_ids else 0)


def test_trun_per_sample_fields():
    samples = struct.pack(">IIi", 3000, 500, -1000) + struct.pack(">IIi", 3000, 700, 2000)
    # data_offset, duration, size and signed composition offsets
    (trun,) = decode_boxes(_full_box("trun", struct.pack(">Ii", 2, 120) + samples, version=1, flags=0x000B01))

    assert trun.errors == ()
    assert trun.properties == {
        "sample_count": 2,
        "data_offset": 120,
        "samples": [
            {"duration": 3000, "size": 500, "composition_time_offset": -1000},
            {"duration": 3000, "size": 700, "composition_time_offset": 2000},
        ],
        "total_duration": 6000,
        "total_size": 1200,
    }


def test_trun_without_per_sample_fields_keeps_only_the_count():
    (trun,) = decode_boxes(_full_box("trun", struct.pack(">I", 0xFFFFFFFF)))

    assert trun.errors == ()
    assert trun.properties == {"sample_count": 0xFFFFFFFF}


def test_trun_count_beyond_body_is_an_error():
    (trun,) = decode_boxes(_full_box("trun", struct.pack(">I", 0xFFFFFFFF) + bytes(8), flags=0x000100))

    assert "sample table of 4294967295 samples is truncated" in trun.errors[0].message
    assert trun.properties == {}


def test_tfhd_optional_fields():
    body = struct.pack(">III", 1, 3000, 0x01010000)
    (tfhd,) = decode_boxes(_full_box("tfhd", body, flags=0x020028))

    assert tfhd.properties == {
        "track_id": 1,
        "default_sample_duration": 3000,
        "default_sample_flags": 0x01010000,
        "duration_is_empty": False,
        "default_base_is_moof": True,
    }


def test_sidx_references():
    body = struct.pack(">IIIIHH", 1, 90000, 0, 0, 0, 2)
    body += struct.pack(">III", 1000, 180000, 0x90000000)
    body += struct.pack(">III", (1 << 31) | 2000, 90000, 0)

    (sidx,) = decode_boxes(_full_box("sidx", body))
    assert sidx.properties["timescale"] == 90000
    assert sidx.properties["references"] == [
        {"reference_type": 0, "referenced_size": 1000, "subsegment_duration": 180000, "starts_with_sap": True},
        {"reference_type": 1, "referenced_size": 2000, "subsegment_duration": 90000, "starts_with_sap": False},
    ]


def test_widevine_pssh_data():
    data = b"\x12\x10" + KID.bytes + b"\x1a\x08widevine" + b"\x22\x04abcd" + b"\x48" + _varint(0x63656E63)

    (pssh,) = decode_boxes(_pssh(WIDEVINE_SYSTEM_ID, data, key_ids=(KID,)))
    assert pssh.errors == ()
    assert pssh.properties["system_name"] == "Widevine"
    assert pssh.properties["key_ids"] == [str(KID)]
    assert pssh.properties["data"] == data.hex()
    assert pssh.properties["system_data"] == {
        "key_ids": [str(KID)],
        "provider": "widevine",
        "content_id": "abcd",
        "protection_scheme": "cenc",
    }


def test_malformed_widevine_data_keeps_raw_bytes():
    data = b"\x12\x40" + KID.bytes

    (pssh,) = decode_boxes(_pssh(WIDEVINE_SYSTEM_ID, data))
    assert pssh.errors == ()
    assert pssh.properties["data"] == data.hex()
    assert "overruns the message" in pssh.properties["system_data_error"]
    assert "system_data" not in pssh.properties


def test_playready_pssh_data():
    kid = base64.b64encode(KID.bytes_le).decode("ascii")
    header = (
        '<WRMHEADER xmlns="http://schemas.microsoft.com/DRM/2007/03/PlayReadyHeader" version="4.0.0.0">'
        "<DATA><PROTECTINFO><KEYLEN>16</KEYLEN><ALGID>AESCTR</ALGID></PROTECTINFO>"
        f"<KID>{kid}</KID><LA_URL>https://license.example.com/rightsmanager.asmx</LA_URL></DATA></WRMHEADER>"
    ).encode("utf-16-le")
    record = struct.pack("<HH", 1, len(header)) + header
    data = struct.pack("<IH", 6 + len(record), 1) + record

    (pssh,) = decode_boxes(_pssh(PLAYREADY_SYSTEM_ID, data))
    assert pssh.properties["system_name"] == "PlayReady"
    (decoded,) = pssh.properties["system_data"]["records"]
    assert decoded["type"] == "rights_management_header"
    assert decoded["header"]["version"] == "4.0.0.0"
    assert decoded["header"]["la_url"] == "https://license.example.com/rightsmanager.asmx"
    assert decoded["header"]["kids"] == [{"kid": str(KID), "algid": "AESCTR", "checksum": None}]


def test_pssh_key_count_beyond_body_is_an_error():
    body = uuid.UUID(WIDEVINE_SYSTEM_ID).bytes + struct.pack(">I", 0x10000000)

    (pssh,) = decode_boxes(_full_box("pssh", body, version=1))
    assert "KIDs of 268435456 entries is truncated" in pssh.errors[0].message


def test_avcc():
    body = bytes([1, 0x64, 0x00, 0x1F, 0xFF, 0xE1]) + struct.pack(">H", 4) + bytes.fromhex("6764001f")
    body += bytes([1]) + struct.pack(">H", 4) + bytes.fromhex("68ebe3cb")

    (avcc,) = decode_boxes(_box("avcC", body))
    assert avcc.properties["profile_level_id"] == "64001f"
    assert avcc.properties["nal_unit_length"] == 4
    assert avcc.properties["sequence_parameter_sets"] == ["6764001f"]
    assert avcc.properties["picture_parameter_sets"] == ["68ebe3cb"]


def test_esds_aac_configuration():
    decoder_specific_info = bytes.fromhex("05021210")
    decoder_config = bytes.fromhex("0411" "40" "15" "000000" "0001f400" "0001f400") + decoder_specific_info
    sl_config = bytes.fromhex("060102")
    es_descriptor = bytes.fromhex("0319" "0001" "00") + decoder_config + sl_config

    (esds,) = decode_boxes(_full_box("esds", es_descriptor))
    assert esds.errors == ()
    properties = esds.properties
    assert properties["es_id"] == 1
    assert properties["object_type_indication"] == 0x40
    assert properties["stream_type"] == 5
    assert properties["max_bitrate"] == 128000
    assert properties["codec"] == "mp4a.40.2"
    assert properties["sampling_frequency"] == 44100
    assert properties["channel_configuration"] == 2
    assert properties["sl_predefined"] == 2


def test_dac3():
    (dac3,) = decode_boxes(_box("dac3", bytes([0x10, 0x3D, 0xE0])))

    assert dac3.properties["sample_rate"] == 48000
    assert dac3.properties["acmod"] == 7
    assert dac3.properties["lfe"] is True
    assert dac3.properties["channel_count"] == 6
    assert dac3.properties["bit_rate"] == 448000


def test_sample_tables():
    stts = _full_box("stts", struct.pack(">IIIII", 2, 10, 1024, 1, 512))
    stsz = _full_box("stsz", struct.pack(">IIIII", 0, 3, 100, 200, 300))
    stco = _full_box("stco", struct.pack(">II", 1, 48))
    stss = _full_box("stss", struct.pack(">III", 2, 1, 6))

    (stbl,) = decode_boxes(_box("stbl", stts + stsz + stco + stss))
    stts_box, stsz_box, stco_box, stss_box = stbl.children
    assert stts_box.properties["sample_count"] == 11
    assert stts_box.properties["duration"] == 10 * 1024 + 512
    assert stsz_box.properties["entry_sizes"] == [100, 200, 300]
    assert stsz_box.properties["total_size"] == 600
    assert stco_box.properties == {"chunk_offsets": [48]}
    assert stss_box.properties == {"sync_samples": [1, 6]}


def test_edit_list_version_1():
    (elst,) = decode_boxes(_full_box("elst", struct.pack(">IQqhh", 1, 90000, -1, 1, 0), version=1))

    assert elst.properties == {"entries": [{"segment_duration": 90000, "media_time": -1, "media_rate": 1.0}]}


def test_forged_table_count_is_an_error():
    (stsz,) = decode_boxes(_full_box("stsz", struct.pack(">II", 0, 0xFFFFFFFF)))

    assert "stsz of 4294967295 entries is truncated" in stsz.errors[0].message


def test_media_header_boxes():
    smhd, vmhd = decode_boxes(_full_box("smhd", struct.pack(">hH", -128, 0)) + _full_box("vmhd", bytes(8), flags=1))

    assert smhd.properties == {"balance": -0.5}
    assert vmhd.properties == {"graphics_mode": 0, "opcolor": [0, 0, 0]}


def test_protection_scheme_info():
    tenc = _full_box("tenc", bytes([0, 0x19, 1, 0]) + KID.bytes + bytes([16]) + bytes(range(16)), version=1)
    schm = _full_box("schm", b"cbcs" + struct.pack(">I", 0x00010000))
    sinf = _box("sinf", _box("frma", b"avc1") + schm + _box("schi", tenc))

    (box,) = decode_boxes(sinf)
    frma, schm_box, schi = box.children
    assert frma.properties == {"data_format": "avc1"}
    assert schm_box.properties == {"scheme_type": "cbcs", "scheme_version": "1.0"}
    assert schi.children[0].properties == {
        "default_is_protected": True,
        "default_per_sample_iv_size": 0,
        "default_kid": str(KID),
        "default_crypt_byte_block": 1,
        "default_skip_byte_block": 9,
        "default_constant_iv": bytes(range(16)).hex(),
    }


def test_senc_infers_iv_size():
    entry = bytes(range(8)) + struct.pack(">HHI", 1, 32, 4096)
    (senc,) = decode_boxes(_full_box("senc", struct.pack(">I", 2) + entry * 2, flags=0x000002))

    assert senc.errors == ()
    assert senc.properties["per_sample_iv_size"] == 8
    assert senc.properties["samples"][1] == {
        "iv": bytes(range(8)).hex(),
        "subsamples": [{"clear_bytes": 32, "protected_bytes": 4096}],
    }


def test_senc_forged_count_is_an_error():
    (senc,) = decode_boxes(_full_box("senc", struct.pack(">I", 0xFFFFFFFF) + bytes(16), flags=0x000002))

    assert "fit no IV size" in senc.errors[0].message


def test_sample_group_boxes():
    sbgp = _full_box("sbgp", b"seig" + struct.pack(">IIIII", 2, 10, 65537, 5, 0))
    seig = bytes([0, 0, 1, 8]) + KID.bytes
    sgpd = _full_box("sgpd", b"seig" + struct.pack(">II", 20, 1) + seig, version=1)

    sbgp_box, sgpd_box = decode_boxes(sbgp + sgpd)
    assert sbgp_box.properties["entries"] == [
        {"sample_count": 10, "group_description_index": 65537},
        {"sample_count": 5, "group_description_index": 0},
    ]
    assert sgpd_box.properties["entries"] == [
        {"is_protected": True, "per_sample_iv_size": 8, "kid": str(KID), "crypt_byte_block": 0, "skip_byte_block": 0}
    ]


def test_saiz_and_saio():
    saiz = _full_box("saiz", struct.pack(">BI", 0, 3) + bytes([16, 22, 16]))
    saio = _full_box("saio", struct.pack(">IQ", 1, 1024), version=1)

    saiz_box, saio_box = decode_boxes(saiz + saio)
    assert saiz_box.properties == {"default_sample_info_size": 0, "sample_count": 3, "sample_info_sizes": [16, 22, 16]}
    assert saio_box.properties == {"offsets": [1024]}
