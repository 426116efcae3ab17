import pytest

from hls_inspector.errors import ParseError
from hls_inspector.hls.asset_list import parse_asset_list

ASSET_LIST_URL = "https://ads.example.com/pods/1/list.json"


def test_parse_asset_list():
    text = """{
        "ASSETS": [
            {"URI": "ad1/index.m3u8", "DURATION": 15.0},
            {"URI": "https://cdn.example.com/ad2.m3u8", "DURATION": 30, "X-AD-ID": "42"}
        ],
        "SKIP-CONTROL": {"OFFSET": 5, "DURATION": 10, "LABEL-ID": "skip-ad"}
    }"""

    asset_list = parse_asset_list(text, ASSET_LIST_URL)

    first, second = asset_list.assets
    assert first.uri == "ad1/index.m3u8"
    assert first.resolved_uri == "https://ads.example.com/pods/1/ad1/index.m3u8"
    assert second.resolved_uri == "https://cdn.example.com/ad2.m3u8"
    assert second.duration == 30
    assert asset_list.skip_control.offset == 5
    assert asset_list.skip_control.label_id == "skip-ad"


def test_asset_list_without_skip_control():
    asset_list = parse_asset_list('{"ASSETS": []}', ASSET_LIST_URL)

    assert asset_list.assets == []
    assert asset_list.skip_control is None


def test_invalid_json():
    with pytest.raises(ParseError) as exc_info:
        parse_asset_list('{"ASSETS": [', ASSET_LIST_URL)
    assert "not valid JSON" in exc_info.value.message


def test_wrong_shape():
    with pytest.raises(ParseError):
        parse_asset_list('{"ASSETS": [{"URI": "a.m3u8", "DURATION": -1}]}', ASSET_LIST_URL)

    with pytest.raises(ParseError):
        parse_asset_list('{"ITEMS": []}', ASSET_LIST_URL)
