import httpx
import pytest
from fastapi.testclient import TestClient

from hls_inspector.inspector import InspectionSession
from hls_inspector.main import app
from hls_inspector.routes.inspect import get_session
from hls_inspector.utils.cache_utils import ResourceCache

PLAYLIST_URL = "https://cdn.example.com/live/index.m3u8"

PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:4
#EXT-X-PROGRAM-DATE-TIME:2024-05-01T10:00:00Z
#EXTINF:4,
s0.mp4
#EXT-X-DATERANGE:ID="ad",START-DATE="2024-05-01T10:00:02Z",DURATION=4,SCTE35-OUT=0xFC30
#EXTINF:4,
s1.mp4
"""

SPLICE_INSERT_HEX = (
    "fc302f000000000000fffff014054800008f7feffe7369c02efe0052ccf500000000000a0008435545490000013562dba30a"
)


@pytest.fixture
def client(mock_client):
    upstream = mock_client(
        {
            PLAYLIST_URL: lambda request: httpx.Response(200, text=PLAYLIST),
            "https://cdn.example.com/live/s0.mp4": lambda request: httpx.Response(
                200, content=b"\x00\x00\x00\x10ftypiso6\x00\x00\x00\x00", headers={"Content-Type": "video/mp4"}
            ),
            "https://cdn.example.com/live/list.json": lambda request: httpx.Response(
                200, text='{"ASSETS": [], "SKIP-CONTROL": {"OFFSET": 5, "DURATION": 10, "LABEL-ID": "skip"}}'
            ),
        }
    )

    async def override_session():
        yield InspectionSession(client=upstream, cache=ResourceCache(max_memory_size=1024 * 1024, ttl=60))

    app.dependency_overrides[get_session] = override_session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_inspect_playlist(client):
    response = client.get("/inspect/playlist", params={"url": PLAYLIST_URL})

    assert response.status_code == 200
    view = response.json()["playlist"]
    assert view["anchor"] == "2024-05-01T10:00:00+00:00"
    assert [segment["start"] for segment in view["segments"]] == [0.0, 4.0]
    assert view["segments"][1]["segment"]["uri"]["url"] == "https://cdn.example.com/live/s1.mp4"
    assert view["playlist"]["kind"] == "media"
    assert view["playlist"]["date_ranges"][0]["id"] == "ad"


def test_inspect_playlist_upstream_error(client):
    response = client.get("/inspect/playlist", params={"url": "https://cdn.example.com/live/gone.m3u8"})

    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "fetch"


def test_inspect_segment(client):
    response = client.get("/inspect/segment", params={"url": "https://cdn.example.com/live/s0.mp4"})

    assert response.status_code == 200
    body = response.json()
    assert body["segment_type"] == "mp4"
    assert body["size"] == 16
    assert body["inspection"]["boxes"][0]["type"] == "ftyp"
    assert body["inspection"]["boxes"][0]["properties"]["major_brand"] == "iso6"


def test_inspect_segment_offset_requires_length(client):
    response = client.get("/inspect/segment", params={"url": "https://cdn.example.com/live/s0.mp4", "offset": 4})

    assert response.status_code == 400


def test_inspect_overlap(client):
    response = client.get("/inspect/overlap", params={"url": PLAYLIST_URL, "daterange_id": "ad"})

    assert response.status_code == 200
    body = response.json()
    assert body["media_sequences"] == [0, 1]
    assert body["start"] == 2.0
    assert body["end"] == 6.0


def test_inspect_overlap_unknown_date_range(client):
    response = client.get("/inspect/overlap", params={"url": PLAYLIST_URL, "daterange_id": "nope"})

    assert response.status_code == 409
    assert response.json()["detail"]["kind"] == "computation"


def test_inspect_scte35(client):
    response = client.get("/inspect/scte35", params={"payload": SPLICE_INSERT_HEX})

    assert response.status_code == 200
    body = response.json()
    assert body["splice_command"]["name"] == "splice_insert"
    assert body["splice_command"]["break_duration"]["duration"] == 5426421
    assert body["descriptors"][0]["provider_avail_id"] == 309
    assert body["crc_valid"] is True


def test_inspect_scte35_malformed(client):
    response = client.get("/inspect/scte35", params={"payload": "0xzz"})

    assert response.status_code == 422
    assert response.json()["detail"]["kind"] == "decode"


def test_inspect_asset_list(client):
    response = client.get("/inspect/asset-list", params={"url": "https://cdn.example.com/live/list.json"})

    assert response.status_code == 200
    assert response.json()["SKIP-CONTROL"]["LABEL-ID"] == "skip"
