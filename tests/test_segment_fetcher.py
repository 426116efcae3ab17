import asyncio

import httpx
import pytest
from tenacity import wait_none

from hls_inspector.configs import FetchTransportConfig, OriginConfig, settings
from hls_inspector.errors import FetchError, RangeIgnoredError, RangeNotSatisfiableError
from hls_inspector.hls.models import ByteRange
from hls_inspector.hls.parser import resolve_uri
from hls_inspector.utils import http_utils
from hls_inspector.utils.cache_utils import ResourceCache
from hls_inspector.utils.http_utils import fetch_resource, parse_content_range

SEGMENT_URL = "https://cdn.example.com/live/main.mp4"
BODY = bytes(range(256)) * 8


def _partial_response(request: httpx.Request) -> httpx.Response:
    start, end = (int(value) for value in request.headers["range"].removeprefix("bytes=").split("-"))
    return httpx.Response(
        206,
        content=BODY[start : end + 1],
        headers={"Content-Range": f"bytes {start}-{end}/{len(BODY)}", "Content-Type": "video/mp4"},
    )


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(http_utils.fetch_with_retry.retry, "wait", wait_none())


@pytest.mark.asyncio
async def test_fetch_whole_resource(mock_client):
    client = mock_client({SEGMENT_URL: lambda request: httpx.Response(200, content=BODY)})

    resource = await fetch_resource(client, SEGMENT_URL)
    assert resource.data == BODY
    assert resource.status_code == 200
    assert resource.total_size == len(BODY)
    assert resource.byte_range is None


@pytest.mark.asyncio
async def test_fetch_byte_range(mock_client):
    requests = []

    def handler(request):
        requests.append(request)
        return _partial_response(request)

    client = mock_client({SEGMENT_URL: handler})
    uri = resolve_uri("main.mp4", "https://cdn.example.com/live/index.m3u8")

    resource = await fetch_resource(client, uri, ByteRange(offset=1000, length=500))
    assert requests[0].headers["range"] == "bytes=1000-1499"
    assert resource.data == BODY[1000:1500]
    assert resource.status_code == 206
    assert resource.total_size == len(BODY)
    assert resource.content_type == "video/mp4"
    assert resource.sliced is False


@pytest.mark.asyncio
async def test_mismatched_content_range(mock_client):
    def handler(request):
        return httpx.Response(206, content=BODY[0:500], headers={"Content-Range": f"bytes 0-499/{len(BODY)}"})

    client = mock_client({SEGMENT_URL: handler})

    with pytest.raises(FetchError) as exc_info:
        await fetch_resource(client, SEGMENT_URL, ByteRange(offset=1000, length=500))
    assert "does not match" in exc_info.value.message


@pytest.mark.asyncio
async def test_range_beyond_known_size(mock_client):
    def handler(request):
        return httpx.Response(206, content=BODY[1500:2048], headers={"Content-Range": "bytes 1500-2047/2048"})

    client = mock_client({SEGMENT_URL: handler})

    with pytest.raises(RangeNotSatisfiableError):
        await fetch_resource(client, SEGMENT_URL, ByteRange(offset=1500, length=1000))


@pytest.mark.asyncio
async def test_ignored_range_is_an_error_by_default(mock_client):
    client = mock_client({SEGMENT_URL: lambda request: httpx.Response(200, content=BODY)})

    with pytest.raises(RangeIgnoredError) as exc_info:
        await fetch_resource(client, SEGMENT_URL, ByteRange(offset=1000, length=500), policy="strict")
    assert exc_info.value.url == SEGMENT_URL
    assert exc_info.value.status_code == 200


@pytest.mark.asyncio
async def test_ignored_range_sliced_locally(mock_client):
    client = mock_client({SEGMENT_URL: lambda request: httpx.Response(200, content=BODY)})

    resource = await fetch_resource(client, SEGMENT_URL, ByteRange(offset=1000, length=500), policy="slice")
    assert resource.data == BODY[1000:1500]
    assert resource.sliced is True
    assert resource.total_size == len(BODY)


@pytest.mark.asyncio
async def test_ignored_range_outside_body_cannot_be_sliced(mock_client):
    client = mock_client({SEGMENT_URL: lambda request: httpx.Response(200, content=BODY)})

    with pytest.raises(RangeNotSatisfiableError):
        await fetch_resource(client, SEGMENT_URL, ByteRange(offset=2000, length=500), policy="slice")


@pytest.mark.asyncio
async def test_range_not_satisfiable(mock_client):
    client = mock_client({SEGMENT_URL: lambda request: httpx.Response(416)})

    with pytest.raises(RangeNotSatisfiableError) as exc_info:
        await fetch_resource(client, SEGMENT_URL, ByteRange(offset=10_000, length=10))
    assert exc_info.value.status_code == 416


@pytest.mark.asyncio
async def test_client_error_is_not_retried(mock_client):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404)

    client = mock_client({SEGMENT_URL: handler})

    with pytest.raises(FetchError) as exc_info:
        await fetch_resource(client, SEGMENT_URL)
    assert exc_info.value.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried(mock_client, no_retry_wait):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    client = mock_client({SEGMENT_URL: handler})

    with pytest.raises(FetchError) as exc_info:
        await fetch_resource(client, SEGMENT_URL)
    assert exc_info.value.status_code == 503
    assert len(calls) == settings.fetch_retries


@pytest.mark.asyncio
async def test_transient_failure_recovers(mock_client, no_retry_wait):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, content=b"ok")

    client = mock_client({SEGMENT_URL: handler})

    resource = await fetch_resource(client, SEGMENT_URL)
    assert resource.data == b"ok"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_cache_serves_repeated_fetches(mock_client):
    calls = []

    def handler(request):
        calls.append(request)
        if "range" in request.headers:
            return _partial_response(request)
        return httpx.Response(200, content=BODY)

    client = mock_client({SEGMENT_URL: handler})
    cache = ResourceCache(max_memory_size=1024 * 1024, ttl=60)

    first = await fetch_resource(client, SEGMENT_URL, cache=cache)
    second = await fetch_resource(client, SEGMENT_URL, cache=cache)
    ranged = await fetch_resource(client, SEGMENT_URL, ByteRange(offset=0, length=16), cache=cache)

    assert second is first
    assert ranged.data == BODY[:16]
    assert len(calls) == 2
    assert ResourceCache.key(SEGMENT_URL, ByteRange(offset=0, length=16)) == f"{SEGMENT_URL}|bytes=0-15"
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_failed_fetch_leaves_cache_untouched(mock_client):
    client = mock_client({SEGMENT_URL: lambda request: httpx.Response(200, content=BODY)})
    cache = ResourceCache(max_memory_size=1024 * 1024, ttl=60)

    with pytest.raises(RangeIgnoredError):
        await fetch_resource(client, SEGMENT_URL, ByteRange(offset=0, length=16), cache=cache, policy="strict")
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_cancelled_fetch_leaves_cache_empty(mock_client):
    started = asyncio.Event()
    release = asyncio.Event()

    async def stalled_handler(request):
        started.set()
        await release.wait()
        return httpx.Response(200, content=BODY)

    client = mock_client({SEGMENT_URL: stalled_handler})
    cache = ResourceCache(max_memory_size=1024 * 1024, ttl=60)

    task = asyncio.create_task(fetch_resource(client, SEGMENT_URL, cache=cache))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(cache) == 0
    assert cache.get(ResourceCache.key(SEGMENT_URL)) is None


def test_parse_content_range():
    assert parse_content_range("bytes 0-499/1234") == (0, 499, 1234)
    assert parse_content_range("bytes 500-999/*") == (500, 999, None)

    with pytest.raises(ValueError):
        parse_content_range("items 0-1/2")


def test_cache_evicts_least_recently_used():
    cache = ResourceCache(max_memory_size=10, ttl=60)
    cache.set("a", "A", size=4)
    cache.set("b", "B", size=4)
    assert cache.get("a") == "A"
    cache.set("c", "C", size=4)

    assert cache.get("b") is None
    assert cache.get("a") == "A"
    assert cache.get("c") == "C"


def test_cache_entries_expire():
    cache = ResourceCache(max_memory_size=10, ttl=-1)
    cache.set("a", "A", size=1)

    assert cache.get("a") is None
    assert len(cache) == 0


def test_fetch_transport_mounts():
    config = FetchTransportConfig(
        proxy_url="http://proxy.example.com:8080",
        origins={
            "https://cdn.example.com": OriginConfig(verify_ssl=False),
            "https://direct.example.com": OriginConfig(use_proxy=False),
        },
    )

    mounts = config.build_mounts()
    assert set(mounts) == {"https://cdn.example.com", "https://direct.example.com"}
    assert all(isinstance(transport, httpx.AsyncHTTPTransport) for transport in mounts.values())

    proxied = FetchTransportConfig(proxy_url="http://proxy.example.com:8080", proxy_all_origins=True)
    assert set(proxied.build_mounts()) == {"all://"}
    assert set(FetchTransportConfig(verify_ssl=False).build_mounts()) == {"all://"}
    assert FetchTransportConfig(proxy_url=None, verify_ssl=True).build_mounts() == {}
