import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx
import tenacity
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from hls_inspector.configs import settings
from hls_inspector.errors import FetchError, RangeIgnoredError, RangeNotSatisfiableError
from hls_inspector.hls.models import ByteRange, ResolvedURI
from hls_inspector.utils.cache_utils import ResourceCache

logger = logging.getLogger(__name__)


class TransientFetchError(FetchError):
    """A fetch failure worth retrying: timeouts, connection failures and 5xx responses."""


@dataclass(frozen=True)
class FetchedResource:
    url: str
    data: bytes
    status_code: int
    content_type: Optional[str] = None
    byte_range: Optional[ByteRange] = None
    total_size: Optional[int] = None
    sliced: bool = False

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """Creates an HTTPX client with configured proxy routing"""
    mounts = settings.fetch_transport.build_mounts()
    kwargs.setdefault("timeout", settings.fetch_transport.timeout)
    kwargs.setdefault("headers", {"User-Agent": settings.user_agent})
    client = httpx.AsyncClient(mounts=mounts, follow_redirects=follow_redirects, **kwargs)
    return client


@retry(
    stop=stop_after_attempt(settings.fetch_retries),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception_type(TransientFetchError),
)
async def fetch_with_retry(
    client: httpx.AsyncClient, method: str, url: str, headers: dict, follow_redirects: bool = True, **kwargs
) -> httpx.Response:
    """
    Fetches a URL with retry logic for transient failures.

    Args:
        client (httpx.AsyncClient): The HTTP client to use for the request.
        method (str): The HTTP method to use (e.g., GET, HEAD).
        url (str): The URL to fetch.
        headers (dict): The headers to include in the request.
        follow_redirects (bool, optional): Whether to follow redirects. Defaults to True.
        **kwargs: Additional arguments to pass to the request.

    Returns:
        httpx.Response: The HTTP response.

    Raises:
        TransientFetchError: On timeouts, connection failures and 5xx responses (retried).
        RangeNotSatisfiableError: If the server answers 416.
        FetchError: On any other non-success status.
    """
    try:
        response = await client.request(method, url, headers=headers, follow_redirects=follow_redirects, **kwargs)
        response.raise_for_status()
        return response
    except httpx.TimeoutException:
        logger.warning(f"Timeout while fetching {url}")
        raise TransientFetchError(f"Timeout while fetching {url}", url=url)
    except httpx.HTTPStatusError as e:
        status_code = e.response.status_code
        if status_code == 416:
            raise RangeNotSatisfiableError(
                f"Range {headers.get('Range')} not satisfiable for {url}", url=url, status_code=status_code
            )
        if status_code >= 500:
            logger.warning(f"Upstream error {status_code} while fetching {url}")
            raise TransientFetchError(f"HTTP error {status_code} while fetching {url}", url=url, status_code=status_code)
        logger.error(f"HTTP error {status_code} while fetching {url}")
        raise FetchError(f"HTTP error {status_code} while fetching {url}", url=url, status_code=status_code)
    except httpx.TransportError as e:
        logger.warning(f"Network error while fetching {url}: {e}")
        raise TransientFetchError(f"Network error while fetching {url}: {e}", url=url)
    except httpx.RequestError as e:
        logger.error(f"Request error while fetching {url}: {e}")
        raise FetchError(f"Request error while fetching {url}: {e}", url=url)


def parse_content_range(content_range: str) -> tuple[int, int, Optional[int]]:
    """
    Splits a ``Content-Range`` header of the form ``bytes start-end/total``.

    Returns:
        tuple[int, int, Optional[int]]: Start, inclusive end, and total size (None when ``*``).
    """
    unit, _, spec = content_range.strip().partition(" ")
    if unit != "bytes" or "/" not in spec or "-" not in spec:
        raise ValueError(f"malformed Content-Range {content_range!r}")
    span, total = spec.split("/", 1)
    start, end = span.split("-", 1)
    return int(start), int(end), None if total.strip() == "*" else int(total)


def _check_partial_response(url: str, byte_range: ByteRange, response: httpx.Response) -> Optional[int]:
    """Validates a 206 answer against the requested span and returns the total size if declared."""
    header = response.headers.get("content-range")
    if header is None:
        raise FetchError(f"206 response without Content-Range for {url}", url=url, status_code=206)
    try:
        start, end, total = parse_content_range(header)
    except ValueError as e:
        raise FetchError(f"{e} for {url}", url=url, status_code=206)

    if total is not None and not byte_range.fits(total):
        raise RangeNotSatisfiableError(
            f"byte range {byte_range} exceeds resource size {total} of {url}", url=url, status_code=206
        )
    if start != byte_range.offset or end != byte_range.last:
        raise FetchError(
            f"Content-Range {header!r} does not match requested {byte_range.range_header()} for {url}",
            url=url,
            status_code=206,
        )
    if len(response.content) != byte_range.length:
        raise FetchError(
            f"expected {byte_range.length} bytes from {url}, received {len(response.content)}",
            url=url,
            status_code=206,
        )
    return total


async def fetch_resource(
    client: httpx.AsyncClient,
    uri: Union[ResolvedURI, str],
    byte_range: Optional[ByteRange] = None,
    cache: Optional[ResourceCache] = None,
    policy: Optional[str] = None,
) -> FetchedResource:
    """
    Fetches a playlist or segment, optionally restricted to a byte range.

    Args:
        client (httpx.AsyncClient): The HTTP client to use.
        uri (ResolvedURI | str): The resource to fetch.
        byte_range (ByteRange, optional): Span to request with a ``Range`` header.
        cache (ResourceCache, optional): Cache consulted before and filled after the fetch.
        policy (str, optional): Reaction to a 200 answer to a range request, ``strict`` or ``slice``.
            Defaults to ``settings.range_response_policy``.

    Returns:
        FetchedResource: The body with the response metadata.

    Raises:
        RangeIgnoredError: If the server ignored the range request under the strict policy.
        RangeNotSatisfiableError: If the range lies outside the resource.
        FetchError: On network failure or any other non-success status.
    """
    url = uri.url if isinstance(uri, ResolvedURI) else uri
    policy = policy or settings.range_response_policy
    key = ResourceCache.key(url, byte_range)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for {key}")
            return cached

    headers = {"User-Agent": settings.user_agent}
    if byte_range is not None:
        headers["Range"] = byte_range.range_header()

    try:
        response = await fetch_with_retry(client, "GET", url, headers)
    except tenacity.RetryError as e:
        last_error = e.last_attempt.exception()
        raise FetchError(
            f"Failed to fetch {url} after {e.last_attempt.attempt_number} attempts: {last_error}",
            url=url,
            status_code=getattr(last_error, "status_code", None),
        )

    data = response.content
    total_size = None
    sliced = False
    if byte_range is not None:
        if response.status_code == 206:
            total_size = _check_partial_response(url, byte_range, response)
        elif policy == "slice":
            total_size = len(data)
            if not byte_range.fits(total_size):
                raise RangeNotSatisfiableError(
                    f"byte range {byte_range} exceeds resource size {total_size} of {url}",
                    url=url,
                    status_code=response.status_code,
                )
            logger.warning(f"Server ignored {byte_range.range_header()} for {url}, slicing locally")
            data = data[byte_range.offset : byte_range.end]
            sliced = True
        else:
            raise RangeIgnoredError(
                f"Server answered {byte_range.range_header()} for {url} with status {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
    elif response.status_code == 200:
        total_size = len(data)

    resource = FetchedResource(
        url=url,
        data=data,
        status_code=response.status_code,
        content_type=response.headers.get("content-type"),
        byte_range=byte_range,
        total_size=total_size,
        sliced=sliced,
    )
    if cache is not None:
        cache.set(key, resource, size=len(data))
    return resource


async def fetch_text(
    client: httpx.AsyncClient, uri: Union[ResolvedURI, str], cache: Optional[ResourceCache] = None
) -> FetchedResource:
    """Fetches a whole text resource such as a playlist or an asset list."""
    return await fetch_resource(client, uri, cache=cache)
