import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from hls_inspector.errors import ComputationError, InspectorError
from hls_inspector.hls.asset_list import AssetList, parse_asset_list
from hls_inspector.hls.models import ByteRange, ResolvedURI, Segment
from hls_inspector.hls.navigator import PlaylistView, navigate
from hls_inspector.hls.overlap import OverlapResult, overlap_for
from hls_inspector.hls.parser import parse_playlist
from hls_inspector.media.box_decoder import SegmentInspection, inspect_segment
from hls_inspector.media.probe import SegmentType, probe_segment_type
from hls_inspector.utils.cache_utils import ResourceCache
from hls_inspector.utils.http_utils import FetchedResource, create_httpx_client, fetch_resource, fetch_text

logger = logging.getLogger(__name__)

# Multivariant tags whose URI leads to another playlist
VARIANT_TAGS = ("EXT-X-STREAM-INF", "EXT-X-I-FRAME-STREAM-INF", "EXT-X-MEDIA")


@dataclass(frozen=True)
class SegmentReport:
    resource: FetchedResource
    segment_type: SegmentType
    inspection: Optional[SegmentInspection] = None


def variant_uris(view: PlaylistView) -> list[ResolvedURI]:
    """Distinct playlist URIs referenced by a multivariant playlist, in playlist order."""
    seen = set()
    uris = []
    for tag_view in view.tags:
        if tag_view.tag.name not in VARIANT_TAGS or tag_view.tag.errors:
            continue
        uri = tag_view.uris.get("URI")
        if uri is not None and uri.url not in seen:
            seen.add(uri.url)
            uris.append(uri)
    return uris


class InspectionSession:
    """
    Fetches and inspects playlists and segments through one HTTP client and one cache.

    Every network fetch is an await point; parsing and decoding run to completion in
    between. The session owns the client only when it created it.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, cache: Optional[ResourceCache] = None):
        self._owns_client = client is None
        self.client = client or create_httpx_client()
        self.cache = cache if cache is not None else ResourceCache()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def resolve(
        self, uri: Union[ResolvedURI, str], imported_variables: Optional[dict[str, str]] = None
    ) -> PlaylistView:
        """
        Fetches, parses and navigates a playlist.

        Args:
            uri (ResolvedURI | str): The playlist URL.
            imported_variables (dict, optional): Variables of the parent multivariant playlist,
                available to EXT-X-DEFINE:IMPORT.

        Returns:
            PlaylistView: The navigated playlist.
        """
        resource = await fetch_text(self.client, uri, cache=self.cache)
        playlist = parse_playlist(resource.text, resource.url, imported_variables)
        view = navigate(playlist)
        if playlist.errors or view.errors:
            logger.info(
                f"Playlist {resource.url} resolved with {len(playlist.errors) + len(view.errors)} errors"
            )
        return view

    async def resolve_variants(self, view: PlaylistView) -> dict[str, Union[PlaylistView, InspectorError]]:
        """
        Resolves every playlist referenced by a multivariant playlist concurrently.

        Returns:
            dict: Variant URL to its view, or to the error that prevented resolving it.
        """
        uris = variant_uris(view)
        results = await asyncio.gather(
            *(self.resolve(uri, view.playlist.variables) for uri in uris), return_exceptions=True
        )
        resolved = {}
        for uri, result in zip(uris, results):
            if isinstance(result, BaseException) and not isinstance(result, InspectorError):
                raise result
            if isinstance(result, InspectorError):
                logger.warning(f"Failed to resolve variant {uri.url}: {result.message}")
            resolved[uri.url] = result
        return resolved

    async def fetch_segment(self, segment: Segment, include_map: bool = False) -> FetchedResource:
        """Fetches a segment, or its initialization section, honouring their byte ranges."""
        if include_map:
            if segment.map is None:
                raise ComputationError(f"segment {segment.media_sequence} has no initialization section")
            return await fetch_resource(self.client, segment.map.uri, segment.map.byte_range, cache=self.cache)
        return await fetch_resource(self.client, segment.uri, segment.byte_range, cache=self.cache)

    async def inspect_segment(
        self, uri: Union[ResolvedURI, str], byte_range: Optional[ByteRange] = None
    ) -> SegmentReport:
        """
        Fetches a segment and decodes its boxes when it is box-structured.

        Returns:
            SegmentReport: The fetched resource, its probed type, and the box inspection for MP4 data.
        """
        resource = await fetch_resource(self.client, uri, byte_range, cache=self.cache)
        segment_type = probe_segment_type(resource.url, resource.data, resource.content_type)
        if segment_type is not SegmentType.MP4:
            logger.debug(f"Not decoding boxes of {resource.url}: probed as {segment_type.value}")
            return SegmentReport(resource=resource, segment_type=segment_type)
        return SegmentReport(resource=resource, segment_type=segment_type, inspection=inspect_segment(resource.data))

    async def overlap(self, uri: Union[ResolvedURI, str], daterange_id: str) -> OverlapResult:
        view = await self.resolve(uri)
        return overlap_for(view, daterange_id)

    async def fetch_asset_list(self, uri: Union[ResolvedURI, str]) -> AssetList:
        resource = await fetch_text(self.client, uri, cache=self.cache)
        return parse_asset_list(resource.text, resource.url)
