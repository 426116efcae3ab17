import logging
from fractions import Fraction
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from hls_inspector.errors import ComputationError, FetchError, InspectorError
from hls_inspector.inspector import InspectionSession
from hls_inspector.media.scte35 import decode_splice_info
from hls_inspector.schemas import AssetListParams, OverlapParams, PlaylistParams, Scte35Params, SegmentParams
from hls_inspector.utils.cache_utils import ResourceCache

inspect_router = APIRouter()
logger = logging.getLogger(__name__)

resource_cache = ResourceCache()

# Leaf payloads are echoed as a hex preview only
PAYLOAD_PREVIEW_SIZE = 256

CUSTOM_ENCODERS = {
    Fraction: float,
    bytes: lambda data: data[:PAYLOAD_PREVIEW_SIZE].hex(),
    InspectorError: lambda error: error.to_dict(),
}


def encode(value):
    return jsonable_encoder(value, custom_encoder=CUSTOM_ENCODERS)


def error_status(error: InspectorError) -> int:
    if isinstance(error, FetchError):
        if error.status_code is not None and 400 <= error.status_code < 600:
            return error.status_code
        return 502
    if isinstance(error, ComputationError):
        return 409
    return 422


def raise_http_error(error: InspectorError):
    status_code = error_status(error)
    logger.error(f"Inspection failed with {status_code}: {error.message}")
    raise HTTPException(status_code=status_code, detail=error.to_dict())


async def get_session() -> AsyncIterator[InspectionSession]:
    async with InspectionSession(cache=resource_cache) as session:
        yield session


@inspect_router.get("/playlist")
async def inspect_playlist(
    params: Annotated[PlaylistParams, Query()],
    session: Annotated[InspectionSession, Depends(get_session)],
):
    """Resolve a playlist into its cross-referenced tags, segments and timeline."""
    try:
        view = await session.resolve(params.url, params.imported_variables())
        response = {"playlist": encode(view)}
        if params.variants and not view.playlist.is_media:
            response["variants"] = encode(await session.resolve_variants(view))
        return response
    except InspectorError as e:
        raise_http_error(e)


@inspect_router.get("/segment")
async def inspect_segment(
    params: Annotated[SegmentParams, Query()],
    session: Annotated[InspectionSession, Depends(get_session)],
):
    """Fetch a segment, optionally a byte range of it, and decode its boxes."""
    try:
        byte_range = params.byte_range()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        report = await session.inspect_segment(params.url, byte_range)
    except InspectorError as e:
        raise_http_error(e)

    resource = report.resource
    return encode(
        {
            "url": resource.url,
            "status_code": resource.status_code,
            "content_type": resource.content_type,
            "byte_range": resource.byte_range,
            "total_size": resource.total_size,
            "sliced": resource.sliced,
            "size": len(resource.data),
            "segment_type": report.segment_type,
            "inspection": report.inspection,
        }
    )


@inspect_router.get("/overlap")
async def inspect_overlap(
    params: Annotated[OverlapParams, Query()],
    session: Annotated[InspectionSession, Depends(get_session)],
):
    """Find the segments a date range overlaps."""
    try:
        return encode(await session.overlap(params.url, params.daterange_id))
    except InspectorError as e:
        raise_http_error(e)


@inspect_router.get("/scte35")
async def inspect_scte35(params: Annotated[Scte35Params, Query()]):
    """Decode a SCTE-35 splice_info_section given as hex or base64."""
    try:
        return encode(decode_splice_info(params.payload))
    except InspectorError as e:
        raise_http_error(e)


@inspect_router.get("/asset-list")
async def inspect_asset_list(
    params: Annotated[AssetListParams, Query()],
    session: Annotated[InspectionSession, Depends(get_session)],
):
    """Decode the JSON asset list of an interstitial."""
    try:
        return encode(await session.fetch_asset_list(params.url))
    except InspectorError as e:
        raise_http_error(e)
