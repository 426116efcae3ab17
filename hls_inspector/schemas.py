from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from hls_inspector.hls.models import ByteRange


class PlaylistParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., description="The URL of the playlist to resolve.")
    imported: Optional[str] = Field(
        None,
        description="Variables available to EXT-X-DEFINE:IMPORT, as comma separated NAME=VALUE pairs.",
    )
    variants: bool = Field(False, description="Also resolve every playlist a multivariant playlist references.")

    def imported_variables(self) -> dict[str, str]:
        variables = {}
        for pair in (self.imported or "").split(","):
            name, sep, value = pair.partition("=")
            if sep and name.strip():
                variables[name.strip()] = value
        return variables


class SegmentParams(BaseModel):
    url: str = Field(..., description="The URL of the segment to inspect.")
    offset: Optional[int] = Field(None, ge=0, description="Start of the byte range to fetch.")
    length: Optional[int] = Field(None, gt=0, description="Length of the byte range to fetch.")

    def byte_range(self) -> Optional[ByteRange]:
        if self.length is None:
            if self.offset is not None:
                raise ValueError("offset requires length")
            return None
        return ByteRange(offset=self.offset or 0, length=self.length)


class OverlapParams(BaseModel):
    url: str = Field(..., description="The URL of the media playlist.")
    daterange_id: str = Field(..., description="The ID of the EXT-X-DATERANGE to place on the timeline.")


class Scte35Params(BaseModel):
    payload: str = Field(..., description="A splice_info_section as hexadecimal (0x optional) or base64.")


class AssetListParams(BaseModel):
    url: str = Field(..., description="The URL of the interstitial asset list.")
