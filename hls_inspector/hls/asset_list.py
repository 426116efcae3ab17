import json
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hls_inspector.errors import ParseError, ResolutionError
from hls_inspector.hls.parser import resolve_uri

logger = logging.getLogger(__name__)


class AssetDescription(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    uri: str = Field(..., alias="URI", description="URI of the interstitial asset's playlist.")
    duration: float = Field(..., alias="DURATION", ge=0, description="Duration of the asset in seconds.")
    resolved_uri: Optional[str] = Field(None, description="The asset URI resolved against the asset-list URL.")


class SkipControl(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    offset: int = Field(..., alias="OFFSET", ge=0, description="Seconds into the asset when skipping is allowed.")
    duration: int = Field(..., alias="DURATION", ge=0, description="Seconds for which the skip control is shown.")
    label_id: str = Field(..., alias="LABEL-ID", description="Identifier of the skip button label.")


class AssetList(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    assets: list[AssetDescription] = Field(..., alias="ASSETS")
    skip_control: Optional[SkipControl] = Field(None, alias="SKIP-CONTROL")


def parse_asset_list(text: str, url: str) -> AssetList:
    """
    Decodes the JSON document behind an interstitial's X-ASSET-LIST.

    Args:
        text (str): The JSON document.
        url (str): The URL it was fetched from, used to resolve asset URIs.

    Returns:
        AssetList: The decoded asset list with ``resolved_uri`` filled in where resolvable.

    Raises:
        ParseError: If the document is not JSON or does not have the asset-list shape.
    """
    try:
        asset_list = AssetList.model_validate(json.loads(text))
    except json.JSONDecodeError as e:
        raise ParseError(f"asset list at {url} is not valid JSON: {e.msg}", line=e.lineno)
    except ValidationError as e:
        raise ParseError(f"asset list at {url} is malformed: {e.errors()[0]['msg']}")

    for asset in asset_list.assets:
        try:
            asset.resolved_uri = resolve_uri(asset.uri, url, "X-ASSET-LIST").url
        except ResolutionError as e:
            logger.warning(f"Unresolvable asset URI in {url}: {e.message}")
    return asset_list
