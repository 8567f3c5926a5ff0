"""Pydantic schemas for persisted records and request/response payloads.

WHAT:
    - AttributionRecord: the single persisted entity (share links and clicks)
    - CampaignTags: UTM-style campaign fields captured with a click
    - Request bodies for the product API
    - Response envelopes shared by the JSON endpoints

WHY:
    The JSON file layout and the HTTP payloads use camelCase field names
    (`resourceId`, `createdAt`, ...) that mobile clients already depend on.
    Python code uses snake_case attributes; aliases bridge the two.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


MetadataMap = Dict[str, Any]


class RecordKind(str, Enum):
    """Kinds of attribution records stored in the referral store."""

    share_link_generated = "share_link_generated"
    product_share = "product_share"


class Platform(str, Enum):
    """Client platforms recognised by the platform detector."""

    android = "android"
    ios = "ios"
    web = "web"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignTags(BaseModel):
    """UTM parameters captured from the inbound link. All optional."""

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None


class AttributionRecord(BaseModel):
    """A persisted share-link or click record.

    WHAT:
        One shape for both record kinds. `short_link`/`full_link` are only
        populated on `share_link_generated` records; `platform`,
        `client_identifier` and `source_address` on click records.

    WHY:
        The store keeps a single ordered collection, so both use cases share
        one schema and are told apart by `kind`.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str
    kind: RecordKind
    resource_id: Optional[str] = None
    share_id: Optional[str] = None
    referral_code: Optional[str] = None
    user_id: Optional[str] = None
    client_identifier: Optional[str] = None
    source_address: Optional[str] = None
    platform: Optional[Platform] = None
    created_at: datetime = Field(default_factory=utcnow)
    campaign_tags: CampaignTags = Field(default_factory=CampaignTags)
    metadata: MetadataMap = Field(default_factory=dict)
    short_link: Optional[str] = None
    full_link: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Older entries may carry naive timestamps
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_json(self) -> Dict[str, Any]:
        """Serialize with camelCase keys, as written to disk and over HTTP."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "AttributionRecord":
        return cls.model_validate(data)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================


class GenerateShareLinkRequest(BaseModel):
    """Body for POST /api/product/generate-share-link.

    `productId` is optional at the schema level so that a missing value is
    reported by the attribution service as a ValidationError with the
    stable `{success: false, error}` shape.
    """

    productId: Optional[str] = Field(None, description="Resource to share")
    ref: Optional[str] = Field(None, description="Referral code of the sharer")
    userId: Optional[str] = Field(None, description="User who is sharing")
    metadata: Optional[MetadataMap] = Field(default=None, description="Extra key/values")

    model_config = {
        "json_schema_extra": {
            "example": {
                "productId": "99:33:E2:00:00:00:02",
                "ref": "user123",
                "userId": "john_doe",
                "metadata": {"campaign": "spring_sale", "source": "email"},
            }
        }
    }


class UpdateMetadataRequest(BaseModel):
    """Body for POST /api/product/update-metadata."""

    productId: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================


class ShareLink(BaseModel):
    """Public payload returned after generating a share link."""

    shareId: str
    shareLink: str
    shortLink: str
    productId: str
    ref: Optional[str] = None
    userId: Optional[str] = None
    metadata: MetadataMap = Field(default_factory=dict)
    createdAt: datetime


class PlatformCounts(BaseModel):
    android: int = 0
    ios: int = 0
    web: int = 0


class ProductStatistics(BaseModel):
    """Per-resource click statistics.

    NOTE: `uniqueClients` counts distinct source addresses. Visitors behind
    the same NAT or carrier gateway collapse into one.
    """

    productId: str
    totalClicks: int
    uniqueClients: int
    byPlatform: PlatformCounts
    recentClicks: List[Dict[str, Any]] = Field(default_factory=list)


class ProductMetadata(BaseModel):
    """Social preview metadata rendered into the share interstitial."""

    productId: str
    title: str
    description: str
    image: str
    url: str
    type: str = "product"
    siteName: str
    locale: str = "en_US"
    updatedAt: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
    timestamp: datetime
    uptime: float = Field(description="Seconds since the application started")
