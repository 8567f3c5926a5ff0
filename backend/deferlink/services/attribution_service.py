"""Click attribution service.

WHAT:
    Creates and looks up attribution records:
    - Share-link generation (long link + short link, persisted record)
    - Click capture for /share, /invite and /product entry points
    - Short-link expansion and post-install click lookup
    - Per-resource and store-wide statistics

WHY:
    Attribution capture runs in front of a user redirect, so it must never
    reject a click for malformed optional fields. Only share-link
    generation validates its input.

REFERENCES:
    - deferlink/services/referral_store.py (persistence)
    - deferlink/services/platform.py (platform detection)
    - deferlink/routers/deeplink.py, deferlink/routers/product.py (callers)
"""

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from ..errors import NotFoundError, ValidationError
from ..schemas import (
    AttributionRecord,
    CampaignTags,
    MetadataMap,
    Platform,
    PlatformCounts,
    ProductStatistics,
    RecordKind,
    ShareLink,
)
from .platform import detect_platform
from .referral_store import ReferralStore

logger = logging.getLogger(__name__)

MAX_RESOURCE_ID_LENGTH = 100
RECENT_CLICKS_LIMIT = 10

# Long-link query keys that metadata entries may not overwrite
_RESERVED_LINK_PARAMS = {"id", "shareId", "ref", "userId"}


def new_identifier() -> str:
    """128-bit random identifier, collision-free for practical purposes."""
    return str(uuid.uuid4())


def validate_resource_id(resource_id: Optional[str]) -> str:
    """Return the resource id or raise ValidationError.

    Rules: present, not blank, at most 100 characters.
    """
    if resource_id is None or not str(resource_id).strip():
        raise ValidationError("productId is required", field="productId")
    resource_id = str(resource_id)
    if len(resource_id) > MAX_RESOURCE_ID_LENGTH:
        raise ValidationError("Invalid productId format", field="productId")
    return resource_id


class AttributionService:
    """
    Creates and reads attribution records through the referral store.

    USAGE:
        service = AttributionService(store, public_origin="https://links.example.com", retention_days=30)
        share = service.generate_share_link("P1", referral_code="user123")
        click = service.process_click("P1", client_identifier=ua, source_address=ip)
        record = service.get_click(click.id)
    """

    def __init__(
        self,
        store: ReferralStore,
        public_origin: str,
        retention_days: int = 30,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.public_origin = public_origin.rstrip("/")
        self.retention_days = retention_days
        self.clock = clock

    # -------------------------------------------------------------------------
    # Share links
    # -------------------------------------------------------------------------

    def generate_share_link(
        self,
        resource_id: Optional[str],
        referral_code: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[MetadataMap] = None,
    ) -> ShareLink:
        """
        Generate and persist a share link for a resource.

        RETURNS:
            ShareLink payload with `shareLink` (long form carrying every
            parameter) and `shortLink` (`<origin>/s/<shareId>`).

        RAISES:
            ValidationError: resource_id is missing, blank or longer than 100 chars
        """
        resource_id = validate_resource_id(resource_id)
        metadata = dict(metadata or {})
        share_id = new_identifier()
        created_at = self.clock()

        params = {"id": resource_id, "shareId": share_id}
        if referral_code:
            params["ref"] = referral_code
        if user_id:
            params["userId"] = user_id
        for key, value in metadata.items():
            if value and key not in _RESERVED_LINK_PARAMS:
                params[key] = str(value)

        share_link = f"{self.public_origin}/share?{urlencode(params)}"
        short_link = f"{self.public_origin}/s/{share_id}"

        self.store.create(
            AttributionRecord(
                id=share_id,
                kind=RecordKind.share_link_generated,
                resource_id=resource_id,
                share_id=share_id,
                referral_code=referral_code or None,
                user_id=user_id or None,
                created_at=created_at,
                metadata=metadata,
                short_link=short_link,
                full_link=share_link,
            )
        )

        logger.info(
            "[SHARE] Generated share link",
            extra={"share_id": share_id, "resource_id": resource_id, "short_link": short_link},
        )

        return ShareLink(
            shareId=share_id,
            shareLink=share_link,
            shortLink=short_link,
            productId=resource_id,
            ref=referral_code,
            userId=user_id,
            metadata=metadata,
            createdAt=created_at,
        )

    def expand_short_link(self, share_id: str) -> str:
        """
        Return the relative `/share` URL a short link stands for.

        RAISES:
            NotFoundError: unknown, expired, or not a share-link record
        """
        record = self._lookup(share_id)
        if record is None or record.kind != RecordKind.share_link_generated:
            raise NotFoundError("Share link not found or expired", identifier=share_id)

        params = {"id": record.resource_id, "shareId": record.share_id or record.id}
        if record.referral_code:
            params["ref"] = record.referral_code
        if record.user_id:
            params["userId"] = record.user_id
        return f"/share?{urlencode(params)}"

    # -------------------------------------------------------------------------
    # Clicks
    # -------------------------------------------------------------------------

    def process_click(
        self,
        resource_id: str,
        client_identifier: Optional[str],
        source_address: Optional[str],
        share_id: Optional[str] = None,
        referral_code: Optional[str] = None,
        user_id: Optional[str] = None,
        campaign_tags: Optional[Dict[str, Optional[str]]] = None,
    ) -> AttributionRecord:
        """
        Capture a click and persist it as a `product_share` record.

        WHAT:
            Records whatever context is available. Optional fields are stored
            as given (empty strings become null); unknown campaign keys are
            ignored.

        RETURNS:
            The created record. Persistence is best-effort: on a read-only
            medium the record is returned but not stored.
        """
        if not resource_id:
            raise ValidationError("productId is required", field="productId")

        tags = CampaignTags(**{
            key: value or None
            for key, value in (campaign_tags or {}).items()
            if key in CampaignTags.model_fields
        })
        platform = detect_platform(client_identifier)

        record = AttributionRecord(
            id=new_identifier(),
            kind=RecordKind.product_share,
            resource_id=resource_id,
            share_id=share_id or None,
            referral_code=referral_code or None,
            user_id=user_id or None,
            client_identifier=client_identifier or "",
            source_address=source_address or "",
            platform=platform,
            created_at=self.clock(),
            campaign_tags=tags,
            metadata={"resourceId": resource_id, "shareId": share_id or None},
        )
        self.store.create(record)

        logger.info(
            "[CLICK] Captured click",
            extra={"click_id": record.id, "resource_id": resource_id, "platform": platform.value},
        )
        return record

    def get_click(self, click_id: str) -> AttributionRecord:
        """Return a record by id (click or share link).

        RAISES:
            NotFoundError: absent, or older than the retention window
        """
        record = self._lookup(click_id)
        if record is None:
            raise NotFoundError("Click not found or expired", identifier=click_id)
        return record

    def get_referrer(self, record_id: str) -> AttributionRecord:
        """Post-install lookup used by the app to recover the click context."""
        record = self._lookup(record_id)
        if record is None:
            raise NotFoundError("Referral not found or expired", identifier=record_id)
        logger.info(f"[REFERRER] Referral data retrieved: {record_id}")
        return record

    def _lookup(self, record_id: str) -> Optional[AttributionRecord]:
        record = self.store.find_by_id(record_id)
        if record is None or self.is_expired(record):
            return None
        return record

    def is_expired(self, record: AttributionRecord) -> bool:
        return record.created_at < self.clock() - timedelta(days=self.retention_days)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self, resource_id: str) -> ProductStatistics:
        """
        Click statistics for one resource.

        NOTE:
            Expired clicks are excluded even before the sweep deletes them.
            `uniqueClients` is the number of distinct source addresses. It
            undercounts visitors sharing a NAT or carrier gateway.
        """
        clicks = self.store.filter(
            lambda r: r.kind == RecordKind.product_share
            and r.resource_id == resource_id
            and not self.is_expired(r)
        )

        counts = Counter(click.platform for click in clicks)
        by_platform = PlatformCounts(
            android=counts[Platform.android.value],
            ios=counts[Platform.ios.value],
            web=counts[Platform.web.value],
        )

        recent = sorted(clicks, key=lambda r: r.created_at, reverse=True)[:RECENT_CLICKS_LIMIT]

        return ProductStatistics(
            productId=resource_id,
            totalClicks=len(clicks),
            uniqueClients=len({click.source_address for click in clicks}),
            byPlatform=by_platform,
            recentClicks=[click.to_json() for click in recent],
        )

    def get_overview(self) -> Dict[str, Any]:
        """Store-wide counts for the debug endpoint."""
        records = self.store.all()
        day_ago = self.clock() - timedelta(days=1)

        overview = {"android": 0, "ios": 0, "other": 0}
        for record in records:
            platform = detect_platform(record.client_identifier)
            if platform == Platform.web:
                overview["other"] += 1
            else:
                overview[platform.value] += 1

        return {
            "total": len(records),
            "byPlatform": overview,
            "recent24h": sum(1 for record in records if record.created_at >= day_ago),
        }
