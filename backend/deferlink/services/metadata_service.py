"""Product metadata service.

WHAT:
    Social preview metadata (Open Graph / Twitter card fields) for shared
    resources, rendered into the /share interstitial.

WHY:
    Chat apps and social networks fetch the share URL to build a preview.
    Without per-resource titles every shared link looks the same.

HOW:
    Defaults are derived from the resource id. `update_metadata()` stores an
    in-process override per resource; overrides are lost on restart.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import urlencode

from ..schemas import ProductMetadata

logger = logging.getLogger(__name__)


class ProductMetadataService:
    """Resolves preview metadata for a resource id."""

    def __init__(self, site_name: str, default_image: str, public_origin: str):
        self.site_name = site_name
        self.default_image = default_image
        self.public_origin = public_origin.rstrip("/")
        self._overrides: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def _share_url(self, resource_id: str) -> str:
        return f"{self.public_origin}/share?{urlencode({'id': resource_id})}"

    def get_product_metadata(self, resource_id: str) -> ProductMetadata:
        metadata = ProductMetadata(
            productId=resource_id,
            title=f"Closet Item #{resource_id} | FAI-X",
            description=(
                f"View details for item {resource_id} in my FAI-X closet. "
                "See photos, tags, and outfit ideas!"
            ),
            image=self.default_image,
            url=self._share_url(resource_id),
            siteName=self.site_name,
        )

        with self._lock:
            override = dict(self._overrides.get(resource_id, {}))
        if override:
            metadata = metadata.model_copy(update=override)
        return metadata

    def update_metadata(
        self,
        resource_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        image: Optional[str] = None,
    ) -> ProductMetadata:
        """Store an override; fields left as None keep their current value."""
        changes = {
            key: value
            for key, value in (("title", title), ("description", description), ("image", image))
            if value
        }
        with self._lock:
            current = self._overrides.setdefault(resource_id, {})
            current.update(changes)
            current["updatedAt"] = datetime.now(timezone.utc)

        logger.info(f"[METADATA] Updated metadata for {resource_id}: {sorted(changes)}")
        return self.get_product_metadata(resource_id)
