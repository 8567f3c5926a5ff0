"""Product sharing API (rate limited, under /api).

WHAT:
    - POST /api/product/generate-share-link
    - GET  /api/product/stats/{productId}
    - GET  /api/product/click/{clickId}
    - POST /api/product/update-metadata

All responses use the `{success, data}` envelope; errors are rendered by
the DeepLinkError handler in deferlink/main.py.
"""

import logging

from fastapi import APIRouter, Depends

from ..deps import get_attribution_service, get_metadata_service
from ..errors import ValidationError
from ..schemas import GenerateShareLinkRequest, UpdateMetadataRequest
from ..services.attribution_service import AttributionService
from ..services.metadata_service import ProductMetadataService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/product", tags=["Product"])


@router.post("/generate-share-link")
def generate_share_link(
    payload: GenerateShareLinkRequest,
    attribution: AttributionService = Depends(get_attribution_service),
):
    share = attribution.generate_share_link(
        payload.productId,
        referral_code=payload.ref,
        user_id=payload.userId,
        metadata=payload.metadata,
    )
    return {"success": True, "data": share.model_dump(mode="json")}


@router.get("/stats/{productId}")
def product_stats(productId: str, attribution: AttributionService = Depends(get_attribution_service)):
    stats = attribution.get_statistics(productId)
    return {"success": True, "data": stats.model_dump(mode="json")}


@router.get("/click/{clickId}")
def click_data(clickId: str, attribution: AttributionService = Depends(get_attribution_service)):
    record = attribution.get_click(clickId)
    return {"success": True, "data": record.to_json()}


@router.post("/update-metadata")
def update_metadata(
    payload: UpdateMetadataRequest,
    metadata_service: ProductMetadataService = Depends(get_metadata_service),
):
    """Override preview metadata for a resource (in-process only)."""
    if not payload.productId:
        raise ValidationError("productId is required", field="productId")

    metadata = metadata_service.update_metadata(
        payload.productId,
        title=payload.title,
        description=payload.description,
        image=payload.image,
    )
    return {
        "success": True,
        "data": metadata.model_dump(mode="json"),
        "message": "Metadata updated (in-memory only, reset on restart)",
    }
