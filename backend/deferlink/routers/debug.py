"""Debug routes. Only mounted when ENABLE_DEBUG_ROUTES is true."""

from fastapi import APIRouter, Depends

from ..deps import get_attribution_service, get_store
from ..services.attribution_service import AttributionService
from ..services.referral_store import ReferralStore

router = APIRouter(prefix="/debug", tags=["Debug"])


@router.get("/referrals")
def list_referrals(store: ReferralStore = Depends(get_store)):
    records = store.all()
    return {
        "success": True,
        "count": len(records),
        "data": [record.to_json() for record in records],
    }


@router.get("/stats")
def referral_stats(attribution: AttributionService = Depends(get_attribution_service)):
    return {"success": True, "data": attribution.get_overview()}
