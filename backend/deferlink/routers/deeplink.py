"""Deep link entry points.

WHAT:
    Public, browser-facing routes that capture a click and send the visitor
    on to the app, the store, or the landing page:
    - GET /share            share link click, renders the preview interstitial
    - GET /s/{shareId}      short link, 302 to the long /share form
    - GET /invite           invite link click (resource "invite")
    - GET /open             app-open probe page
    - GET /product/{id}     universal/app link target when the app is not installed
    - GET /referrer/{id}    post-install lookup used by the app

WHY:
    Install stores drop query parameters, so the click context has to be
    stored here before the redirect and looked up again by the app.

REFERENCES:
    - deferlink/services/attribution_service.py
    - deferlink/services/redirect_resolver.py
    - deferlink/services/app_open_probe.py
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from ..deps import (
    get_attribution_service,
    get_metadata_service,
    get_probe_factory,
    get_redirect_resolver,
)
from ..errors import ValidationError
from ..services.app_open_probe import AppOpenProbeFactory
from ..services.attribution_service import AttributionService
from ..services.metadata_service import ProductMetadataService
from ..services.platform import detect_platform
from ..services.redirect_resolver import RedirectResolver

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter(tags=["Deep Links"])


def _client_identifier(request: Request) -> str:
    return request.headers.get("user-agent", "")


def _source_address(request: Request) -> str:
    return request.client.host if request.client else ""


@router.get("/share", response_class=HTMLResponse)
def share(
    request: Request,
    id: Optional[str] = Query(None, description="Shared resource id"),
    shareId: Optional[str] = None,
    ref: Optional[str] = None,
    userId: Optional[str] = None,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    utm_campaign: Optional[str] = None,
    utm_content: Optional[str] = None,
    utm_term: Optional[str] = None,
    attribution: AttributionService = Depends(get_attribution_service),
    resolver: RedirectResolver = Depends(get_redirect_resolver),
    metadata_service: ProductMetadataService = Depends(get_metadata_service),
):
    """Capture a share-link click and render the preview interstitial.

    Crawlers read the Open Graph tags; browsers follow the meta refresh /
    script redirect to the platform target.
    """
    if not id:
        raise ValidationError("Missing id parameter", field="id")

    client_identifier = _client_identifier(request)
    click = attribution.process_click(
        id,
        client_identifier=client_identifier,
        source_address=_source_address(request),
        share_id=shareId,
        referral_code=ref,
        user_id=userId,
        campaign_tags={
            "utm_source": utm_source,
            "utm_medium": utm_medium,
            "utm_campaign": utm_campaign,
            "utm_content": utm_content,
            "utm_term": utm_term,
        },
    )
    redirect_url = resolver.resolve(click.platform, click.id, referral_code=ref, resource_id=id)
    logger.info(f"[SHARE] Redirecting {click.platform} visitor", extra={"click_id": click.id})

    return templates.TemplateResponse(
        request,
        "share.html",
        {
            "meta": metadata_service.get_product_metadata(id),
            "redirect_url": redirect_url,
        },
    )


@router.get("/s/{shareId}")
def short_link(shareId: str, attribution: AttributionService = Depends(get_attribution_service)):
    """Expand a short link. 404 JSON when unknown or expired."""
    return RedirectResponse(attribution.expand_short_link(shareId), status_code=302)


@router.get("/invite")
def invite(
    request: Request,
    ref: Optional[str] = None,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    utm_campaign: Optional[str] = None,
    attribution: AttributionService = Depends(get_attribution_service),
    resolver: RedirectResolver = Depends(get_redirect_resolver),
):
    click = attribution.process_click(
        "invite",
        client_identifier=_client_identifier(request),
        source_address=_source_address(request),
        referral_code=ref,
        campaign_tags={
            "utm_source": utm_source,
            "utm_medium": utm_medium,
            "utm_campaign": utm_campaign,
        },
    )
    redirect_url = resolver.resolve(click.platform, click.id, referral_code=ref)
    logger.info(f"[INVITE] Redirecting {click.platform} visitor", extra={"click_id": click.id})
    return RedirectResponse(redirect_url, status_code=302)


@router.get("/open", response_class=HTMLResponse)
def open_app(
    request: Request,
    clickId: Optional[str] = None,
    ref: Optional[str] = None,
    id: Optional[str] = None,
    probes: AppOpenProbeFactory = Depends(get_probe_factory),
):
    """Render the app-open probe page.

    The page script runs the probe state machine with the links and timing
    constants from `AppOpenProbe.client_config()`.
    """
    platform = detect_platform(_client_identifier(request))
    probe = probes.create(platform, click_id=clickId, referral_code=ref, resource_id=id)
    return templates.TemplateResponse(
        request,
        "open.html",
        {"probe": probe.client_config(), "resource_id": id},
    )


@router.get("/product/{productId}")
def product_link(
    request: Request,
    productId: str,
    clickId: Optional[str] = None,
    ref: Optional[str] = None,
    attribution: AttributionService = Depends(get_attribution_service),
):
    """Universal/app link target reached when the app is not installed.

    Captures a click unless one is already attached, then hands over to
    the probe page.
    """
    click_id = clickId
    if not click_id:
        click = attribution.process_click(
            productId,
            client_identifier=_client_identifier(request),
            source_address=_source_address(request),
            referral_code=ref,
        )
        click_id = click.id

    params = {"clickId": click_id, "id": productId}
    if ref:
        params["ref"] = ref
    return RedirectResponse(f"/open?{urlencode(params)}", status_code=302)


@router.get("/referrer/{id}")
def referrer(id: str, attribution: AttributionService = Depends(get_attribution_service)):
    """Return the stored click/share context for the app after install."""
    record = attribution.get_referrer(id)
    return {"success": True, "data": record.to_json()}
