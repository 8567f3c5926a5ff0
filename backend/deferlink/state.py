"""
Application State
=================

Service instances that live for the lifetime of one FastAPI application.

WHY this exists:
- The referral store owns the single-writer lock, so exactly one instance
  must serve every request and the background sweep
- Rate limit windows must persist across requests
- Tests build isolated applications (own store file, own limiter) without
  touching module-level globals

WHAT it stores (AppServices):
- settings: the Settings the services were built from
- store: ReferralStore at DB_PATH
- attribution / resolver / probes / metadata: request-path services
- limiter: in-memory limiter, or Redis-backed when REDIS_URL is set
- scheduler: background expiry sweep + limiter cleanup

WHERE it's used:
- deferlink/main.py: `build_services()` in `create_app()`, attached to `app.state.services`
- deferlink/deps.py: request dependencies read from `app.state.services`
- deferlink/middleware.py: RateLimitMiddleware uses `limiter`
"""

import logging
from dataclasses import dataclass
from typing import Union

from redis import Redis

from .deps import Settings
from .services.app_open_probe import AppOpenProbeFactory
from .services.attribution_service import AttributionService
from .services.maintenance_scheduler import MaintenanceScheduler
from .services.metadata_service import ProductMetadataService
from .services.rate_limiter import RedisSlidingWindowRateLimiter, SlidingWindowRateLimiter
from .services.redirect_resolver import RedirectResolver
from .services.referral_store import ReferralStore

logger = logging.getLogger(__name__)

RateLimiter = Union[SlidingWindowRateLimiter, RedisSlidingWindowRateLimiter]


@dataclass
class AppServices:
    settings: Settings
    store: ReferralStore
    attribution: AttributionService
    resolver: RedirectResolver
    probes: AppOpenProbeFactory
    metadata: ProductMetadataService
    limiter: RateLimiter
    scheduler: MaintenanceScheduler


def build_limiter(settings: Settings) -> RateLimiter:
    if settings.REDIS_URL:
        redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("[STATE] Using Redis-backed rate limiter")
        return RedisSlidingWindowRateLimiter(
            redis_client,
            window_ms=settings.RATE_LIMIT_WINDOW_MS,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        )
    return SlidingWindowRateLimiter(
        window_ms=settings.RATE_LIMIT_WINDOW_MS,
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
    )


def build_services(settings: Settings) -> AppServices:
    """Construct every service for one application.

    Raises PersistenceError when the referral store cannot be initialized,
    which aborts application startup.
    """
    store = ReferralStore(settings.DB_PATH)
    resolver = RedirectResolver(
        android_store=settings.ANDROID_STORE,
        ios_store=settings.IOS_STORE,
        landing_page=settings.LANDING_PAGE,
        public_origin=settings.public_origin,
        app_scheme=settings.APP_SCHEME,
        app_package=settings.APP_PACKAGE,
    )
    limiter = build_limiter(settings)

    services = AppServices(
        settings=settings,
        store=store,
        attribution=AttributionService(
            store,
            public_origin=settings.public_origin,
            retention_days=settings.CLICK_EXPIRY_DAYS,
        ),
        resolver=resolver,
        probes=AppOpenProbeFactory(resolver),
        metadata=ProductMetadataService(
            site_name=settings.SITE_NAME,
            default_image=settings.DEFAULT_SHARE_IMAGE,
            public_origin=settings.public_origin,
        ),
        limiter=limiter,
        scheduler=MaintenanceScheduler(
            store,
            limiter,
            retention_days=settings.CLICK_EXPIRY_DAYS,
            sweep_interval_seconds=settings.CLEANUP_INTERVAL_HOURS * 60 * 60,
            limiter_cleanup_seconds=settings.RATE_LIMIT_CLEANUP_SECONDS,
        ),
    )
    logger.info(f"[STATE] Services initialized (store={store.path})")
    return services
