"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional

from fastapi import Request
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.app_open_probe import AppOpenProbeFactory
from .services.attribution_service import AttributionService
from .services.metadata_service import ProductMetadataService
from .services.redirect_resolver import RedirectResolver
from .services.referral_store import ReferralStore


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    HOST: str = "0.0.0.0"
    PORT: int = 8080
    ENVIRONMENT: str = "development"
    # Public host name without protocol, e.g. "links.example.com"
    DOMAIN: str = "localhost:8080"

    # Store listings and landing page
    ANDROID_STORE: str = "https://play.google.com/store/apps/details?id=com.nfc.faix"
    IOS_STORE: str = "https://apps.apple.com/us/app/fai-x/id6737755560"
    LANDING_PAGE: str = "https://fai-x.com/"

    # Native app identity
    APP_SCHEME: str = "fai-x"
    APP_PACKAGE: str = "com.82faix.nfc"

    # Referral store
    DB_PATH: str = "./data/referrals.json"
    CLICK_EXPIRY_DAYS: int = 30
    CLEANUP_INTERVAL_HOURS: float = 24

    # Admission control
    RATE_LIMIT_WINDOW_MS: int = 900_000  # 15 minutes
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_CLEANUP_SECONDS: float = 300
    # When set, rate limit windows live in Redis instead of process memory
    REDIS_URL: Optional[str] = None

    BACKEND_CORS_ORIGINS: str = "*"
    ENABLE_DEBUG_ROUTES: bool = False

    # Social preview defaults for the share interstitial
    SITE_NAME: str = "FAI-X - Smart Closet"
    DEFAULT_SHARE_IMAGE: str = "https://app-faix.vercel.app/images/logo.png"

    SENTRY_DSN: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def public_origin(self) -> str:
        return f"https://{self.DOMAIN}"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# =============================================================================
# SERVICE DEPENDENCIES
# =============================================================================
# Service instances are built once per application (see deferlink/state.py)
# and attached to `app.state.services`.


def get_app_settings(request: Request) -> Settings:
    return request.app.state.services.settings


def get_store(request: Request) -> ReferralStore:
    return request.app.state.services.store


def get_attribution_service(request: Request) -> AttributionService:
    return request.app.state.services.attribution


def get_redirect_resolver(request: Request) -> RedirectResolver:
    return request.app.state.services.resolver


def get_probe_factory(request: Request) -> AppOpenProbeFactory:
    return request.app.state.services.probes


def get_metadata_service(request: Request) -> ProductMetadataService:
    return request.app.state.services.metadata
