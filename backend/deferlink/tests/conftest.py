"""Pytest configuration for deferlink tests

WHAT: Provides shared fixtures for service-level and HTTP endpoint tests
WHY: Every test gets its own referral store file and a controllable clock
REFERENCES:
    - deferlink/main.py: FastAPI application factory
    - deferlink/state.py: Service construction
    - deferlink/deps.py: Settings
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment before deferlink.main builds its module-level app
os.environ.setdefault("DB_PATH", os.path.join(tempfile.mkdtemp(prefix="deferlink-"), "referrals.json"))
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DOMAIN", "links.example.com")

from deferlink.deps import Settings  # noqa: E402
from deferlink.main import create_app  # noqa: E402
from deferlink.services.redirect_resolver import RedirectResolver  # noqa: E402
from deferlink.services.referral_store import ReferralStore  # noqa: E402


ANDROID_UA = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Mobile Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)
DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

PLAY_STORE = "https://play.google.com/store/apps/details?id=com.example.app"
APP_STORE = "https://apps.apple.com/app/id123456"
LANDING = "https://example.com/"


class FakeClock:
    """Mutable UTC clock for time-dependent services."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def store_path(tmp_path) -> Path:
    return tmp_path / "data" / "referrals.json"


@pytest.fixture
def store(store_path) -> ReferralStore:
    return ReferralStore(str(store_path))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def resolver() -> RedirectResolver:
    return RedirectResolver(
        android_store=PLAY_STORE,
        ios_store=APP_STORE,
        landing_page=LANDING,
        public_origin="https://links.example.com",
        app_scheme="exampleapp",
        app_package="com.example.app",
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def settings(store_path) -> Settings:
    return Settings(
        DOMAIN="links.example.com",
        ENVIRONMENT="test",
        DB_PATH=str(store_path),
        ANDROID_STORE=PLAY_STORE,
        IOS_STORE=APP_STORE,
        LANDING_PAGE=LANDING,
        APP_SCHEME="exampleapp",
        APP_PACKAGE="com.example.app",
        RATE_LIMIT_WINDOW_MS=900_000,
        RATE_LIMIT_MAX_REQUESTS=100,
        REDIS_URL=None,
        SENTRY_DSN=None,
        ENABLE_DEBUG_ROUTES=True,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app) -> TestClient:
    """HTTP client that does not follow redirects."""
    return TestClient(app, follow_redirects=False)
