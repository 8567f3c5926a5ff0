"""
Sentry Error Tracking
=====================

Centralized error tracking for the deep link service.

Related files:
- deferlink/main.py: Initializes Sentry when the app is created
- deferlink/services/referral_store.py: Reports swallowed write failures
- deferlink/services/maintenance_scheduler.py: Reports failed background runs

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier (set via CI/CD)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

logger = logging.getLogger(__name__)

_initialized = False


def get_sentry_dsn() -> Optional[str]:
    """Return the Sentry DSN from the environment, or None."""
    return os.environ.get("SENTRY_DSN") or None


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize the Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    global _initialized

    dsn = dsn or get_sentry_dsn()
    if not dsn:
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Click records carry IP addresses and user agents
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def is_enabled() -> bool:
    return _initialized


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception to Sentry.

    Use this for failures that are absorbed (best-effort persistence,
    background sweeps) but should still be visible in monitoring.

    Example:
        try:
            self._write_raw(entries)
        except OSError as e:
            capture_exception(e, extra={"operation": "store_write"})
    """
    if not _initialized:
        logger.debug(f"[SENTRY] Disabled, not reporting: {exception!r}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
