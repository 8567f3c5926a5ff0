"""
Telemetry Module
================

Error tracking for the deep link service.

Components:
- sentry.py: Error tracking (Sentry)

Usage:
    from deferlink.telemetry import init_sentry, capture_exception

    init_sentry()
    capture_exception(exc, extra={"operation": "expiry_sweep"})
"""

from deferlink.telemetry.sentry import (
    capture_exception,
    init_sentry,
    is_enabled,
)

__all__ = ["init_sentry", "capture_exception", "is_enabled"]
