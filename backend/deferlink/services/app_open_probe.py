"""
App-Open Probe Protocol
=======================

Timed "try the native app, else fall back to the store" sequence executed
by the /open page in the browser.

STATES
------
    INIT → ATTEMPTING → APP_OPENED       (page became hidden: the app took over)
                      → STORE_FALLBACK   (fallback check fired, app never showed)

Both outcomes are terminal for an attempt. The on-page button re-enters
ATTEMPTING exactly like the automatic path.

TIMING
------
    +300 ms   automatic attempt after page load (lets the page paint)
    attempt   android: intent URL, once
              ios:     universal link, then custom scheme at +500 ms unless opened
              other:   custom scheme, once
    +1500 ms  fallback check: store redirect if not opened and the elapsed
              time since *that attempt* began, clamped to [0, 2000], is < 2000

Timers are never cancelled. A single `opened` flag gates them, and the
ceiling check suppresses fallbacks that fire late because the device was
suspended.

This module is the reference model of the protocol: the page script in
templates/open.html implements the same machine with the constants and
links exported by `client_config()`, and the tests drive this model with
explicit timestamps.
"""

import heapq
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..schemas import Platform
from .redirect_resolver import AppLinks, RedirectResolver

PAINT_DELAY_MS = 300
CUSTOM_SCHEME_RETRY_MS = 500
FALLBACK_DELAY_MS = 1500
FALLBACK_CEILING_MS = 2000


class ProbeState(str, Enum):
    init = "init"
    attempting = "attempting"
    app_opened = "app_opened"
    store_fallback = "store_fallback"


class ProbeAction(str, Enum):
    attempt = "attempt"
    custom_scheme = "custom_scheme"
    fallback = "fallback"


@dataclass(frozen=True)
class Navigation:
    """A navigation the page performs."""

    at_ms: float
    url: str
    reason: str


@dataclass(order=True)
class _Timer:
    due_ms: float
    seq: int
    action: ProbeAction = field(compare=False)
    attempt_started_ms: Optional[float] = field(compare=False, default=None)


def clamped_elapsed(started_ms: float, now_ms: float) -> float:
    """Elapsed time since `started_ms`, clamped to [0, FALLBACK_CEILING_MS]."""
    return min(max(now_ms - started_ms, 0), FALLBACK_CEILING_MS)


class AppOpenProbe:
    """
    Explicit state machine for one /open page.

    USAGE:
        probe = AppOpenProbe(Platform.ios, links, store_url)
        probe.load(now_ms=0)
        probe.advance(300)     # universal link
        probe.advance(800)     # custom scheme retry
        probe.advance(1800)    # store fallback
        assert probe.state == ProbeState.store_fallback
    """

    def __init__(self, platform: Union[Platform, str], links: AppLinks, store_url: str):
        try:
            self.platform = Platform(platform)
        except ValueError:
            self.platform = Platform.web
        self.links = links
        self.store_url = store_url

        self.state = ProbeState.init
        self.opened = False
        self.attempt_started_ms: Optional[float] = None
        self.navigations: List[Navigation] = []
        self._timers: List[_Timer] = []
        self._seq = 0

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def load(self, now_ms: float) -> None:
        """Page loaded: schedule the automatic attempt."""
        self._schedule(now_ms + PAINT_DELAY_MS, ProbeAction.attempt)

    def trigger(self, now_ms: float) -> List[Navigation]:
        """Manual attempt from the on-page button."""
        return self._attempt(now_ms)

    def on_visibility_hidden(self) -> None:
        """The page was hidden: the app claimed the navigation."""
        self.opened = True
        if self.state == ProbeState.attempting:
            self.state = ProbeState.app_opened

    def advance(self, now_ms: float) -> List[Navigation]:
        """Fire every timer due at or before `now_ms`, in due order.

        Timers fire *at* `now_ms`; passing a large jump simulates a device
        that was suspended while timers were pending.
        """
        fired: List[Navigation] = []
        while self._timers and self._timers[0].due_ms <= now_ms:
            timer = heapq.heappop(self._timers)
            fired.extend(self._fire(timer, now_ms))
        return fired

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _schedule(self, due_ms: float, action: ProbeAction, attempt_started_ms: Optional[float] = None) -> None:
        self._seq += 1
        heapq.heappush(self._timers, _Timer(due_ms, self._seq, action, attempt_started_ms))

    def _navigate(self, now_ms: float, url: str, reason: str) -> Navigation:
        navigation = Navigation(at_ms=now_ms, url=url, reason=reason)
        self.navigations.append(navigation)
        return navigation

    def _attempt(self, now_ms: float) -> List[Navigation]:
        self.state = ProbeState.attempting
        self.opened = False
        self.attempt_started_ms = now_ms

        if self.platform == Platform.android:
            fired = [self._navigate(now_ms, self.links.androidIntent, "android_intent")]
        elif self.platform == Platform.ios:
            fired = [self._navigate(now_ms, self.links.universalLink, "universal_link")]
            self._schedule(now_ms + CUSTOM_SCHEME_RETRY_MS, ProbeAction.custom_scheme, now_ms)
        else:
            fired = [self._navigate(now_ms, self.links.customScheme, "custom_scheme")]

        self._schedule(now_ms + FALLBACK_DELAY_MS, ProbeAction.fallback, now_ms)
        return fired

    def _fire(self, timer: _Timer, now_ms: float) -> List[Navigation]:
        if timer.action == ProbeAction.attempt:
            return self._attempt(now_ms)

        if self.opened:
            return []

        if timer.action == ProbeAction.custom_scheme:
            return [self._navigate(now_ms, self.links.customScheme, "custom_scheme")]

        if clamped_elapsed(timer.attempt_started_ms, now_ms) >= FALLBACK_CEILING_MS:
            return []
        self.state = ProbeState.store_fallback
        return [self._navigate(now_ms, self.store_url, "store_fallback")]

    def client_config(self) -> Dict[str, Any]:
        """Constants and targets for the page script."""
        return {
            "platform": self.platform.value,
            "links": self.links.to_dict(),
            "storeUrl": self.store_url,
            "paintDelayMs": PAINT_DELAY_MS,
            "customSchemeRetryMs": CUSTOM_SCHEME_RETRY_MS,
            "fallbackDelayMs": FALLBACK_DELAY_MS,
            "fallbackCeilingMs": FALLBACK_CEILING_MS,
        }


class AppOpenProbeFactory:
    """Builds probes for the /open page from the redirect resolver."""

    def __init__(self, resolver: RedirectResolver):
        self.resolver = resolver

    def create(
        self,
        platform: Union[Platform, str],
        click_id: Optional[str] = None,
        referral_code: Optional[str] = None,
        resource_id: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> AppOpenProbe:
        links = self.resolver.build_app_links(click_id, referral_code, resource_id, origin=origin)
        store_url = self.resolver.store_fallback(platform, click_id, referral_code, resource_id)
        return AppOpenProbe(platform, links, store_url)
