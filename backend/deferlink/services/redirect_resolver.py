"""Redirect strategy resolver.

WHAT:
    Decides where a captured click goes next, per platform:
    - android: Play Store listing with an install-referrer payload
    - ios: this server's /open probe page carrying the click identity
    - web: the marketing landing page, no payload

    Also builds the native-app link set (custom scheme, Android intent,
    universal link) embedded into the probe page.

WHY:
    Android hands the `referrer` query value to the app after install
    (Install Referrer API), so the click identity can ride along through
    the store. iOS has no equivalent, so the state must round-trip through
    a page the app can later query.

ENCODING:
    The referrer payload is `click_id%3D<v>%26ref%3D<v>%26id%3D<v>`: the
    `=` and `&` separators are pre-encoded, then the whole value is
    form-encoded again as a normal query value. After the store decodes
    the query once, the app receives `click_id%3D...` and decodes it into
    key/value pairs.

Pure: no I/O, no clock.
"""

from dataclasses import asdict, dataclass
from typing import Dict, Optional, Union
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from ..schemas import Platform

# Characters left alone by JavaScript's encodeURIComponent
_URI_COMPONENT_SAFE = "-_.!~*'()"


def encode_uri_component(value: str) -> str:
    return quote(str(value), safe=_URI_COMPONENT_SAFE)


def build_referrer_payload(
    click_id: str,
    referral_code: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> str:
    """Build the pre-encoded install-referrer value (before query encoding)."""
    pairs = [("click_id", click_id)]
    if referral_code:
        pairs.append(("ref", referral_code))
    if resource_id:
        pairs.append(("id", resource_id))
    return "%26".join(f"{key}%3D{encode_uri_component(value)}" for key, value in pairs)


def _with_query_param(url: str, key: str, value: str) -> str:
    """Set one query parameter on `url`, keeping the others."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != key]
    query.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass(frozen=True)
class AppLinks:
    """Ways to hand a navigation to the native app."""

    customScheme: str
    androidIntent: str
    universalLink: str
    appLink: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class RedirectResolver:
    """
    Platform-aware redirect target computation.

    USAGE:
        resolver = RedirectResolver(
            android_store=settings.ANDROID_STORE,
            ios_store=settings.IOS_STORE,
            landing_page=settings.LANDING_PAGE,
            public_origin=settings.public_origin,
            app_scheme=settings.APP_SCHEME,
            app_package=settings.APP_PACKAGE,
        )
        url = resolver.resolve(Platform.android, click_id, referral_code="abc", resource_id="P1")
    """

    def __init__(
        self,
        android_store: str,
        ios_store: str,
        landing_page: str,
        public_origin: str,
        app_scheme: str,
        app_package: str,
    ):
        self.android_store = android_store
        self.ios_store = ios_store
        self.landing_page = landing_page
        self.public_origin = public_origin.rstrip("/")
        self.app_scheme = app_scheme
        self.app_package = app_package

    def resolve(
        self,
        platform: Union[Platform, str],
        click_id: str,
        referral_code: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> str:
        """Return the next navigation target for a captured click.

        RAISES:
            ValueError: platform is missing (caller bug, not a runtime condition)
        """
        if platform is None:
            raise ValueError("platform is required to resolve a redirect")

        if platform == Platform.android:
            return self.android_store_url(click_id, referral_code, resource_id)
        if platform == Platform.ios:
            return self.ios_probe_url(click_id, referral_code, resource_id)
        return self.landing_page

    def android_store_url(
        self,
        click_id: str,
        referral_code: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> str:
        payload = build_referrer_payload(click_id, referral_code, resource_id)
        return _with_query_param(self.android_store, "referrer", payload)

    def ios_probe_url(
        self,
        click_id: str,
        referral_code: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> str:
        params = {"clickId": click_id}
        if referral_code:
            params["ref"] = referral_code
        if resource_id:
            params["id"] = resource_id
        return f"{self.public_origin}/open?{urlencode(params)}"

    def store_fallback(
        self,
        platform: Union[Platform, str],
        click_id: Optional[str] = None,
        referral_code: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> str:
        """Where the probe page sends the user when the app does not open.

        Android keeps the install-referrer payload so a fresh install can
        still recover the click.
        """
        if platform == Platform.android:
            if click_id:
                return self.android_store_url(click_id, referral_code, resource_id)
            return self.android_store
        if platform == Platform.ios:
            return self.ios_store
        return self.landing_page

    def build_app_links(
        self,
        click_id: Optional[str] = None,
        referral_code: Optional[str] = None,
        resource_id: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> AppLinks:
        """Build the native-app links for a click.

        Deep link path is `product/<id>`, or `invite` when no resource is
        attached. The query carries `clickId` and `ref`.
        """
        path = f"product/{quote(resource_id, safe=':')}" if resource_id else "invite"

        params = {}
        if click_id:
            params["clickId"] = click_id
        if referral_code:
            params["ref"] = referral_code
        query = urlencode(params)
        suffix = f"?{query}" if query else ""

        origin = (origin or self.public_origin).rstrip("/")
        universal = f"{origin}/{path}{suffix}"

        return AppLinks(
            customScheme=f"{self.app_scheme}://{path}{suffix}",
            androidIntent=(
                f"intent://{path}?{query}"
                f"#Intent;scheme={self.app_scheme};package={self.app_package};end"
            ),
            universalLink=universal,
            appLink=universal,
        )
