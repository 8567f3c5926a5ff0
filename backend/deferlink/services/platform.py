"""Client platform detection from the User-Agent string."""

import re
from typing import Optional

from ..schemas import Platform

_ANDROID = re.compile(r"android", re.IGNORECASE)
_IOS = re.compile(r"iphone|ipad|ipod", re.IGNORECASE)


def detect_platform(client_identifier: Optional[str]) -> Platform:
    """Classify a User-Agent as android, ios or web.

    Android markers take precedence over iOS markers. Missing or empty
    input is web.
    """
    if not client_identifier:
        return Platform.web
    if _ANDROID.search(client_identifier):
        return Platform.android
    if _IOS.search(client_identifier):
        return Platform.ios
    return Platform.web
