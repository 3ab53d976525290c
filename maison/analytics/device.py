from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad", re.I)
_TABLET_RE = re.compile(r"Tablet|iPad", re.I)


@dataclass(frozen=True)
class DeviceInfo:
    type: str = "desktop"
    browser: str = "unknown"
    os: str = "unknown"
    screen_resolution: str = "unknown"


def device_type_from_width(width: Optional[int]) -> str:
    if width is None:
        return "desktop"
    if width < 768:
        return "mobile"
    if width < 1024:
        return "tablet"
    return "desktop"


def parse_user_agent(ua: Optional[str]) -> DeviceInfo:
    """
    Coarse browser / OS / device classification from a User-Agent string.
    Order matters: Edge and Opera ship "Chrome" in their UA too.
    """
    ua = ua or ""

    if _TABLET_RE.search(ua):
        device_type = "tablet"
    elif _MOBILE_RE.search(ua):
        device_type = "mobile"
    else:
        device_type = "desktop"

    if "Edg" in ua:
        browser = "Edge"
    elif "OPR" in ua or "Opera" in ua:
        browser = "Opera"
    elif "Chrome" in ua:
        browser = "Chrome"
    elif "Firefox" in ua:
        browser = "Firefox"
    elif "Safari" in ua:
        browser = "Safari"
    else:
        browser = "unknown"

    if "Windows" in ua:
        os_name = "Windows"
    elif "iPhone" in ua or "iPad" in ua or "iOS" in ua:
        os_name = "iOS"
    elif "Android" in ua:
        os_name = "Android"
    elif "Mac OS X" in ua or "Macintosh" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"
    else:
        os_name = "unknown"

    return DeviceInfo(type=device_type, browser=browser, os=os_name)


def resolve_device(
    user_agent: Optional[str],
    device_type: Optional[str] = None,
    browser: Optional[str] = None,
    os_name: Optional[str] = None,
    screen_resolution: Optional[str] = None,
) -> DeviceInfo:
    """Client-reported fields win, the User-Agent fills the gaps."""
    parsed = parse_user_agent(user_agent)
    return DeviceInfo(
        type=(device_type or parsed.type)[:20],
        browser=(browser or parsed.browser)[:50],
        os=(os_name or parsed.os)[:50],
        screen_resolution=(screen_resolution or "unknown")[:20],
    )
