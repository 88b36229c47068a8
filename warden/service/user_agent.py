from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UserAgentInfo:
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None


def _device_type(ua: str) -> str:
    if "ipad" in ua or "tablet" in ua:
        return "Tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "Mobile"
    return "Desktop"


def _browser(ua: str) -> str:
    if "opr/" in ua or "opera" in ua:
        return "Opera"
    if "edg" in ua:
        return "Edge"
    if "chrome" in ua or "crios" in ua:
        return "Chrome"
    if "firefox" in ua or "fxios" in ua:
        return "Firefox"
    if "safari" in ua:
        return "Safari"
    return "Unknown"


def _os(ua: str) -> str:
    if "windows" in ua:
        return "Windows"
    if "iphone" in ua or "ipad" in ua:
        return "iOS"
    if "mac" in ua:
        return "macOS"
    if "android" in ua:
        return "Android"
    if "linux" in ua:
        return "Linux"
    return "Unknown"


def parse_user_agent(user_agent: Optional[str]) -> UserAgentInfo:
    """Coarse device/browser/OS classification for audit records."""
    if user_agent is None:
        return UserAgentInfo()
    ua = user_agent.lower()
    return UserAgentInfo(device_type=_device_type(ua), browser=_browser(ua), os=_os(ua))
