"""Device classification from the user agent."""

import re
from dataclasses import dataclass
from typing import Dict, Optional

_TABLET = re.compile(r'iPad|Android(?!.*Mobile)', re.IGNORECASE)
_MOBILE = re.compile(r'Mobile|Android|iPhone|iPad', re.IGNORECASE)


@dataclass
class DeviceInfo:
    """What the visitor is browsing with."""
    device_type: str = "desktop"
    user_agent: str = ""
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    language: str = "en"

    def to_fields(self) -> Dict:
        return {
            'deviceType': self.device_type,
            'userAgent': self.user_agent,
            'screenWidth': self.screen_width,
            'screenHeight': self.screen_height,
            'language': self.language,
        }


def classify_user_agent(user_agent: str) -> str:
    if _TABLET.search(user_agent or ""):
        return "tablet"
    if _MOBILE.search(user_agent or ""):
        return "mobile"
    return "desktop"


def detect_device(
    user_agent: str = "",
    screen_width: Optional[int] = None,
    screen_height: Optional[int] = None,
    language: Optional[str] = None,
) -> DeviceInfo:
    return DeviceInfo(
        device_type=classify_user_agent(user_agent),
        user_agent=user_agent or "",
        screen_width=screen_width,
        screen_height=screen_height,
        language=language or "en",
    )
