"""Referral attribution data model."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..core.errors import ValidationRejected

USERNAME_PATTERN = re.compile(r'[A-Za-z0-9_]{3,20}')
INVITE_CODE_PATTERN = re.compile(r'[A-Za-z0-9]{5,8}')

UTM_FIELDS = ("source", "medium", "campaign", "term", "content")


def is_valid_username(value: Any) -> bool:
    return isinstance(value, str) and USERNAME_PATTERN.fullmatch(value) is not None


def is_valid_invite_code(value: Any) -> bool:
    return isinstance(value, str) and INVITE_CODE_PATTERN.fullmatch(value) is not None


def validate_username(value: Any) -> str:
    """Return ``value`` or raise ValidationRejected."""
    if not is_valid_username(value):
        raise ValidationRejected("referrer", str(value))
    return value


def validate_invite_code(value: Any) -> str:
    """Return ``value`` or raise ValidationRejected."""
    if not is_valid_invite_code(value):
        raise ValidationRejected("invite code", str(value))
    return value


class ReferralSource(Enum):
    """How the attribution was obtained."""
    DIRECT = "direct"
    URL_PARAM = "url_param"
    SHARED_LINK = "shared_link"
    COOKIE = "cookie"


@dataclass
class UTMParams:
    """Campaign parameters; they never gate attribution."""
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None

    def any_set(self) -> bool:
        return any(getattr(self, name) is not None for name in UTM_FIELDS)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in UTM_FIELDS}

    @classmethod
    def from_dict(cls, data: Any) -> "UTMParams":
        if not isinstance(data, dict):
            return cls()
        return cls(**{
            name: data.get(name) if isinstance(data.get(name), str) else None
            for name in UTM_FIELDS
        })


@dataclass
class ReferralState:
    """The resolved attribution for this visitor."""
    referrer: Optional[str] = None
    invite_code: Optional[str] = None
    source: ReferralSource = ReferralSource.DIRECT
    timestamp: str = ""
    landing_page: str = ""
    utm: UTMParams = field(default_factory=UTMParams)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'referrer': self.referrer,
            'inviteCode': self.invite_code,
            'source': self.source.value,
            'timestamp': self.timestamp,
            'landingPage': self.landing_page,
            'utm': self.utm.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferralState":
        try:
            source = ReferralSource(data.get('source', 'direct'))
        except ValueError:
            source = ReferralSource.DIRECT
        return cls(
            referrer=data.get('referrer'),
            invite_code=data.get('inviteCode'),
            source=source,
            timestamp=data.get('timestamp', ''),
            landing_page=data.get('landingPage', ''),
            utm=UTMParams.from_dict(data.get('utm')),
        )
