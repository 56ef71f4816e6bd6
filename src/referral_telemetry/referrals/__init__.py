"""Referral attribution: resolution, persistence and link propagation."""

from .models import ReferralState, ReferralSource, UTMParams
from .persistence import AttributionPersistence
from .resolver import ReferralResolver
from .links import LinkRewriter

__all__ = [
    'ReferralState',
    'ReferralSource',
    'UTMParams',
    'AttributionPersistence',
    'ReferralResolver',
    'LinkRewriter',
]
