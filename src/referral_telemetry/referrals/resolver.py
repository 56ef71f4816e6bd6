"""Referral attribution resolution.

Given the current URL and whatever was persisted on earlier visits, decide
exactly one ``ReferralState`` for this page load:

1. Query parameter names are matched case-insensitively.
2. A generic pass walks the referral parameters in priority order.  Each
   parameter fills at most one role (referrer or invite code); person-style
   parameters try the username role first, code-style parameters the
   invite-code role first.  A role filled by an earlier parameter is kept.
3. ``ref`` and ``from`` force the referrer, ``code`` forces the invite code;
   ``from`` also marks the visit as a shared link.
4. Any referral or UTM signal in the URL wins outright.  Otherwise the
   persisted state is used, and failing that the page's own defaults.

Values matching neither pattern are ignored.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

from ..core.config import PageOwner, ReferralSettings
from .models import (
    ReferralSource,
    ReferralState,
    UTMParams,
    is_valid_invite_code,
    is_valid_username,
)
from .persistence import AttributionPersistence, deploy_defaults

logger = logging.getLogger(__name__)

# Parameters whose value names a person rather than a code
PERSON_PARAMS = frozenset({"ref", "referrer", "from"})


@dataclass
class UrlSignals:
    """Referral candidates found in a single URL."""
    referrer: Optional[str] = None
    invite_code: Optional[str] = None
    source: ReferralSource = ReferralSource.URL_PARAM
    utm: UTMParams = field(default_factory=UTMParams)

    @property
    def has_signal(self) -> bool:
        return bool(self.referrer or self.invite_code or self.utm.any_set())


def parse_query_params(url: str) -> Dict[str, str]:
    """Query parameters with lower-cased names; later duplicates win."""
    if not url:
        return {}
    query = urlsplit(url).query if ('?' in url or '://' in url) else url
    params = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        params[key.lower()] = value
    return params


def extract_utm_params(params: Dict[str, str], utm_params: Optional[List[str]] = None) -> UTMParams:
    names = utm_params or ["utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"]
    values = {}
    for name in names:
        short_name = name[len("utm_"):] if name.startswith("utm_") else name
        values[short_name] = params.get(name) or None
    return UTMParams.from_dict(values)


def extract_referral_signals(params: Dict[str, str], valid_params: List[str]) -> UrlSignals:
    """Run the generic pass and the special-case overrides."""
    referrer = None
    invite_code = None

    for name in valid_params:
        value = params.get(name)
        if not value:
            continue

        if name in PERSON_PARAMS:
            if is_valid_username(value):
                referrer = referrer or value
            elif is_valid_invite_code(value):
                invite_code = invite_code or value
        else:
            if is_valid_invite_code(value):
                invite_code = invite_code or value
            elif is_valid_username(value):
                referrer = referrer or value

    source = ReferralSource.URL_PARAM

    ref = params.get("ref")
    if ref and is_valid_username(ref):
        referrer = ref
    code = params.get("code")
    if code and is_valid_invite_code(code):
        invite_code = code
    shared_from = params.get("from")
    if shared_from and is_valid_username(shared_from):
        referrer = shared_from
        source = ReferralSource.SHARED_LINK

    return UrlSignals(referrer=referrer, invite_code=invite_code, source=source)


class ReferralResolver:
    """Decide who gets credit for this visitor."""

    def __init__(
        self,
        settings: ReferralSettings,
        persistence: AttributionPersistence,
        page_owner: Optional[PageOwner] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.persistence = persistence
        self.page_owner = page_owner
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def read_url(self, url: str) -> UrlSignals:
        params = parse_query_params(url)
        signals = extract_referral_signals(params, self.settings.valid_params)
        signals.utm = extract_utm_params(params, self.settings.utm_params)
        return signals

    def resolve(self, url: str) -> ReferralState:
        """Resolve and persist the attribution for a page load at ``url``."""
        signals = self.read_url(url)
        default_referrer, default_invite_code = deploy_defaults(self.settings, self.page_owner)

        if signals.has_signal:
            state = ReferralState(
                referrer=signals.referrer or default_referrer,
                invite_code=signals.invite_code or default_invite_code,
                source=signals.source,
                timestamp=self.clock().isoformat(),
                landing_page=url,
                utm=signals.utm,
            )
            self.persistence.save(state)
            logger.debug(f"Attribution from URL: {state.referrer}/{state.invite_code}")
            return state

        stored = self.persistence.load()
        if stored is not None:
            logger.debug(f"Attribution from storage ({stored.source.value})")
            return stored

        state = ReferralState(
            referrer=default_referrer,
            invite_code=default_invite_code,
            source=ReferralSource.DIRECT,
            timestamp=self.clock().isoformat(),
            landing_page=url,
        )
        self.persistence.save(state)
        return state
