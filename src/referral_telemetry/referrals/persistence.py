"""Dual-store persistence of resolved attribution.

The structured store keeps the full state as JSON.  The compact store keeps
``referrer|inviteCode`` plus a separate UTM entry, both expiring after the
configured cookie lifetime, so attribution survives a cleared primary store.
``AttributionPersistence`` writes to every store and reads from the first one
that has something.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..core.config import PageOwner, ReferralSettings
from ..core.errors import StorageUnavailable
from ..storage.stores import KeyValueStore
from .models import (
    ReferralSource,
    ReferralState,
    UTMParams,
    is_valid_invite_code,
    is_valid_username,
)

logger = logging.getLogger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReferralStore(ABC):
    """One place attribution can be kept."""

    name: str = "store"

    @abstractmethod
    def save(self, state: ReferralState):
        pass

    @abstractmethod
    def load(self) -> Optional[ReferralState]:
        pass


class StructuredReferralStore(ReferralStore):
    """Full attribution JSON under one key."""

    name = "structured"

    def __init__(self, store: KeyValueStore, key: str):
        self.store = store
        self.key = key

    def save(self, state: ReferralState):
        self.store.set(self.key, json.dumps(state.to_dict()))

    def load(self) -> Optional[ReferralState]:
        raw = self.store.get(self.key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug(f"Unreadable attribution under {self.key}")
            return None
        if not isinstance(data, dict):
            return None
        return ReferralState.from_dict(data)


class CompactReferralStore(ReferralStore):
    """Cookie-friendly ``referrer|inviteCode`` plus a UTM entry, with expiry."""

    name = "compact"

    def __init__(
        self,
        store: KeyValueStore,
        cookie_name: str,
        utm_cookie_name: str,
        ttl_seconds: float,
        default_referrer: Optional[str] = None,
        default_invite_code: Optional[str] = None,
        timestamp: Callable[[], str] = _utc_timestamp,
    ):
        self.store = store
        self.cookie_name = cookie_name
        self.utm_cookie_name = utm_cookie_name
        self.ttl_seconds = ttl_seconds
        self.default_referrer = default_referrer
        self.default_invite_code = default_invite_code
        self.timestamp = timestamp

    def save(self, state: ReferralState):
        value = f"{state.referrer or ''}|{state.invite_code or ''}"
        self.store.set(self.cookie_name, value, ttl=self.ttl_seconds)
        if state.utm.any_set():
            self.store.set(
                self.utm_cookie_name,
                json.dumps(state.utm.to_dict()),
                ttl=self.ttl_seconds,
            )
        else:
            self.store.delete(self.utm_cookie_name)

    def load(self) -> Optional[ReferralState]:
        raw = self.store.get(self.cookie_name)
        if not raw:
            return None

        referrer, _, invite_code = raw.partition('|')

        utm = UTMParams()
        utm_raw = self.store.get(self.utm_cookie_name)
        if utm_raw:
            try:
                utm = UTMParams.from_dict(json.loads(utm_raw))
            except ValueError:
                logger.debug("Could not parse UTM cookie")

        return ReferralState(
            referrer=referrer or self.default_referrer,
            invite_code=invite_code or self.default_invite_code,
            source=ReferralSource.COOKIE,
            timestamp=self.timestamp(),
            utm=utm,
        )


class AttributionPersistence:
    """Ordered chain of referral stores: write all, read first hit."""

    def __init__(
        self,
        stores: List[ReferralStore],
        default_referrer: Optional[str] = None,
        default_invite_code: Optional[str] = None,
    ):
        self.stores = stores
        self.default_referrer = default_referrer
        self.default_invite_code = default_invite_code

    @classmethod
    def build(
        cls,
        settings: ReferralSettings,
        primary: KeyValueStore,
        fallback: KeyValueStore,
        page_owner: Optional[PageOwner] = None,
        timestamp: Callable[[], str] = _utc_timestamp,
    ) -> "AttributionPersistence":
        default_referrer, default_invite_code = deploy_defaults(settings, page_owner)
        return cls(
            stores=[
                StructuredReferralStore(primary, settings.storage_key),
                CompactReferralStore(
                    fallback,
                    cookie_name=settings.cookie_name,
                    utm_cookie_name=settings.utm_cookie_name,
                    ttl_seconds=settings.cookie_ttl_seconds,
                    default_referrer=default_referrer,
                    default_invite_code=default_invite_code,
                    timestamp=timestamp,
                ),
            ],
            default_referrer=default_referrer,
            default_invite_code=default_invite_code,
        )

    def save(self, state: ReferralState) -> int:
        """Write to every store; returns how many accepted the write."""
        written = 0
        for store in self.stores:
            try:
                store.save(state)
                written += 1
            except StorageUnavailable as e:
                logger.warning(f"Attribution not saved to {store.name} store: {e}")
        return written

    def load(self) -> Optional[ReferralState]:
        for store in self.stores:
            try:
                state = store.load()
            except StorageUnavailable as e:
                logger.debug(f"{store.name} store unavailable: {e}")
                continue
            if state is not None:
                return self._enforce_patterns(state)
        return None

    def _enforce_patterns(self, state: ReferralState) -> ReferralState:
        # Stored values can be tampered with; never hand out an invalid one.
        if state.referrer is not None and not is_valid_username(state.referrer):
            state.referrer = self.default_referrer
        if state.invite_code is not None and not is_valid_invite_code(state.invite_code):
            state.invite_code = self.default_invite_code
        return state


def deploy_defaults(settings: ReferralSettings, page_owner: Optional[PageOwner] = None):
    """Referrer and invite code baked into the page, validated."""
    referrer = page_owner.username if page_owner else None
    if not is_valid_username(referrer):
        referrer = settings.default_referrer
    if not is_valid_username(referrer):
        referrer = None

    invite_code = page_owner.invite_code if page_owner else None
    if not is_valid_invite_code(invite_code):
        invite_code = settings.default_invite_code
    if not is_valid_invite_code(invite_code):
        invite_code = None

    return referrer, invite_code
