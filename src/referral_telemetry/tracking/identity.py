"""Durable visitor ids and per-page session ids."""

import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.errors import StorageUnavailable
from ..storage.stores import KeyValueStore

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _random_token(length: int = 9) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_visitor_id(clock: Callable[[], float] = time.time) -> str:
    return f"v_{_random_token()}{int(clock() * 1000)}"


def generate_session_id(clock: Callable[[], float] = time.time) -> str:
    return f"s_{_random_token()}{int(clock() * 1000)}"


@dataclass
class VisitorIdentity:
    """Who is visiting (durable) and which page load this is (ephemeral)."""
    visitor_id: str
    session_id: str


class IdentityStore:
    """Lazily creates the visitor id and keeps it in durable storage."""

    def __init__(
        self,
        store: KeyValueStore,
        key: str = "reftrack_visitor_id",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.key = key
        self.clock = clock
        self._visitor_id: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def visitor_id(self) -> str:
        with self._lock:
            if self._visitor_id is None:
                self._visitor_id = self._load_or_create()
            return self._visitor_id

    def _load_or_create(self) -> str:
        try:
            existing = self.store.get(self.key)
        except StorageUnavailable as e:
            logger.warning(f"Visitor id storage unavailable, using page-lifetime id: {e}")
            return generate_visitor_id(self.clock)

        if existing:
            return existing

        visitor_id = generate_visitor_id(self.clock)
        try:
            self.store.set(self.key, visitor_id)
        except StorageUnavailable as e:
            logger.warning(f"Could not persist visitor id: {e}")
        return visitor_id

    def new_identity(self) -> VisitorIdentity:
        """Identity for a new page load: same visitor, fresh session."""
        return VisitorIdentity(
            visitor_id=self.visitor_id,
            session_id=generate_session_id(self.clock),
        )
