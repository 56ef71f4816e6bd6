"""One-time milestone notifications.

Every threshold at or below the current value of a category fires exactly
once.  Achievements are kept under ``{prefix}_milestones`` as a mapping of
``"{type}_{threshold}"`` to the ISO time it was reached, and are never
removed.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from ..core.config import MilestoneSettings
from ..core.errors import StorageUnavailable
from ..storage.stores import KeyValueStore
from .scheduler import Scheduler, ThreadScheduler, TimerHandle
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

# Milestone category -> key in the stats mapping
STAT_KEYS = {
    "visitors": "total_visitors",
    "registrations": "registrations",
    "referrals": "referrals",
}


def milestone_key(milestone_type: str, threshold: int) -> str:
    return f"{milestone_type}_{threshold}"


class MilestoneEngine:
    """Checks stats against thresholds and announces each crossing once."""

    def __init__(
        self,
        settings: MilestoneSettings,
        store: KeyValueStore,
        key: str = "reftrack_milestones",
        dispatcher: Optional[WebhookDispatcher] = None,
        stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.settings = settings
        self.store = store
        self.key = key
        self.dispatcher = dispatcher
        self.stats_provider = stats_provider
        self.scheduler = scheduler or ThreadScheduler()

        self._achieved: Optional[Dict[str, str]] = None
        self._lock = threading.Lock()
        self._timer: Optional[TimerHandle] = None

    @property
    def achieved(self) -> Dict[str, str]:
        """Copy of the achievement record."""
        with self._lock:
            return dict(self._load())

    def _load(self) -> Dict[str, str]:
        if self._achieved is not None:
            return self._achieved

        self._achieved = {}
        try:
            raw = self.store.get(self.key)
        except StorageUnavailable as e:
            logger.warning(f"Milestone record unavailable, tracking in memory: {e}")
            return self._achieved

        if raw:
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning("Milestone record unreadable, starting fresh")
                data = {}
            if isinstance(data, dict):
                self._achieved = {str(k): str(v) for k, v in data.items()}
        return self._achieved

    def _save(self):
        try:
            self.store.set(self.key, json.dumps(self._achieved))
        except StorageUnavailable as e:
            logger.warning(f"Could not persist milestone record: {e}")

    def check_milestone(
        self,
        milestone_type: str,
        value: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record ``value`` as reached for ``milestone_type`` and notify.

        Returns False when ``value`` is not a configured threshold or was
        already recorded.
        """
        if value not in self.settings.thresholds.get(milestone_type, []):
            return False

        key = milestone_key(milestone_type, value)
        with self._lock:
            achieved = self._load()
            if key in achieved:
                return False
            achieved_at = self.scheduler.utcnow().isoformat()
            achieved[key] = achieved_at
            self._save()

        logger.info(f"Milestone achieved: {key}")
        if self.dispatcher is not None:
            self.dispatcher.on_milestone(milestone_type, value, achieved_at, metadata)
        return True

    def check(self, stats: Dict[str, Any]) -> List[str]:
        """Fire every threshold at or below the current stats; returns the new keys."""
        fired = []
        for milestone_type, thresholds in self.settings.thresholds.items():
            current = stats.get(STAT_KEYS.get(milestone_type, milestone_type))
            if not current:
                continue
            for threshold in sorted(thresholds):
                if current >= threshold and self.check_milestone(milestone_type, threshold, stats):
                    fired.append(milestone_key(milestone_type, threshold))
        return fired

    def _poll(self):
        if self.stats_provider is None:
            return
        self.check(self.stats_provider())

    def start(self):
        """Poll the stats provider every ``check_interval`` seconds."""
        if self._timer is None:
            self._timer = self.scheduler.every(self.settings.check_interval, self._poll)

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
