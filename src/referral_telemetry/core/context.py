"""Per-page-session state shared by the tracking components."""

from dataclasses import dataclass, field
from typing import Optional

from ..automation.scheduler import Scheduler
from ..referrals.models import ReferralState
from ..tracking.device import DeviceInfo
from ..tracking.identity import VisitorIdentity
from .config import TrackerSettings


@dataclass
class TrackingContext:
    """Built once when a page session starts and handed to every component."""

    settings: TrackerSettings
    identity: VisitorIdentity
    scheduler: Scheduler
    device: DeviceInfo = field(default_factory=DeviceInfo)
    page_url: str = ""
    referrer_url: str = ""
    referral: Optional[ReferralState] = None
    started_at: Optional[float] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = self.scheduler.now()

    def time_on_page(self) -> int:
        """Whole seconds since the session started."""
        return int(self.scheduler.now() - self.started_at)
