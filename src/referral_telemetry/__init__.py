"""Referral attribution, visitor telemetry and webhook notifications."""

from .core.config import TrackerSettings, SettingsManager
from .tracking.session import PageSession

__version__ = "1.0.0"

__all__ = ["TrackerSettings", "SettingsManager", "PageSession", "__version__"]
