"""Settings and error taxonomy."""

from .config import (
    BackendConfig,
    BackendKind,
    EndpointConfig,
    PageOwner,
    ReferralSettings,
    PipelineOptions,
    WebhookSettings,
    MilestoneSettings,
    TrackerSettings,
    SettingsManager,
    UpdatePolicy,
    is_placeholder,
)
from .errors import (
    TrackingError,
    ConfigurationAbsent,
    TransportFailure,
    ValidationRejected,
    StorageUnavailable,
)

__all__ = [
    "BackendConfig",
    "BackendKind",
    "EndpointConfig",
    "PageOwner",
    "ReferralSettings",
    "PipelineOptions",
    "WebhookSettings",
    "MilestoneSettings",
    "TrackerSettings",
    "SettingsManager",
    "UpdatePolicy",
    "is_placeholder",
    "TrackingError",
    "ConfigurationAbsent",
    "TransportFailure",
    "ValidationRejected",
    "StorageUnavailable",
]
