"""Error taxonomy for attribution and telemetry delivery.

None of these are fatal to the page: callers catch them and degrade.
"""

from typing import Optional


class TrackingError(Exception):
    """Base class for all tracking errors."""


class ConfigurationAbsent(TrackingError):
    """An endpoint is empty or still holds an unresolved placeholder."""


class TransportFailure(TrackingError):
    """Network error, timeout or non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationRejected(TrackingError):
    """A referral or invite-code candidate failed its pattern."""

    def __init__(self, field_name: str, value: str):
        super().__init__(f"Invalid {field_name}: {value!r}")
        self.field_name = field_name
        self.value = value


class StorageUnavailable(TrackingError):
    """A store refused a read or write (disabled, quota, I/O)."""
