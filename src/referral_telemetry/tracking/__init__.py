"""Visitor identity and analytics event delivery."""

from .identity import IdentityStore, VisitorIdentity
from .device import DeviceInfo, detect_device
from .backends import BACKENDS, BackendAdapter, get_backend
from .beacon import BeaconTransport, RequestsBeacon
from .pipeline import EventPipeline, EventType
from .session import PageSession

__all__ = [
    'IdentityStore',
    'VisitorIdentity',
    'DeviceInfo',
    'detect_device',
    'BACKENDS',
    'BackendAdapter',
    'get_backend',
    'BeaconTransport',
    'RequestsBeacon',
    'EventPipeline',
    'EventType',
    'PageSession',
]
