"""Page-exit delivery.

A beacon is sent once while the page is being torn down: no retry, no
waiting on the response beyond a short timeout, and no error reaches the
caller.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class BeaconTransport(ABC):
    """Fire-once delivery that survives page teardown."""

    @abstractmethod
    def send(self, url: str, data: Dict[str, Any]) -> bool:
        """Queue ``data`` for ``url``; True when the send was attempted successfully."""
        pass


class RequestsBeacon(BeaconTransport):
    """Single short-timeout POST."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 2.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, url: str, data: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(
                url,
                data=json.dumps(data),
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.debug(f"Beacon to {url} failed: {e}")
            return False
        return response.ok
