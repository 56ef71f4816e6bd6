"""Outbound webhooks for registrations, referrals, milestones and custom events."""

import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from ..core.config import PageOwner, WebhookSettings, is_placeholder
from ..core.errors import TransportFailure
from .retry import RetryPolicy, RetryTask
from .scheduler import Scheduler, ThreadScheduler

logger = logging.getLogger(__name__)


class WebhookEvent(Enum):
    """Event names carried in the ``event`` field and ``X-Event-Type`` header."""

    NEW_REGISTRATION = "new_registration"
    REFERRAL_SUCCESS = "referral_success"
    MILESTONE_ACHIEVED = "milestone_achieved"
    HIGH_ENGAGEMENT = "high_engagement"
    CUSTOM_EVENT = "custom_event"
    WEBHOOK_TEST = "webhook_test"


@dataclass
class WebhookDelivery:
    """Record of a webhook delivery."""

    endpoint: str
    event: str
    payload: Dict[str, Any]
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def delivered(self) -> bool:
        return self.delivered_at is not None


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Compact JSON exactly as it goes on the wire."""
    return json.dumps(payload, separators=(',', ':'), ensure_ascii=False)


def generate_signature(body: str, secret: Optional[str]) -> str:
    """Base64 of the serialized body followed by the secret.

    This is an encoding, not a keyed hash: anyone holding the header can
    recover the secret.  Receivers should treat it as an integrity hint only.
    """
    if not secret:
        return ""
    return base64.b64encode((body + secret).encode('utf-8')).decode('ascii')


class WebhookDispatcher:
    """Builds event payloads and delivers them with retry."""

    def __init__(
        self,
        settings: WebhookSettings,
        page_owner: Optional[PageOwner] = None,
        scheduler: Optional[Scheduler] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.page_owner = page_owner or PageOwner()
        self.scheduler = scheduler or ThreadScheduler()
        self.session = session or requests.Session()
        self.delivery_history: List[WebhookDelivery] = []

        # ``retries`` counts re-sends after the first attempt
        self.policy = RetryPolicy(max_attempts=settings.retries + 1, base_delay=1.0)

    def _timestamp(self) -> str:
        return self.scheduler.utcnow().isoformat()

    def _page_owner_block(self) -> Dict[str, str]:
        return {
            "username": self.page_owner.username,
            "invite_code": self.page_owner.invite_code,
        }

    def send(self, endpoint: Optional[str], payload: Dict[str, Any]) -> Optional[WebhookDelivery]:
        """POST ``payload`` to ``endpoint``; returns the delivery, or None when skipped."""
        if not self.settings.enabled:
            logger.debug("Webhooks disabled, skipping")
            return None
        if is_placeholder(endpoint):
            logger.debug(f"Webhook endpoint not configured: {endpoint!r}")
            return None

        event = payload.get("event", "")
        body = serialize_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "X-Event-Signature": generate_signature(body, self.settings.secret),
            "X-Event-Type": event,
            "X-Event-Timestamp": self._timestamp(),
        }

        delivery = WebhookDelivery(endpoint=endpoint, event=event, payload=payload)
        self.delivery_history.append(delivery)

        def deliver():
            delivery.attempts += 1
            try:
                response = self.session.post(
                    endpoint,
                    data=body.encode('utf-8'),
                    headers=headers,
                    timeout=self.settings.timeout,
                )
            except requests.RequestException as e:
                delivery.error = str(e)
                raise TransportFailure(f"Webhook {event} failed: {e}") from e

            delivery.status_code = response.status_code
            if not response.ok:
                delivery.error = f"HTTP {response.status_code}"
                raise TransportFailure(
                    f"Webhook {event} rejected: {response.status_code}",
                    status_code=response.status_code,
                )

            delivery.error = None
            delivery.delivered_at = datetime.now(timezone.utc)
            logger.info(f"Webhook delivered: {event} -> {endpoint} (status: {response.status_code})")

        RetryTask(deliver, self.policy, self.scheduler, name=f"webhook {event}").start()
        return delivery

    # ------------------------------------------------------------------
    # Event builders
    # ------------------------------------------------------------------

    def on_registration(self, visitor_data: Dict[str, Any]) -> Optional[WebhookDelivery]:
        payload = {
            "event": WebhookEvent.NEW_REGISTRATION.value,
            "visitor": {
                "id": visitor_data.get("visitorId"),
                "session_id": visitor_data.get("sessionId"),
                "device_type": visitor_data.get("deviceType"),
                "referral_source": visitor_data.get("referralSource"),
                "utm_source": visitor_data.get("utmSource"),
                "utm_campaign": visitor_data.get("utmCampaign"),
            },
            "page_owner": self._page_owner_block(),
            "timestamp": self._timestamp(),
        }
        return self.send(self.settings.endpoint("registration"), payload)

    def on_referral_success(self, referrer_data: Dict[str, Any]) -> Optional[WebhookDelivery]:
        payload = {
            "event": WebhookEvent.REFERRAL_SUCCESS.value,
            "referrer": {
                "username": referrer_data.get("username"),
                "code": referrer_data.get("code"),
            },
            "referred_visitor": {
                "id": referrer_data.get("visitorId"),
                "registered": referrer_data.get("registered"),
            },
            "page_owner": self._page_owner_block(),
            "timestamp": self._timestamp(),
        }
        return self.send(self.settings.endpoint("referral"), payload)

    def on_milestone(
        self,
        milestone_type: str,
        value: int,
        achieved_at: str,
        stats: Optional[Dict[str, Any]] = None,
    ) -> Optional[WebhookDelivery]:
        payload = {
            "event": WebhookEvent.MILESTONE_ACHIEVED.value,
            "milestone": {
                "type": milestone_type,
                "value": value,
                "achieved_at": achieved_at,
            },
            "metadata": stats or {},
            "page_owner": self._page_owner_block(),
            "timestamp": self._timestamp(),
        }
        return self.send(self.settings.endpoint("milestone"), payload)

    def on_custom_event(self, event_type: str, event_data: Any) -> Optional[WebhookDelivery]:
        payload = {
            "event": WebhookEvent.CUSTOM_EVENT.value,
            "type": event_type,
            "data": event_data,
            "page_owner": self._page_owner_block(),
            "timestamp": self._timestamp(),
        }
        return self.send(self.settings.endpoint("custom"), payload)

    def on_high_engagement(self, engagement_data: Dict[str, Any]) -> Optional[WebhookDelivery]:
        payload = {
            "event": WebhookEvent.HIGH_ENGAGEMENT.value,
            "visitor": {
                "id": engagement_data.get("visitorId"),
                "time_on_page": engagement_data.get("timeOnPage"),
                "clicks": engagement_data.get("clicks"),
                "pages_viewed": engagement_data.get("pagesViewed"),
            },
            "page_owner": self._page_owner_block(),
            "timestamp": self._timestamp(),
        }
        return self.send(self.settings.endpoint("custom"), payload)

    def send_test(self, test_type: str = "test") -> Optional[WebhookDelivery]:
        """Send a ``webhook_test`` event to the custom endpoint."""
        payload = {
            "event": WebhookEvent.WEBHOOK_TEST.value,
            "type": test_type,
            "page_owner": self._page_owner_block(),
            "timestamp": self._timestamp(),
        }
        return self.send(self.settings.endpoint("custom"), payload)

    # ------------------------------------------------------------------
    # Pipeline integration
    # ------------------------------------------------------------------

    def handle_event(self, event_type: str, data: Dict[str, Any]) -> Optional[WebhookDelivery]:
        """Route a pipeline event to its webhook."""
        if event_type == "registration":
            return self.on_registration(data)
        if event_type == "referral_success":
            return self.on_referral_success(data)
        if event_type == "high_engagement":
            return self.on_high_engagement(data)
        return self.on_custom_event(event_type, data)

    def attach(self, pipeline):
        """Forward every event the pipeline announces."""
        pipeline.on_event("*", self.handle_event)
