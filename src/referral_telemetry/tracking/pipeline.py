"""Visitor analytics event pipeline.

One page view creates one backend record; everything that happens afterwards
(time on page, clicks, registration) is a partial update of that record.
Updates are gated on the record id captured from the create response, so
the create is always issued first.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from ..automation.retry import RetryPolicy, RetryTask
from ..automation.scheduler import TimerHandle
from ..core.config import UpdatePolicy
from ..core.context import TrackingContext
from ..referrals.models import ReferralSource
from .backends import BackendAdapter, EventRecord, FieldMapper
from .beacon import BeaconTransport, RequestsBeacon

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Kinds of backend write."""
    CREATE = "create"
    UPDATE = "update"


class EventPipeline:
    """Creates the visit record and streams updates to it."""

    def __init__(
        self,
        context: TrackingContext,
        backend: BackendAdapter,
        beacon: Optional[BeaconTransport] = None,
        mapper: Optional[FieldMapper] = None,
    ):
        self.context = context
        self.options = context.settings.pipeline
        self.backend = backend
        self.mapper = mapper or FieldMapper(context.settings.backend.mapping())
        self.beacon = beacon or RequestsBeacon(timeout=self.options.beacon_timeout)
        self.scheduler = context.scheduler
        self.policy = RetryPolicy(
            max_attempts=self.options.max_retries,
            base_delay=self.options.retry_delay,
        )

        self.visit = EventRecord()
        self.clicks = 0
        self.cta_clicked = False
        self.registered = False
        self.high_engagement_tracked = False
        self.dropped_updates = 0
        self.pending_tasks: List[RetryTask] = []
        self.event_handlers: Dict[str, List[Callable]] = {}

        self._queued_updates: List[Dict[str, Any]] = []
        self._exit_flushed = False
        self._timers: List[TimerHandle] = []
        self._lock = threading.Lock()

    @property
    def record_id(self) -> Optional[str]:
        return self.visit.record_id

    # ------------------------------------------------------------------
    # Core write path
    # ------------------------------------------------------------------

    def record(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> Optional[RetryTask]:
        """Create the visit record or update it.

        A create merges ``payload`` over the full page-view payload.  An
        update before the record id is known is dropped or queued according
        to ``early_update_policy``.  Returns the retry task driving the
        request, or None when nothing was sent.
        """
        if event_type == EventType.CREATE:
            fields = {**self.build_page_view_payload(), **(payload or {})}
            mapped = self.mapper.map(fields)
            return self._run(
                lambda: self.backend.create(mapped),
                on_success=self._capture_record_id,
                name=f"{self.backend.kind.value} create",
            )

        with self._lock:
            record_id = self.visit.record_id
            if record_id is None:
                if self.options.early_update_policy == UpdatePolicy.QUEUE:
                    self._queued_updates.append(dict(payload or {}))
                    logger.debug("Update queued until the visit record exists")
                else:
                    self.dropped_updates += 1
                    logger.debug("Update dropped: visit record not created yet")
                return None

        mapped = self.mapper.map(payload or {})
        return self._run(
            lambda: self.backend.update(record_id, mapped),
            name=f"{self.backend.kind.value} update",
        )

    def _run(self, operation: Callable[[], Any], on_success=None, name: str = "request") -> RetryTask:
        task = RetryTask(operation, self.policy, self.scheduler, on_success=on_success, name=name)
        task.start()
        with self._lock:
            self.pending_tasks = [t for t in self.pending_tasks if not t.done]
            if not task.done:
                self.pending_tasks.append(task)
        if self.options.debug:
            logger.info(f"{name}: attempts={task.attempts} succeeded={task.succeeded}")
        return task

    def _capture_record_id(self, record_id: Optional[str]):
        if record_id is None:
            logger.warning("Backend did not return a record id; updates will not be sent")
            return

        with self._lock:
            if self.visit.record_id is not None:
                logger.debug(f"Keeping visit record {self.visit.record_id}, ignoring {record_id}")
                return
            self.visit.record_id = record_id
            queued, self._queued_updates = self._queued_updates, []

        logger.debug(f"Visit record created: {record_id}")
        for payload in queued:
            self.record(EventType.UPDATE, payload)

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    def build_page_view_payload(self) -> Dict[str, Any]:
        """Semantic fields for a new visit record."""
        ctx = self.context
        owner = ctx.settings.page_owner

        fields: Dict[str, Any] = {
            'visitorId': ctx.identity.visitor_id,
            'sessionId': ctx.identity.session_id,
            'pageOwnerUsername': owner.username,
            'pageOwnerInviteCode': owner.invite_code,
            'pageUrl': ctx.page_url,
            'referrerUrl': ctx.referrer_url or None,
        }
        fields.update(ctx.device.to_fields())
        fields.update(self._referral_fields())
        fields.update({
            'timeOnPage': 0,
            'clicksCount': 0,
            'ctaClicked': False,
            'registered': False,
        })
        return fields

    def _referral_fields(self) -> Dict[str, Any]:
        referral = self.context.referral
        fields: Dict[str, Any] = {
            'referralSource': None,
            'referralCode': None,
            'referralType': 'organic',
            'utmSource': None,
            'utmMedium': None,
            'utmCampaign': None,
            'utmTerm': None,
            'utmContent': None,
        }
        if referral is None:
            return fields

        fields['referralSource'] = referral.referrer
        fields['referralCode'] = referral.invite_code
        if referral.source != ReferralSource.DIRECT:
            fields['referralType'] = 'referral'

        if self.options.track_utm_params:
            utm = referral.utm
            fields.update({
                'utmSource': utm.source,
                'utmMedium': utm.medium,
                'utmCampaign': utm.campaign,
                'utmTerm': utm.term,
                'utmContent': utm.content,
            })
        return fields

    def _counters(self) -> Dict[str, Any]:
        return {
            'timeOnPage': self.context.time_on_page(),
            'clicksCount': self.clicks,
        }

    # ------------------------------------------------------------------
    # Tracking operations
    # ------------------------------------------------------------------

    def track_page_view(self) -> Optional[RetryTask]:
        """Create the visit record and start the periodic timers."""
        if not self.options.track_page_views:
            return None

        task = self.record(EventType.CREATE)

        if self.options.track_time_on_page:
            self._timers.append(
                self.scheduler.every(self.options.time_on_page_interval, self.update_time_on_page)
            )
        self._timers.append(
            self.scheduler.every(self.options.engagement_check_interval, self.check_high_engagement)
        )
        return task

    def update_time_on_page(self) -> Optional[RetryTask]:
        return self.record(EventType.UPDATE, self._counters())

    def is_cta_link(self, href: Optional[str]) -> bool:
        if not href:
            return False
        host = (urlsplit(href).hostname or "").lower()
        return host in {h.lower() for h in self.options.cta_hosts}

    def track_click(self, is_cta: bool = False, href: Optional[str] = None) -> Optional[RetryTask]:
        """Count a click; CTA clicks also update the visit record."""
        if not self.options.track_clicks:
            return None

        with self._lock:
            self.clicks += 1
            clicks = self.clicks

        if not (is_cta or self.is_cta_link(href)):
            return None

        self.cta_clicked = True
        return self.record(EventType.UPDATE, {'ctaClicked': True, 'clicksCount': clicks})

    def track_registration(self) -> Optional[RetryTask]:
        """Mark the visitor as registered and announce it to listeners."""
        if not self.options.track_registrations:
            return None

        self.registered = True
        task = self.record(EventType.UPDATE, {'registered': True})

        self._trigger('registration', self.registration_data())
        referral = self.context.referral
        if referral is not None and referral.source != ReferralSource.DIRECT:
            self._trigger('referral_success', {
                'username': referral.referrer,
                'code': referral.invite_code,
                'visitorId': self.context.identity.visitor_id,
                'registered': True,
            })
        return task

    def registration_data(self) -> Dict[str, Any]:
        referral = self.context.referral
        return {
            'visitorId': self.context.identity.visitor_id,
            'sessionId': self.context.identity.session_id,
            'deviceType': self.context.device.device_type,
            'referralSource': referral.referrer if referral else None,
            'utmSource': referral.utm.source if referral else None,
            'utmCampaign': referral.utm.campaign if referral else None,
        }

    def track_event(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> RetryTask:
        """Record a named event row linked to the visit and notify listeners."""
        if event_type == 'registration' and not data:
            data = self.registration_data()

        event_fields = {
            'visitorAnalyticsId': self.visit.record_id,
            'eventType': event_type,
            'eventData': data,
            'timestamp': self.scheduler.utcnow().isoformat(),
        }
        task = self._run(
            lambda: self.backend.create(event_fields),
            name=f"{self.backend.kind.value} event {event_type}",
        )
        self._trigger(event_type, data or {})
        return task

    def update_field(self, name: str, value: Any) -> Optional[RetryTask]:
        return self.record(EventType.UPDATE, {name: value})

    def check_high_engagement(self) -> bool:
        """Fire ``high_engagement`` once, past the time or click threshold."""
        time_on_page = self.context.time_on_page()
        engaged = (
            time_on_page > self.options.high_engagement_seconds
            or self.clicks > self.options.high_engagement_clicks
        )

        with self._lock:
            if not engaged or self.high_engagement_tracked:
                return False
            self.high_engagement_tracked = True

        self.track_event('high_engagement', {
            'visitorId': self.context.identity.visitor_id,
            'timeOnPage': time_on_page,
            'clicks': self.clicks,
            'pagesViewed': 1,
        })
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate counters as seen from this session."""
        referral = self.context.referral
        referred = referral is not None and referral.source != ReferralSource.DIRECT
        return {
            'total_visitors': 1,
            'registrations': 1 if self.registered else 0,
            'referrals': 1 if (self.registered and referred) else 0,
            'current_session': {
                'time_on_page': self.context.time_on_page(),
                'clicks': self.clicks,
                'cta_clicked': self.cta_clicked,
            },
        }

    def flush_on_exit(self) -> bool:
        """Send the final counters once through the beacon transport."""
        with self._lock:
            if self._exit_flushed or self.visit.record_id is None:
                return False
            self._exit_flushed = True
            record_id = self.visit.record_id

        if not self.backend.configured:
            return False

        data = self.mapper.map(self._counters())
        return self.beacon.send(self.backend.beacon_url(record_id), data)

    def stop(self):
        """Cancel the periodic timers."""
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_event(self, event_type: str, handler: Callable[[str, Dict[str, Any]], None]):
        """Register a handler; ``"*"`` receives every event."""
        if event_type not in self.event_handlers:
            self.event_handlers[event_type] = []
        self.event_handlers[event_type].append(handler)

    def _trigger(self, event_type: str, data: Dict[str, Any]):
        handlers = self.event_handlers.get(event_type, []) + self.event_handlers.get('*', [])
        for handler in handlers:
            try:
                handler(event_type, data)
            except Exception as e:
                logger.error(f"Event handler for {event_type} failed: {e}")
