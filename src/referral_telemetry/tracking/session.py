"""A single page load, from attribution to exit flush."""

import logging
from typing import Optional

import requests

from ..automation.milestones import MilestoneEngine
from ..automation.scheduler import Scheduler, ThreadScheduler
from ..automation.webhooks import WebhookDispatcher
from ..core.config import TrackerSettings
from ..core.context import TrackingContext
from ..referrals.links import LinkRewriter
from ..referrals.persistence import AttributionPersistence
from ..referrals.resolver import ReferralResolver
from ..storage.stores import KeyValueStore, MemoryStore
from .backends import get_backend
from .beacon import RequestsBeacon
from .device import detect_device
from .identity import IdentityStore
from .pipeline import EventPipeline

logger = logging.getLogger(__name__)


class PageSession:
    """Owns every component for one page load."""

    def __init__(
        self,
        context: TrackingContext,
        persistence: AttributionPersistence,
        rewriter: LinkRewriter,
        pipeline: EventPipeline,
        dispatcher: WebhookDispatcher,
        milestones: MilestoneEngine,
        html: Optional[str] = None,
    ):
        self.context = context
        self.persistence = persistence
        self.rewriter = rewriter
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.milestones = milestones
        self.html = html
        self.closed = False

    @property
    def referral(self):
        return self.context.referral

    @classmethod
    def start(
        cls,
        url: str,
        settings: Optional[TrackerSettings] = None,
        primary_store: Optional[KeyValueStore] = None,
        fallback_store: Optional[KeyValueStore] = None,
        scheduler: Optional[Scheduler] = None,
        session: Optional[requests.Session] = None,
        html: Optional[str] = None,
        referrer_url: str = "",
        user_agent: str = "",
        screen_width: Optional[int] = None,
        screen_height: Optional[int] = None,
        language: Optional[str] = None,
    ) -> "PageSession":
        """Resolve attribution, rewrite links, record the page view and start monitoring."""
        settings = settings or TrackerSettings.from_env()
        primary_store = primary_store if primary_store is not None else MemoryStore()
        fallback_store = fallback_store if fallback_store is not None else MemoryStore()
        scheduler = scheduler or ThreadScheduler()
        session = session or requests.Session()

        identity = IdentityStore(primary_store, settings.referral.visitor_key).new_identity()

        persistence = AttributionPersistence.build(
            settings.referral,
            primary_store,
            fallback_store,
            page_owner=settings.page_owner,
            timestamp=lambda: scheduler.utcnow().isoformat(),
        )
        resolver = ReferralResolver(
            settings.referral,
            persistence,
            page_owner=settings.page_owner,
            clock=scheduler.utcnow,
        )

        context = TrackingContext(
            settings=settings,
            identity=identity,
            scheduler=scheduler,
            device=detect_device(user_agent, screen_width, screen_height, language),
            page_url=url,
            referrer_url=referrer_url,
            referral=resolver.resolve(url),
        )

        rewriter = LinkRewriter(
            settings.referral.registration_urls,
            click_handler_marker=settings.referral.click_handler_marker,
            base_url=url,
        )
        rewriter.state = context.referral
        if html is not None:
            html = rewriter.rewrite_html(html)

        options = settings.pipeline
        pipeline = EventPipeline(
            context,
            get_backend(settings.backend, session=session, timeout=options.request_timeout),
            beacon=RequestsBeacon(session=session, timeout=options.beacon_timeout),
        )
        pipeline.track_page_view()

        dispatcher = WebhookDispatcher(
            settings.webhooks,
            page_owner=settings.page_owner,
            scheduler=scheduler,
            session=session,
        )
        dispatcher.attach(pipeline)

        milestones = MilestoneEngine(
            settings.milestones,
            primary_store,
            key=settings.referral.milestones_key,
            dispatcher=dispatcher,
            stats_provider=pipeline.get_stats,
            scheduler=scheduler,
        )
        if settings.webhooks.enabled:
            milestones.start()

        logger.debug(
            f"Page session started for {identity.visitor_id} "
            f"(referrer={context.referral.referrer}, source={context.referral.source.value})"
        )
        return cls(context, persistence, rewriter, pipeline, dispatcher, milestones, html=html)

    def close(self) -> bool:
        """Flush the final counters and stop all timers; True if the beacon went out."""
        if self.closed:
            return False
        self.closed = True
        flushed = self.pipeline.flush_on_exit()
        self.pipeline.stop()
        self.milestones.stop()
        return flushed
