"""End-to-end tests for a page session."""

import json

import pytest
from bs4 import BeautifulSoup

from referral_telemetry.referrals.models import ReferralSource
from referral_telemetry.storage.stores import MemoryStore, UnavailableStore
from referral_telemetry.tracking.session import PageSession

LANDING = "https://alex.unilive.example/?ref=bob&utm_source=newsletter"
HTML = '<a id="join" href="https://app.unilive.io/register">Join</a>'


@pytest.fixture
def primary():
    return MemoryStore()


@pytest.fixture
def fallback():
    return MemoryStore()


@pytest.fixture
def start(settings, primary, fallback, scheduler, http_session):
    def _start(url=LANDING, **kwargs):
        return PageSession.start(
            url,
            settings=settings,
            primary_store=primary,
            fallback_store=fallback,
            scheduler=scheduler,
            session=http_session,
            **kwargs,
        )
    return _start


class TestPageSession:
    """Tests for PageSession.start and close."""

    def test_start_runs_the_whole_flow(self, start, http_session, primary):
        session = start(html=HTML, user_agent="Mozilla/5.0 (iPad; CPU OS 17_0)")

        assert session.referral.referrer == "bob"
        assert session.referral.source == ReferralSource.URL_PARAM
        assert session.pipeline.record_id == "42"
        assert session.context.device.device_type == "tablet"
        assert primary.get("reftrack_referral") is not None

        href = BeautifulSoup(session.html, "html.parser").find(id="join")["href"]
        assert href == "https://app.unilive.io/register?recomId=zyDK65&referrer=bob&source=url_param"

        body = http_session.request.call_args.kwargs["json"]
        assert body["utm_source"] == "newsletter"
        assert body["page_url"] == LANDING

    def test_return_visit_keeps_visitor(self, start):
        first = start()
        second = start("https://alex.unilive.example/")

        assert second.context.identity.visitor_id == first.context.identity.visitor_id
        assert second.context.identity.session_id != first.context.identity.session_id
        assert second.referral.referrer == "bob"

    def test_close_flushes_once(self, start, http_session, scheduler):
        session = start()
        session.pipeline.track_click()
        scheduler.advance(8)

        assert session.close()
        assert not session.close()

        url = http_session.post.call_args.args[0]
        data = json.loads(http_session.post.call_args.kwargs["data"])
        assert url.endswith("/rest/v1/visitor_analytics?id=eq.42")
        assert data == {"time_on_page": 8, "clicks_count": 1}

    def test_close_stops_timers(self, start, http_session, scheduler):
        session = start()
        session.close()
        scheduler.advance(600)
        assert http_session.request.call_count == 1

    def test_registration_webhook(self, start, settings, http_session):
        settings.webhooks.enabled = True
        settings.webhooks.endpoints["registration"] = "https://hooks.example.com/registration"
        session = start()

        session.pipeline.track_registration()

        urls = [c.args[0] for c in http_session.post.call_args_list]
        assert "https://hooks.example.com/registration" in urls

    def test_milestone_monitor_runs_when_enabled(self, start, settings, http_session, scheduler):
        settings.webhooks.enabled = True
        settings.webhooks.endpoints["milestone"] = "https://hooks.example.com/milestone"
        settings.milestones.thresholds = {"visitors": [1]}
        session = start()

        scheduler.advance(60)

        assert "visitors_1" in session.milestones.achieved
        urls = [c.args[0] for c in http_session.post.call_args_list]
        assert urls == ["https://hooks.example.com/milestone"]

    def test_unconfigured_backend(self, start, settings, http_session):
        """A placeholder endpoint means no requests, but attribution still works."""
        settings.backend.endpoint.url = "%SUPABASE_URL%"
        session = start(html=HTML)

        assert session.pipeline.record_id is None
        assert "referrer=bob" in session.html
        assert not session.close()
        http_session.request.assert_not_called()
        http_session.post.assert_not_called()

    def test_storage_unavailable(self, settings, scheduler, http_session):
        """With no usable storage the page still resolves and tracks."""
        session = PageSession.start(
            LANDING,
            settings=settings,
            primary_store=UnavailableStore(),
            fallback_store=UnavailableStore(),
            scheduler=scheduler,
            session=http_session,
        )

        assert session.referral.referrer == "bob"
        assert session.pipeline.record_id == "42"
