"""Tests for milestone detection."""

import json
from unittest.mock import MagicMock

import pytest

from referral_telemetry.automation.milestones import MilestoneEngine
from referral_telemetry.automation.webhooks import WebhookDispatcher
from referral_telemetry.core.config import MilestoneSettings, PageOwner, WebhookSettings
from referral_telemetry.storage.stores import MemoryStore, UnavailableStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def dispatcher(scheduler, http_session):
    settings = WebhookSettings(
        enabled=True,
        endpoints={"milestone": "https://hooks.example.com/milestone"},
    )
    return WebhookDispatcher(settings, page_owner=PageOwner(), scheduler=scheduler, session=http_session)


@pytest.fixture
def engine(store, dispatcher, scheduler):
    return MilestoneEngine(MilestoneSettings(), store, "reftrack_milestones", dispatcher, scheduler=scheduler)


def milestone_bodies(session):
    return [json.loads(c.kwargs["data"]) for c in session.post.call_args_list]


class TestMilestoneEngine:
    """Tests for MilestoneEngine.check."""

    def test_crossing_100_fires_once(self, engine, http_session):
        """Crossing 100 visitors fires exactly one webhook for 100."""
        engine.check({"total_visitors": 60})
        http_session.post.reset_mock()

        fired = engine.check({"total_visitors": 100})

        assert fired == ["visitors_100"]
        bodies = milestone_bodies(http_session)
        assert len(bodies) == 1
        assert bodies[0]["event"] == "milestone_achieved"
        assert bodies[0]["milestone"]["type"] == "visitors"
        assert bodies[0]["milestone"]["value"] == 100

        http_session.post.reset_mock()
        assert engine.check({"total_visitors": 105}) == []
        http_session.post.assert_not_called()

    def test_all_lower_thresholds_fire(self, engine):
        fired = engine.check({"total_visitors": 60, "registrations": 5, "referrals": 0})
        assert fired == ["visitors_10", "visitors_50", "registrations_1", "registrations_5"]

    def test_same_stats_twice(self, engine, http_session):
        """Checking the same stats again fires nothing."""
        stats = {"total_visitors": 1000, "registrations": 25, "referrals": 10}
        first = engine.check(stats)
        count = http_session.post.call_count

        assert engine.check(stats) == []
        assert http_session.post.call_count == count == len(first)

    def test_record_layout(self, engine, store):
        """Achievements are stored as key -> ISO timestamp."""
        engine.check({"total_visitors": 10})
        record = json.loads(store.get("reftrack_milestones"))
        assert record == {"visitors_10": "2024-01-01T00:00:00+00:00"}

    def test_record_survives_restart(self, engine, store, dispatcher, scheduler, http_session):
        engine.check({"total_visitors": 50})
        http_session.post.reset_mock()

        restarted = MilestoneEngine(MilestoneSettings(), store, "reftrack_milestones", dispatcher, scheduler=scheduler)
        assert restarted.check({"total_visitors": 50}) == []
        http_session.post.assert_not_called()

    def test_check_milestone_rejects_unknown_threshold(self, engine):
        assert not engine.check_milestone("visitors", 7)
        assert not engine.check_milestone("followers", 10)

    def test_check_milestone_passes_metadata(self, engine, http_session):
        engine.check_milestone("referrals", 5, {"referrals": 5})
        assert milestone_bodies(http_session)[0]["metadata"] == {"referrals": 5}

    def test_custom_thresholds(self, store, scheduler):
        settings = MilestoneSettings(thresholds={"visitors": [300, 3]})
        engine = MilestoneEngine(settings, store, scheduler=scheduler)
        assert engine.check({"total_visitors": 500}) == ["visitors_3", "visitors_300"]

    def test_storage_unavailable(self, dispatcher, scheduler, http_session):
        """Without storage, milestones are still deduplicated for the page lifetime."""
        engine = MilestoneEngine(MilestoneSettings(), UnavailableStore(), dispatcher=dispatcher, scheduler=scheduler)

        assert engine.check({"total_visitors": 10}) == ["visitors_10"]
        assert engine.check({"total_visitors": 10}) == []
        assert http_session.post.call_count == 1

    def test_corrupt_record(self, store, scheduler):
        store.set("reftrack_milestones", "not json")
        engine = MilestoneEngine(MilestoneSettings(), store, scheduler=scheduler)
        assert engine.check({"total_visitors": 10}) == ["visitors_10"]

    def test_without_dispatcher(self, store, scheduler):
        engine = MilestoneEngine(MilestoneSettings(), store, scheduler=scheduler)
        assert engine.check_milestone("visitors", 10)
        assert "visitors_10" in engine.achieved


class TestMilestonePolling:
    """Tests for periodic checks."""

    def test_polls_stats_provider(self, store, scheduler):
        provider = MagicMock(side_effect=[{"total_visitors": 5}, {"total_visitors": 12}])
        engine = MilestoneEngine(MilestoneSettings(), store, stats_provider=provider, scheduler=scheduler)

        engine.start()
        scheduler.advance(60)
        assert engine.achieved == {}
        scheduler.advance(60)
        assert list(engine.achieved) == ["visitors_10"]

    def test_stop(self, store, scheduler):
        provider = MagicMock(return_value={"total_visitors": 50})
        engine = MilestoneEngine(MilestoneSettings(), store, stats_provider=provider, scheduler=scheduler)

        engine.start()
        engine.stop()
        scheduler.advance(600)
        provider.assert_not_called()
