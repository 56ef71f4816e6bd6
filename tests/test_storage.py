"""Tests for key/value stores, visitor identity and device detection."""

import re

import pytest

from referral_telemetry.core.errors import StorageUnavailable
from referral_telemetry.storage.stores import CookieStore, JSONFileStore, MemoryStore, UnavailableStore
from referral_telemetry.tracking.device import classify_user_agent, detect_device
from referral_telemetry.tracking.identity import IdentityStore

VISITOR_ID = re.compile(r"^v_[0-9a-z]{9}\d+$")
SESSION_ID = re.compile(r"^s_[0-9a-z]{9}\d+$")


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_set_get_delete(self):
        store = MemoryStore()
        store.set("k", "v")
        assert store.get("k") == "v"
        store.delete("k")
        assert store.get("k") is None

    def test_ttl(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", "v", ttl=60)

        clock.advance(59)
        assert store.get("k") == "v"
        clock.advance(1)
        assert store.get("k") is None

    def test_set_without_ttl_clears_expiry(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", "v", ttl=1)
        store.set("k", "v2")
        clock.advance(10)
        assert store.get("k") == "v2"


class TestJSONFileStore:
    """Tests for JSONFileStore."""

    def test_persists_across_instances(self, temp_data_dir):
        path = temp_data_dir / "state" / "storage.json"
        JSONFileStore(path).set("reftrack_visitor_id", "v_abc")
        assert JSONFileStore(path).get("reftrack_visitor_id") == "v_abc"

    def test_ttl(self, temp_data_dir, clock):
        store = JSONFileStore(temp_data_dir / "cookies.json", clock=clock)
        store.set("reftrack_ref", "bob|zyDK65", ttl=30)
        clock.advance(31)
        assert store.get("reftrack_ref") is None

    def test_corrupt_file_reads_empty(self, temp_data_dir):
        path = temp_data_dir / "storage.json"
        path.write_text("{broken")
        assert JSONFileStore(path).get("anything") is None

    def test_clear(self, temp_data_dir):
        store = JSONFileStore(temp_data_dir / "storage.json")
        store.set("a", "1")
        store.clear()
        assert store.get("a") is None

    def test_unwritable_location(self, temp_data_dir):
        blocker = temp_data_dir / "file"
        blocker.write_text("")
        store = JSONFileStore(blocker / "storage.json")

        with pytest.raises(StorageUnavailable):
            store.set("a", "1")


class TestCookieStore:
    """Tests for CookieStore."""

    def test_header_round_trip(self):
        jar = CookieStore()
        jar.set("reftrack_ref", "bob|zyDK65")

        header = jar.header()
        assert header == "reftrack_ref=bob%7CzyDK65"

        other = CookieStore()
        other.load_header(header + "; unrelated=1")
        assert other.get("reftrack_ref") == "bob|zyDK65"

    def test_set_cookie_headers(self, clock):
        jar = CookieStore(clock=clock)
        jar.set("reftrack_ref", "bob|zyDK65", ttl=3600)

        (cookie,) = jar.set_cookie_headers()
        assert cookie.startswith("reftrack_ref=bob%7CzyDK65;expires=")
        assert cookie.endswith("GMT;path=/;SameSite=Lax")


class TestUnavailableStore:
    def test_everything_raises(self):
        store = UnavailableStore()
        with pytest.raises(StorageUnavailable):
            store.get("k")
        with pytest.raises(StorageUnavailable):
            store.set("k", "v")


class TestIdentityStore:
    """Tests for visitor and session ids."""

    def test_visitor_id_format(self):
        identity = IdentityStore(MemoryStore()).new_identity()
        assert VISITOR_ID.match(identity.visitor_id)
        assert SESSION_ID.match(identity.session_id)

    def test_visitor_id_is_durable(self):
        """Same store, same visitor; each page load gets a new session."""
        store = MemoryStore()
        first = IdentityStore(store).new_identity()
        second = IdentityStore(store).new_identity()

        assert first.visitor_id == second.visitor_id
        assert first.session_id != second.session_id
        assert store.get("reftrack_visitor_id") == first.visitor_id

    def test_custom_key(self):
        store = MemoryStore()
        IdentityStore(store, key="promo_visitor_id").new_identity()
        assert store.get("promo_visitor_id") is not None

    def test_storage_unavailable(self):
        """Without storage the id lives for the page only."""
        identity = IdentityStore(UnavailableStore())
        assert VISITOR_ID.match(identity.visitor_id)
        assert identity.visitor_id == identity.visitor_id


class TestDevice:
    """Tests for user-agent classification."""

    @pytest.mark.parametrize("user_agent,expected", [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148", "mobile"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile Safari/537.36", "mobile"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)", "tablet"),
        ("Mozilla/5.0 (Linux; Android 13; SM-X700) Safari/537.36", "tablet"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0", "desktop"),
        ("", "desktop"),
    ])
    def test_classify(self, user_agent, expected):
        assert classify_user_agent(user_agent) == expected

    def test_fields(self):
        fields = detect_device("", 1920, 1080).to_fields()
        assert fields == {
            "deviceType": "desktop",
            "userAgent": "",
            "screenWidth": 1920,
            "screenHeight": 1080,
            "language": "en",
        }
