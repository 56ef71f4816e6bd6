"""Tests for registration link rewriting."""

from urllib.parse import parse_qsl, urlsplit

import pytest
from bs4 import BeautifulSoup

from referral_telemetry.core.config import ReferralSettings
from referral_telemetry.referrals.links import LinkRewriter, referral_params, set_query_params
from referral_telemetry.referrals.models import ReferralSource, ReferralState

PAGE = """
<html><body>
  <a id="signup" href="https://app.unilive.io/register">Join</a>
  <a id="home" href="https://h.unilive.io/?lang=en&referrer=old">Home</a>
  <a id="other" href="https://example.com/page">Elsewhere</a>
  <a id="relative" href="/about">About</a>
  <button id="cta" onclick="trackSignup('hero')">Sign up</button>
  <button id="plain" onclick="openMenu()">Menu</button>
</body></html>
"""


@pytest.fixture
def state():
    return ReferralState(referrer="bob", invite_code="zyDK65", source=ReferralSource.URL_PARAM)


@pytest.fixture
def rewriter():
    settings = ReferralSettings()
    return LinkRewriter(
        settings.registration_urls,
        click_handler_marker=settings.click_handler_marker,
        base_url="https://alex.unilive.example/",
    )


def href_of(html: str, element_id: str) -> str:
    return BeautifulSoup(html, "html.parser").find(id=element_id)["href"]


def onclick_of(html: str, element_id: str) -> str:
    return BeautifulSoup(html, "html.parser").find(id=element_id)["onclick"]


class TestQueryHelpers:
    """Tests for the query-string helpers."""

    def test_referral_params_order(self, state):
        assert referral_params(state) == [
            ("recomId", "zyDK65"),
            ("referrer", "bob"),
            ("source", "url_param"),
        ]

    def test_unknown_value_removes_stale_param(self, rewriter):
        """A link already carrying referrer= loses it when the referrer is unknown."""
        state = ReferralState(referrer=None, invite_code="zyDK65")
        url = rewriter.rewrite_url("https://app.unilive.io/register?referrer=mallory&lang=en", state)

        assert parse_qsl(urlsplit(url).query) == [
            ("lang", "en"),
            ("recomId", "zyDK65"),
            ("source", "direct"),
        ]

    def test_set_query_params_overwrites(self):
        url = set_query_params("https://h.unilive.io/?lang=en&source=ad", [("source", "cookie")])
        assert parse_qsl(urlsplit(url).query) == [("lang", "en"), ("source", "cookie")]


class TestLinkRewriter:
    """Tests for LinkRewriter."""

    def test_registration_link_gains_params(self, rewriter, state):
        """Registration links get recomId, referrer and source."""
        html = rewriter.rewrite_html(PAGE, state)
        assert href_of(html, "signup") == (
            "https://app.unilive.io/register?recomId=zyDK65&referrer=bob&source=url_param"
        )

    def test_existing_params_preserved(self, rewriter, state):
        """Other query parameters stay; stale attribution is overwritten."""
        html = rewriter.rewrite_html(PAGE, state)
        query = dict(parse_qsl(urlsplit(href_of(html, "home")).query))

        assert query == {
            "lang": "en",
            "recomId": "zyDK65",
            "referrer": "bob",
            "source": "url_param",
        }

    def test_other_links_untouched(self, rewriter, state):
        html = rewriter.rewrite_html(PAGE, state)
        assert href_of(html, "other") == "https://example.com/page"
        assert href_of(html, "relative") == "/about"

    def test_click_handler_wrapped(self, rewriter, state):
        """Marked handlers get the attribution injected before they run."""
        html = rewriter.rewrite_html(PAGE, state)

        assert onclick_of(html, "cta") == (
            "updateReferralParams(event, 'zyDK65', 'bob', 'url_param'); trackSignup('hero')"
        )
        assert onclick_of(html, "plain") == "openMenu()"

    def test_rewrite_is_idempotent(self, rewriter, state):
        once = rewriter.rewrite_html(PAGE, state)
        twice = rewriter.rewrite_html(once, state)

        assert href_of(twice, "signup") == href_of(once, "signup")
        assert onclick_of(twice, "cta").count("updateReferralParams") == 1

    def test_without_state_html_unchanged(self, rewriter):
        assert rewriter.rewrite_html(PAGE) == PAGE

    def test_injected_content(self, rewriter, state):
        """Content added after load picks up the last resolved attribution."""
        rewriter.rewrite_html(PAGE, state)
        html = rewriter.on_content_updated('<a id="late" href="https://unilive.io/signup">Late</a>')

        assert "referrer=bob" in href_of(html, "late")

    def test_prepare_navigation(self, rewriter, state):
        rewriter.state = state
        url = rewriter.prepare_navigation("https://app.unilive.io/register?plan=pro")

        assert parse_qsl(urlsplit(url).query)[0] == ("plan", "pro")
        assert "recomId=zyDK65" in url

    def test_wrap_click_handler(self, rewriter, state):
        """Imperative handlers receive the rewritten target."""
        rewriter.state = state
        seen = []
        handler = rewriter.wrap_click_handler(lambda href: seen.append(href))

        handler("https://app.unilive.io/register")
        handler("https://example.com/")

        assert "source=url_param" in seen[0]
        assert seen[1] == "https://example.com/"

    def test_handler_values_quoted(self, rewriter):
        state = ReferralState(referrer="o_brien", invite_code="ABCDE", source=ReferralSource.COOKIE)
        html = rewriter.rewrite_html('<a id="x" onclick="trackSignup()">x</a>', state)
        assert "'o_brien'" in onclick_of(html, "x")
