"""Propagate resolved attribution onto registration links."""

import logging
from typing import Callable, Iterable, List, Optional, Set
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from .models import ReferralState

logger = logging.getLogger(__name__)

CLICK_HELPER = "updateReferralParams"


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def referral_params(state: ReferralState) -> List[tuple]:
    """The three query parameters the registration endpoint reads; unknown values are None."""
    return [
        ("recomId", state.invite_code),
        ("referrer", state.referrer),
        ("source", state.source.value),
    ]


def set_query_params(href: str, params: Iterable[tuple]) -> str:
    """Set or overwrite ``params`` on ``href`` keeping everything else.

    A None value removes the parameter.
    """
    parts = urlsplit(href)
    updates = dict(params)
    query = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key in updates:
            continue
        query.append((key, value))
    query.extend((k, v) for k, v in updates.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class LinkRewriter:
    """Finds registration links and stamps attribution onto them."""

    def __init__(
        self,
        registration_urls: List[str],
        click_handler_marker: str = "trackSignup",
        base_url: str = "",
    ):
        self.hosts: Set[str] = {_host(url) for url in registration_urls if _host(url)}
        self.click_handler_marker = click_handler_marker
        self.base_url = base_url
        self.state: Optional[ReferralState] = None

    def is_registration_link(self, href: Optional[str]) -> bool:
        if not href:
            return False
        absolute = urljoin(self.base_url, href) if self.base_url else href
        return _host(absolute) in self.hosts

    def rewrite_url(self, href: str, state: Optional[ReferralState] = None) -> str:
        """``href`` with recomId/referrer/source set; non-registration links untouched."""
        state = state or self.state
        if state is None or not self.is_registration_link(href):
            return href
        return set_query_params(href, referral_params(state))

    def rewrite_html(self, html: str, state: Optional[ReferralState] = None) -> str:
        """Rewrite every registration link and wrap marked click handlers."""
        if state is not None:
            self.state = state
        if self.state is None:
            return html

        soup = BeautifulSoup(html, "html.parser")
        rewritten = 0

        for link in soup.find_all("a", href=True):
            href = link["href"]
            if self.is_registration_link(href):
                link["href"] = self.rewrite_url(href)
                rewritten += 1

        for element in soup.find_all(attrs={"onclick": True}):
            handler = element["onclick"]
            if self.click_handler_marker in handler and CLICK_HELPER not in handler:
                element["onclick"] = f"{self._click_helper_call()}; {handler}"
                rewritten += 1

        logger.debug(f"Rewrote {rewritten} registration element(s)")
        return str(soup)

    def on_content_updated(self, html: str) -> str:
        """Apply the last resolved attribution to content injected after load."""
        return self.rewrite_html(html)

    def prepare_navigation(self, href: str) -> str:
        """Just-in-time rewrite for a link about to be followed."""
        return self.rewrite_url(href)

    def wrap_click_handler(self, handler: Callable[..., object]) -> Callable[..., object]:
        """Wrap an imperative click handler so it navigates with attribution.

        The wrapped handler receives the rewritten href as its first argument.
        """
        def wrapped(href: str, *args, **kwargs):
            return handler(self.prepare_navigation(href), *args, **kwargs)

        wrapped.__wrapped__ = handler
        return wrapped

    def _click_helper_call(self) -> str:
        values = [
            self.state.invite_code or "",
            self.state.referrer or "",
            self.state.source.value,
        ]
        quoted = ", ".join("'" + v.replace("\\", "\\\\").replace("'", "\\'") + "'" for v in values)
        return f"{CLICK_HELPER}(event, {quoted})"
