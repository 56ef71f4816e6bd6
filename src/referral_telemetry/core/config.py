"""Deploy-time configuration for attribution, event delivery and webhooks."""

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Mapping

logger = logging.getLogger(__name__)

# Build-time templates look like %SUPABASE_URL%; any value still holding the
# marker was never substituted.
PLACEHOLDER_MARKER = "%"


def is_placeholder(value: Optional[str]) -> bool:
    """True when a value is empty or still an unresolved template token."""
    if not value:
        return True
    return PLACEHOLDER_MARKER in value


def is_configured(value: Optional[str]) -> bool:
    """True when a value was actually supplied at deploy time."""
    return not is_placeholder(value)


class BackendKind(Enum):
    """Supported analytics backends."""
    SUPABASE = "supabase"
    NESTJS = "nestjs"
    LARAVEL = "laravel"
    CUSTOM = "custom"


class UpdatePolicy(Enum):
    """What to do with updates issued before the page-view record exists."""
    DROP = "drop"
    QUEUE = "queue"


SEMANTIC_FIELDS = [
    "visitorId",
    "sessionId",
    "pageOwnerUsername",
    "pageOwnerInviteCode",
    "pageUrl",
    "referrerUrl",
    "referralSource",
    "referralCode",
    "referralType",
    "utmSource",
    "utmMedium",
    "utmCampaign",
    "utmTerm",
    "utmContent",
    "deviceType",
    "userAgent",
    "screenWidth",
    "screenHeight",
    "language",
    "timeOnPage",
    "clicksCount",
    "ctaClicked",
    "registered",
]


def _snake_case(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


_SNAKE = {name: _snake_case(name) for name in SEMANTIC_FIELDS}

DEFAULT_FIELD_MAPPINGS: Dict[BackendKind, Dict[str, str]] = {
    # PostgREST columns
    BackendKind.SUPABASE: {**_SNAKE, "language": "page_language"},
    # TypeORM entities keep camelCase
    BackendKind.NESTJS: {
        **{name: name for name in SEMANTIC_FIELDS},
        "registered": "hasRegistered",
    },
    # Eloquent models
    BackendKind.LARAVEL: {**_SNAKE, "registered": "is_registered"},
    BackendKind.CUSTOM: dict(_SNAKE),
}

DEFAULT_ENDPOINT_PATHS = {
    BackendKind.SUPABASE: "visitor_analytics",  # table name
    BackendKind.NESTJS: "/api/v1/analytics/visitors",
    BackendKind.LARAVEL: "/api/analytics/visitors",
    BackendKind.CUSTOM: "/analytics",
}

DEFAULT_MILESTONES = {
    "visitors": [10, 50, 100, 500, 1000, 5000, 10000],
    "registrations": [1, 5, 10, 25, 50, 100, 500],
    "referrals": [5, 10, 25, 50, 100],
}


@dataclass
class EndpointConfig:
    """Where and how to reach one analytics backend."""

    url: str = ""
    api_key: str = ""
    path: str = ""  # table name for supabase, route for the REST backends
    csrf_token: str = ""

    @property
    def configured(self) -> bool:
        return is_configured(self.url)


@dataclass
class BackendConfig:
    """Backend kind, endpoint and semantic-to-backend field mapping."""

    kind: BackendKind = BackendKind.SUPABASE
    endpoint: EndpointConfig = field(default_factory=EndpointConfig)
    field_mapping: Dict[str, str] = field(default_factory=dict)

    def mapping(self) -> Dict[str, str]:
        """Effective field mapping; explicit entries override the kind's defaults."""
        effective = dict(DEFAULT_FIELD_MAPPINGS[self.kind])
        for semantic, backend_name in self.field_mapping.items():
            if is_configured(backend_name):
                effective[semantic] = backend_name
        return effective

    def endpoint_path(self) -> str:
        if is_configured(self.endpoint.path):
            return self.endpoint.path
        return DEFAULT_ENDPOINT_PATHS[self.kind]


@dataclass
class PageOwner:
    """The account whose page this is; its values are the attribution defaults."""

    username: str = "alex"
    invite_code: str = "zyDK65"
    full_name: str = ""


@dataclass
class ReferralSettings:
    """Referral resolution and persistence settings."""

    key_prefix: str = "reftrack"
    valid_params: List[str] = field(default_factory=lambda: [
        "ref", "code", "invite", "referrer", "from", "invitecode", "refcode",
    ])
    utm_params: List[str] = field(default_factory=lambda: [
        "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    ])
    default_referrer: str = "alex"
    default_invite_code: str = "zyDK65"
    registration_urls: List[str] = field(default_factory=lambda: [
        "https://h.unilive.io",
        "https://unilive.io",
        "https://app.unilive.io",
    ])
    cookie_days: int = 30
    click_handler_marker: str = "trackSignup"

    @property
    def storage_key(self) -> str:
        return f"{self.key_prefix}_referral"

    @property
    def cookie_name(self) -> str:
        return f"{self.key_prefix}_ref"

    @property
    def utm_cookie_name(self) -> str:
        return f"{self.key_prefix}_utm"

    @property
    def visitor_key(self) -> str:
        return f"{self.key_prefix}_visitor_id"

    @property
    def milestones_key(self) -> str:
        return f"{self.key_prefix}_milestones"

    @property
    def cookie_ttl_seconds(self) -> int:
        return self.cookie_days * 24 * 60 * 60


@dataclass
class PipelineOptions:
    """Event pipeline behaviour."""

    track_page_views: bool = True
    track_clicks: bool = True
    track_time_on_page: bool = True
    track_registrations: bool = True
    track_utm_params: bool = True

    time_on_page_interval: float = 30.0  # seconds
    engagement_check_interval: float = 30.0

    max_retries: int = 3  # total attempts per request
    retry_delay: float = 1.0  # first backoff, doubled per attempt
    request_timeout: float = 10.0
    beacon_timeout: float = 2.0

    early_update_policy: UpdatePolicy = UpdatePolicy.DROP

    # High engagement: more than this many seconds or clicks
    high_engagement_seconds: int = 120
    high_engagement_clicks: int = 10

    cta_hosts: List[str] = field(default_factory=lambda: ["app.unilivehub.com"])

    debug: bool = False


@dataclass
class WebhookSettings:
    """Outbound webhook settings."""

    enabled: bool = False
    endpoints: Dict[str, str] = field(default_factory=lambda: {
        "registration": "",
        "milestone": "",
        "referral": "",
        "custom": "",
    })
    secret: str = ""
    retries: int = 3
    timeout: float = 5.0  # seconds

    def endpoint(self, name: str) -> str:
        return self.endpoints.get(name, "")


@dataclass
class MilestoneSettings:
    """Milestone thresholds and polling interval."""

    thresholds: Dict[str, List[int]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MILESTONES.items()}
    )
    check_interval: float = 60.0


@dataclass
class TrackerSettings:
    """Everything a page session needs, chosen at deploy time."""

    backend: BackendConfig = field(default_factory=BackendConfig)
    page_owner: PageOwner = field(default_factory=PageOwner)
    referral: ReferralSettings = field(default_factory=ReferralSettings)
    pipeline: PipelineOptions = field(default_factory=PipelineOptions)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    milestones: MilestoneSettings = field(default_factory=MilestoneSettings)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackerSettings":
        """Build settings from REFTRACK_* environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return env.get(name, default)

        kind = _parse_backend_kind(get("REFTRACK_BACKEND", "supabase"))
        backend = BackendConfig(
            kind=kind,
            endpoint=EndpointConfig(
                url=get("REFTRACK_API_URL"),
                api_key=get("REFTRACK_API_KEY"),
                path=get("REFTRACK_API_PATH"),
                csrf_token=get("REFTRACK_CSRF_TOKEN"),
            ),
        )

        referral = ReferralSettings(key_prefix=get("REFTRACK_KEY_PREFIX", "reftrack"))
        page_owner = PageOwner(
            username=get("REFTRACK_OWNER_USERNAME", referral.default_referrer),
            invite_code=get("REFTRACK_OWNER_INVITE_CODE", referral.default_invite_code),
            full_name=get("REFTRACK_OWNER_NAME"),
        )

        pipeline = PipelineOptions(
            max_retries=_parse_int(get("REFTRACK_MAX_RETRIES"), 3),
            debug=get("REFTRACK_DEBUG", "false").lower() == "true",
        )
        if get("REFTRACK_EARLY_UPDATES", "drop").lower() == "queue":
            pipeline.early_update_policy = UpdatePolicy.QUEUE

        webhooks = WebhookSettings(
            enabled=get("REFTRACK_WEBHOOK_ENABLED", "false").lower() == "true",
            endpoints={
                "registration": get("REFTRACK_WEBHOOK_REGISTRATION_URL"),
                "milestone": get("REFTRACK_WEBHOOK_MILESTONE_URL"),
                "referral": get("REFTRACK_WEBHOOK_REFERRAL_URL"),
                "custom": get("REFTRACK_WEBHOOK_CUSTOM_URL"),
            },
            secret=get("REFTRACK_WEBHOOK_SECRET"),
            retries=_parse_int(get("REFTRACK_WEBHOOK_RETRIES"), 3),
            timeout=_parse_int(get("REFTRACK_WEBHOOK_TIMEOUT_MS"), 5000) / 1000,
        )

        return cls(
            backend=backend,
            page_owner=page_owner,
            referral=referral,
            pipeline=pipeline,
            webhooks=webhooks,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": {
                "kind": self.backend.kind.value,
                "url": self.backend.endpoint.url,
                "api_key": self.backend.endpoint.api_key,
                "path": self.backend.endpoint.path,
                "csrf_token": self.backend.endpoint.csrf_token,
                "field_mapping": self.backend.field_mapping,
            },
            "page_owner": {
                "username": self.page_owner.username,
                "invite_code": self.page_owner.invite_code,
                "full_name": self.page_owner.full_name,
            },
            "referral": {
                "key_prefix": self.referral.key_prefix,
                "default_referrer": self.referral.default_referrer,
                "default_invite_code": self.referral.default_invite_code,
                "registration_urls": self.referral.registration_urls,
                "cookie_days": self.referral.cookie_days,
            },
            "pipeline": {
                "track_page_views": self.pipeline.track_page_views,
                "track_clicks": self.pipeline.track_clicks,
                "track_time_on_page": self.pipeline.track_time_on_page,
                "track_registrations": self.pipeline.track_registrations,
                "time_on_page_interval": self.pipeline.time_on_page_interval,
                "max_retries": self.pipeline.max_retries,
                "retry_delay": self.pipeline.retry_delay,
                "early_update_policy": self.pipeline.early_update_policy.value,
                "debug": self.pipeline.debug,
            },
            "webhooks": {
                "enabled": self.webhooks.enabled,
                "endpoints": self.webhooks.endpoints,
                "secret": self.webhooks.secret,
                "retries": self.webhooks.retries,
                "timeout": self.webhooks.timeout,
            },
            "milestones": {
                "thresholds": self.milestones.thresholds,
                "check_interval": self.milestones.check_interval,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackerSettings":
        settings = cls()

        b = data.get("backend", {})
        settings.backend = BackendConfig(
            kind=_parse_backend_kind(b.get("kind", "supabase")),
            endpoint=EndpointConfig(
                url=b.get("url", ""),
                api_key=b.get("api_key", ""),
                path=b.get("path", ""),
                csrf_token=b.get("csrf_token", ""),
            ),
            field_mapping=b.get("field_mapping", {}),
        )

        o = data.get("page_owner", {})
        settings.page_owner = PageOwner(
            username=o.get("username", settings.page_owner.username),
            invite_code=o.get("invite_code", settings.page_owner.invite_code),
            full_name=o.get("full_name", ""),
        )

        r = data.get("referral", {})
        referral = settings.referral
        referral.key_prefix = r.get("key_prefix", referral.key_prefix)
        referral.default_referrer = r.get("default_referrer", referral.default_referrer)
        referral.default_invite_code = r.get("default_invite_code", referral.default_invite_code)
        referral.registration_urls = r.get("registration_urls", referral.registration_urls)
        referral.cookie_days = r.get("cookie_days", referral.cookie_days)

        p = data.get("pipeline", {})
        pipeline = settings.pipeline
        pipeline.track_page_views = p.get("track_page_views", True)
        pipeline.track_clicks = p.get("track_clicks", True)
        pipeline.track_time_on_page = p.get("track_time_on_page", True)
        pipeline.track_registrations = p.get("track_registrations", True)
        pipeline.time_on_page_interval = p.get("time_on_page_interval", 30.0)
        pipeline.max_retries = p.get("max_retries", 3)
        pipeline.retry_delay = p.get("retry_delay", 1.0)
        pipeline.early_update_policy = UpdatePolicy(p.get("early_update_policy", "drop"))
        pipeline.debug = p.get("debug", False)

        w = data.get("webhooks", {})
        settings.webhooks = WebhookSettings(
            enabled=w.get("enabled", False),
            endpoints={**settings.webhooks.endpoints, **w.get("endpoints", {})},
            secret=w.get("secret", ""),
            retries=w.get("retries", 3),
            timeout=w.get("timeout", 5.0),
        )

        m = data.get("milestones", {})
        if m.get("thresholds"):
            settings.milestones.thresholds = {
                category: [int(v) for v in values]
                for category, values in m["thresholds"].items()
            }
        settings.milestones.check_interval = m.get("check_interval", 60.0)

        return settings


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_backend_kind(value: Optional[str]) -> BackendKind:
    if is_placeholder(value):
        return BackendKind.SUPABASE
    try:
        return BackendKind(value.lower())
    except ValueError:
        logger.warning(f"Unknown analytics backend {value!r}, using supabase")
        return BackendKind.SUPABASE


class SettingsManager:
    """Load and persist tracker settings as JSON."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path.home() / ".reftrack" / "settings.json"
        self.settings = self._load_settings()

    def _load_settings(self) -> TrackerSettings:
        """Load settings from file, falling back to the environment."""
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    return TrackerSettings.from_dict(json.load(f))
            except (OSError, ValueError) as e:
                logger.error(f"Error loading settings: {e}")

        return TrackerSettings.from_env()

    def save_settings(self):
        """Save settings to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(self.settings.to_dict(), f, indent=2)

    def unresolved_placeholders(self) -> List[str]:
        """Dotted names of string settings that still hold a template token."""
        found = []

        def walk(prefix: str, value: Any):
            if isinstance(value, dict):
                for k, v in value.items():
                    walk(f"{prefix}.{k}" if prefix else str(k), v)
            elif isinstance(value, str) and PLACEHOLDER_MARKER in value:
                found.append(prefix)

        walk("", self.settings.to_dict())
        return found
