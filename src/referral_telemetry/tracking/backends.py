"""Analytics backend adapters.

Every backend kind gets one adapter behind the same interface: ``create``
returns the id the backend assigned, ``update`` patches that record.  The
adapter is picked once from ``BackendKind`` through ``BACKENDS``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from ..core.config import BackendConfig, BackendKind, EndpointConfig, is_placeholder
from ..core.errors import ConfigurationAbsent, TransportFailure

logger = logging.getLogger(__name__)


@dataclass
class EventRecord:
    """The backend row representing this page visit."""
    record_id: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)


class FieldMapper:
    """Translate semantic field names to a backend's column names."""

    def __init__(self, mapping: Dict[str, str]):
        self.mapping = mapping

    def map(self, data: Dict[str, Any]) -> Dict[str, Any]:
        # Unmapped fields pass through unchanged
        return {self.mapping.get(key, key): value for key, value in data.items()}


class BackendAdapter(ABC):
    """Base class for analytics backends."""

    kind: BackendKind

    def __init__(
        self,
        endpoint: EndpointConfig,
        path: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        self.endpoint = endpoint
        self.path = path
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return self.endpoint.configured

    @property
    def base_url(self) -> str:
        return self.endpoint.url.rstrip('/')

    @abstractmethod
    def _headers(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def create_url(self) -> str:
        pass

    @abstractmethod
    def update_url(self, record_id: str) -> str:
        pass

    update_method = "PUT"

    def beacon_url(self, record_id: str) -> str:
        """Where the page-exit beacon goes."""
        return self.update_url(record_id)

    def _request(self, method: str, url: str, payload: Dict[str, Any]) -> requests.Response:
        if not self.configured:
            raise ConfigurationAbsent(f"{self.kind.value} endpoint not configured")
        try:
            response = self.session.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportFailure(f"{self.kind.value} request failed: {e}") from e

        if not response.ok:
            raise TransportFailure(
                f"{self.kind.value} error: {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def _record_id_from(self, response: requests.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, list):
            body = body[0] if body else None
        if isinstance(body, dict):
            if body.get('id') is not None:
                return str(body['id'])
            data = body.get('data')
            if isinstance(data, dict) and data.get('id') is not None:
                return str(data['id'])
        return None

    def create(self, fields: Dict[str, Any]) -> Optional[str]:
        """Create the record and return the backend-assigned id."""
        response = self._request("POST", self.create_url(), fields)
        return self._record_id_from(response)

    def update(self, record_id: str, fields: Dict[str, Any]):
        """Partially update an existing record."""
        self._request(self.update_method, self.update_url(record_id), fields)

    def send(self, record: EventRecord, is_update: bool) -> Optional[str]:
        """Uniform entry point: create, or update ``record.record_id``."""
        if is_update:
            if not record.record_id:
                raise ValueError("update requires a record id")
            self.update(record.record_id, record.fields)
            return None
        return self.create(record.fields)


class SupabaseAdapter(BackendAdapter):
    """PostgREST table behind Supabase."""

    kind = BackendKind.SUPABASE
    update_method = "PATCH"

    def _headers(self) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'apikey': self.endpoint.api_key,
            'Authorization': f'Bearer {self.endpoint.api_key}',
            'Prefer': 'return=representation',
        }

    def create_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.path}"

    def update_url(self, record_id: str) -> str:
        return f"{self.base_url}/rest/v1/{self.path}?id=eq.{record_id}"


class NestJSAdapter(BackendAdapter):
    """NestJS REST controller."""

    kind = BackendKind.NESTJS

    def _headers(self) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.endpoint.api_key}',
            'X-API-Key': self.endpoint.api_key,
        }

    def create_url(self) -> str:
        return f"{self.base_url}{self.path}"

    def update_url(self, record_id: str) -> str:
        return f"{self.base_url}{self.path}/{record_id}"


class LaravelAdapter(BackendAdapter):
    """Laravel API route; sends the anti-forgery token when one is configured."""

    kind = BackendKind.LARAVEL

    def _headers(self) -> Dict[str, str]:
        csrf_token = self.endpoint.csrf_token
        return {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.endpoint.api_key}',
            'Accept': 'application/json',
            'X-CSRF-TOKEN': '' if is_placeholder(csrf_token) else csrf_token,
        }

    def create_url(self) -> str:
        return f"{self.base_url}{self.path}"

    def update_url(self, record_id: str) -> str:
        return f"{self.base_url}{self.path}/{record_id}"


class CustomAdapter(BackendAdapter):
    """Any REST API that accepts POST to create and PUT to update."""

    kind = BackendKind.CUSTOM

    def _headers(self) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.endpoint.api_key}',
        }

    def create_url(self) -> str:
        return f"{self.base_url}{self.path}"

    def update_url(self, record_id: str) -> str:
        return f"{self.base_url}{self.path}/{record_id}"


# Adapter registry
BACKENDS = {
    BackendKind.SUPABASE: SupabaseAdapter,
    BackendKind.NESTJS: NestJSAdapter,
    BackendKind.LARAVEL: LaravelAdapter,
    BackendKind.CUSTOM: CustomAdapter,
}


def get_backend(
    config: BackendConfig,
    session: Optional[requests.Session] = None,
    timeout: float = 10.0,
) -> BackendAdapter:
    """Build the adapter for a backend configuration."""
    if config.kind not in BACKENDS:
        raise ValueError(f"Unknown backend: {config.kind}. Available: {[k.value for k in BACKENDS]}")
    return BACKENDS[config.kind](
        endpoint=config.endpoint,
        path=config.endpoint_path(),
        session=session,
        timeout=timeout,
    )
