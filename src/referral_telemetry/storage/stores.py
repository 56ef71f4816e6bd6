"""Key/value stores backing visitor ids, attribution and milestone markers."""

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import quote, unquote

from ..core.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """String-valued store with optional per-key expiry."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Value for ``key`` or None when missing or expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[float] = None):
        """Store ``value``; ``ttl`` is in seconds."""
        pass

    @abstractmethod
    def delete(self, key: str):
        pass

    @abstractmethod
    def clear(self):
        pass


class MemoryStore(KeyValueStore):
    """In-process store; also the degraded mode when durable storage fails."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, str] = {}
        self._expires: Dict[str, float] = {}

    def get(self, key: str) -> Optional[str]:
        expires = self._expires.get(key)
        if expires is not None and expires <= self.clock():
            self.delete(key)
            return None
        return self._data.get(key)

    def set(self, key: str, value: str, ttl: Optional[float] = None):
        self._data[key] = value
        if ttl is None:
            self._expires.pop(key, None)
        else:
            self._expires[key] = self.clock() + ttl

    def delete(self, key: str):
        self._data.pop(key, None)
        self._expires.pop(key, None)

    def clear(self):
        self._data.clear()
        self._expires.clear()

    def keys(self) -> List[str]:
        return [k for k in list(self._data) if self.get(k) is not None]


class JSONFileStore(KeyValueStore):
    """Durable store kept as one JSON document on disk."""

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.clock = clock

    def _read(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {self.path}: {e}") from e
        except ValueError:
            logger.warning(f"Corrupt store {self.path}, starting empty")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Dict]):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        entry = self._read().get(key)
        if not entry:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self.clock():
            return None
        return entry.get("value")

    def set(self, key: str, value: str, ttl: Optional[float] = None):
        data = self._read()
        data[key] = {
            "value": value,
            "expires_at": self.clock() + ttl if ttl is not None else None,
        }
        self._write(data)

    def delete(self, key: str):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def clear(self):
        self._write({})


class CookieStore(MemoryStore):
    """Cookie jar: URL-encoded values, expiry, header round-tripping."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        path: str = "/",
        same_site: str = "Lax",
    ):
        super().__init__(clock=clock)
        self.cookie_path = path
        self.same_site = same_site

    def load_header(self, header: str):
        """Populate from a ``Cookie`` request header."""
        for part in header.split(';'):
            part = part.strip()
            if not part or '=' not in part:
                continue
            name, raw = part.split('=', 1)
            self._data[name.strip()] = unquote(raw)

    def header(self) -> str:
        """Render the live cookies as a ``Cookie`` request header."""
        return "; ".join(f"{k}={quote(self._data[k], safe='')}" for k in self.keys())

    def set_cookie_headers(self) -> List[str]:
        """``Set-Cookie`` values for every live cookie."""
        headers = []
        for key in self.keys():
            parts = [f"{key}={quote(self._data[key], safe='')}"]
            expires = self._expires.get(key)
            if expires is not None:
                when = datetime.fromtimestamp(expires, tz=timezone.utc)
                parts.append(f"expires={format_datetime(when, usegmt=True)}")
            parts.append(f"path={self.cookie_path}")
            parts.append(f"SameSite={self.same_site}")
            headers.append(";".join(parts))
        return headers


class UnavailableStore(KeyValueStore):
    """A store that refuses everything, like storage in a locked-down browser."""

    def get(self, key: str) -> Optional[str]:
        raise StorageUnavailable("storage disabled")

    def set(self, key: str, value: str, ttl: Optional[float] = None):
        raise StorageUnavailable("storage disabled")

    def delete(self, key: str):
        raise StorageUnavailable("storage disabled")

    def clear(self):
        raise StorageUnavailable("storage disabled")
