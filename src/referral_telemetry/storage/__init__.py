"""Key/value stores for persisted visitor state."""

from .stores import KeyValueStore, MemoryStore, JSONFileStore, CookieStore, UnavailableStore

__all__ = ["KeyValueStore", "MemoryStore", "JSONFileStore", "CookieStore", "UnavailableStore"]
