from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from config import Settings
from models import CacheEntry


logger = logging.getLogger(__name__)

CATEGORIES_KEY = "categories:list"


def analytics_key(user_id: int) -> str:
    return f"analytics:user:{user_id}"


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryCacheBackend:
    """Process-local store; entries expire lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class DatabaseCacheBackend:
    """Shared store in the ``cache_entries`` table.

    Uses its own sessions so cache traffic never joins a request's unit of work.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._session_factory() as session:
            entry = session.scalar(
                select(CacheEntry).where(
                    CacheEntry.key == key, CacheEntry.expires_at > self._clock()
                )
            )
            return entry.value if entry else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._session_factory() as session:
            session.merge(CacheEntry(key=key, value=value, expires_at=expires_at))
            session.commit()

    def delete(self, key: str) -> None:
        with self._session_factory() as session:
            session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            session.commit()

    def purge_expired(self) -> int:
        with self._session_factory() as session:
            result = session.execute(
                delete(CacheEntry).where(CacheEntry.expires_at <= self._clock())
            )
            session.commit()
            return int(result.rowcount or 0)


class Cache:
    """JSON cache facade. Backend failures degrade to a miss and are logged."""

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend

    def get(self, key: str) -> Optional[object]:
        try:
            raw = self.backend.get(key)
        except Exception:
            logger.warning(f"cache_get_failed: key={key}", exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"cache_value_corrupt: key={key}")
            return None

    def set(self, key: str, value: object, ttl_seconds: int) -> None:
        try:
            self.backend.set(key, json.dumps(value), ttl_seconds)
        except Exception:
            logger.warning(f"cache_set_failed: key={key}", exc_info=True)

    def delete(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except Exception:
            logger.warning(f"cache_delete_failed: key={key}", exc_info=True)


def build_cache(settings: Settings, session_factory: Optional[sessionmaker] = None) -> Cache:
    backend_name = settings.cache_backend
    if backend_name == "memory":
        backend: CacheBackend = MemoryCacheBackend()
    elif backend_name == "database":
        if session_factory is None:
            from database import SessionLocal

            session_factory = SessionLocal
        backend = DatabaseCacheBackend(session_factory)
    else:
        raise ValueError(f"Unsupported cache backend: {backend_name}")
    logger.info(f"cache_backend_selected: backend={backend_name}")
    return Cache(backend)
