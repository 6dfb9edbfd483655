from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import ValidationError

from .logging_utils import log_event
from .models import CacheEntry, RouteResult, utc_now
from .settings import settings

CACHE_KEY_PREFIX = "navigation_route_"

# One lock per process guards the read-modify-write of every cache document.
_LOCK = Lock()


class RouteCacheStore:
    """Durable key -> RouteResult store with a fixed TTL.

    The backing file is a flat JSON object shared with other app preferences;
    only keys under CACHE_KEY_PREFIX belong to the cache. Expiry is lazy: an
    entry older than the TTL is deleted by the read that finds it.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ttl_s: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self._ttl_s = max(1, int(ttl_s))
        self._clock = clock

        self._hits = 0
        self._misses = 0
        self._expirations = 0

    def _read_document(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log_event(
                "route_cache_unreadable",
                level=logging.WARNING,
                path=str(self.path),
                error=f"{type(exc).__name__}: {exc}",
            )
            return {}

        if not isinstance(raw, dict):
            return {}
        return raw

    def _write_document(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def _is_expired(self, stored_at: float) -> bool:
        return (self._clock() - stored_at) > self._ttl_s

    def get(self, key: str) -> RouteResult | None:
        storage_key = CACHE_KEY_PREFIX + key
        with _LOCK:
            document = self._read_document()
            raw = document.get(storage_key)
            if raw is None:
                self._misses += 1
                return None

            try:
                entry = CacheEntry.model_validate(raw)
            except ValidationError:
                # Unparseable entries are treated like expired ones.
                entry = None

            if entry is None or self._is_expired(entry.stored_at):
                document.pop(storage_key, None)
                self._write_document(document)
                self._misses += 1
                self._expirations += 1
                log_event("route_cache_expired", cache_key=key)
                return None

            self._hits += 1
            return entry.value.model_copy(update={"cached_at": utc_now()})

    def put(self, key: str, result: RouteResult) -> None:
        if result.is_fallback:
            raise ValueError("fallback results must not be cached")

        entry = CacheEntry(key=key, value=result, stored_at=self._clock())
        with _LOCK:
            document = self._read_document()
            document[CACHE_KEY_PREFIX + key] = entry.model_dump(mode="json")
            self._write_document(document)

    def delete(self, key: str) -> bool:
        with _LOCK:
            document = self._read_document()
            if document.pop(CACHE_KEY_PREFIX + key, None) is None:
                return False
            self._write_document(document)
            return True

    def clear(self) -> int:
        with _LOCK:
            document = self._read_document()
            route_keys = [k for k in document if k.startswith(CACHE_KEY_PREFIX)]
            for k in route_keys:
                del document[k]
            if route_keys:
                self._write_document(document)
            return len(route_keys)

    def snapshot(self) -> dict[str, Any]:
        with _LOCK:
            size = sum(1 for k in self._read_document() if k.startswith(CACHE_KEY_PREFIX))
            return {
                "size": size,
                "hits": self._hits,
                "misses": self._misses,
                "expirations": self._expirations,
                "ttl_s": self._ttl_s,
                "path": str(self.path),
            }


def default_route_cache() -> RouteCacheStore:
    return RouteCacheStore(settings.resolved_cache_path(), ttl_s=settings.route_cache_ttl_s)
