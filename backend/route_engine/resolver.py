from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from .cache_keys import derive_cache_key, parse_coordinate
from .degraded import degraded_result
from .errors import RouteInputError, normalize_reason_code
from .logging_utils import log_event
from .models import ResolutionState, RouteQuery, RouteResult
from .providers import ProviderCredentials, select_provider
from .retry_governor import RetryGovernor
from .route_cache import default_route_cache
from .settings import settings
from .transport import RouteTransport, TransportChain, TransportOutcome

OFFLINE_MESSAGE = "Offline mode - basic navigation only"
DEGRADED_MESSAGE = "Network unavailable, using basic mode"
NO_PROVIDER_MESSAGE = "No routing provider configured, using basic mode"


class RouteCache(Protocol):
    def get(self, key: str) -> RouteResult | None: ...

    def put(self, key: str, result: RouteResult) -> None: ...


class RouteResolver:
    """Resolves one navigation session's routes.

    resolve() always settles with a route (cached, live or fallback) unless
    the coordinates are malformed. retry() only touches the network and
    keeps the current route when it fails. One instance per session; state
    is never shared between instances.
    """

    def __init__(
        self,
        *,
        cache: RouteCache | None = None,
        transport: RouteTransport | None = None,
        online: Callable[[], Any] | None = None,
        credentials: Callable[[], ProviderCredentials] | None = None,
        governor: RetryGovernor | None = None,
        cache_io_timeout_s: float | None = None,
    ) -> None:
        self._cache = cache if cache is not None else default_route_cache()
        self._transport = transport if transport is not None else TransportChain()
        self._online = online or (lambda: True)
        self._credentials = credentials or ProviderCredentials.from_settings
        self._governor = governor or RetryGovernor()
        self._cache_io_timeout_s = float(cache_io_timeout_s or settings.cache_io_timeout_s)
        self._state = ResolutionState()

    @property
    def state(self) -> ResolutionState:
        return self._state.model_copy(deep=True)

    def clear(self) -> None:
        self._state.current_route = None
        self._state.error = None

    async def aclose(self) -> None:
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    def _validate(self, origin: Any, destination: Any) -> tuple[str, RouteQuery]:
        o = parse_coordinate(origin, label="origin")
        d = parse_coordinate(destination, label="destination")
        return derive_cache_key(o, d), RouteQuery(origin=o, destination=d)

    def _reject_input(self, exc: RouteInputError) -> None:
        self._state.error = str(exc)
        log_event(
            "route_input_rejected",
            level=logging.WARNING,
            reason_code=exc.reason_code,
            error=str(exc),
        )

    def _refresh_connectivity(self) -> bool:
        try:
            online = bool(self._online())
        except Exception as exc:  # a broken monitor reads as offline
            log_event("connectivity_probe_failed", level=logging.WARNING, error=repr(exc))
            online = False
        self._state.is_offline = not online
        return online

    async def _cache_get(self, key: str) -> RouteResult | None:
        try:
            cached = await asyncio.wait_for(
                asyncio.to_thread(self._cache.get, key),
                timeout=self._cache_io_timeout_s,
            )
        except (asyncio.TimeoutError, OSError) as exc:
            log_event("route_cache_io_failed", level=logging.WARNING, op="get", cache_key=key, error=repr(exc))
            return None
        log_event("route_cache_hit" if cached is not None else "route_cache_miss", cache_key=key)
        return cached

    async def _cache_put(self, key: str, result: RouteResult) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._cache.put, key, result),
                timeout=self._cache_io_timeout_s,
            )
        except (asyncio.TimeoutError, OSError) as exc:
            # The live result is still good; it just won't be there offline.
            log_event("route_cache_io_failed", level=logging.WARNING, op="put", cache_key=key, error=repr(exc))

    async def _fetch_live(self, query: RouteQuery) -> TransportOutcome | None:
        credentials = self._credentials()
        provider = select_provider(credentials)
        if provider is None:
            log_event("route_no_provider", level=logging.WARNING)
            return None
        return await self._transport.fetch(query, provider, credentials)

    async def _accept_live(self, key: str, result: RouteResult) -> None:
        await self._cache_put(key, result)
        self._state.current_route = result
        self._state.error = None
        self._governor.reset(self._state)
        log_event(
            "route_resolved",
            cache_key=key,
            provider=result.provider.value,
            duration_s=result.duration_s,
            distance_m=result.distance_m,
        )

    async def resolve(self, origin: Any, destination: Any) -> None:
        self._state.is_loading = True
        self._state.error = None
        try:
            try:
                key, query = self._validate(origin, destination)
            except RouteInputError as exc:
                self._reject_input(exc)
                return

            online = self._refresh_connectivity()

            cached = await self._cache_get(key)
            if cached is not None:
                self._state.current_route = cached
                return

            if not online:
                self._state.current_route = degraded_result()
                self._state.error = OFFLINE_MESSAGE
                log_event("route_degraded", cache_key=key, reason_code="offline")
                return

            outcome = await self._fetch_live(query)
            if outcome is not None and outcome.result is not None:
                await self._accept_live(key, outcome.result)
                return

            self._state.current_route = degraded_result()
            if outcome is None:
                self._state.error = NO_PROVIDER_MESSAGE
                reason_code = "no_provider_configured"
            else:
                last_error = outcome.last_error
                self._state.error = (
                    f"{DEGRADED_MESSAGE} (last error: {last_error})" if last_error else DEGRADED_MESSAGE
                )
                reason_code = normalize_reason_code(outcome.attempts[-1].reason if outcome.attempts else "")
            log_event("route_degraded", cache_key=key, reason_code=reason_code)
        finally:
            self._state.is_loading = False

    async def retry(self, origin: Any, destination: Any) -> None:
        try:
            key, query = self._validate(origin, destination)
        except RouteInputError as exc:
            self._reject_input(exc)
            return

        if not self._governor.admit(self._state):
            log_event("route_retry_rate_limited", cache_key=key)
            return

        self._state.is_loading = True
        self._state.error = None
        try:
            online = self._refresh_connectivity()
            outcome = await self._fetch_live(query) if online else None
            if outcome is not None and outcome.result is not None:
                await self._accept_live(key, outcome.result)
                return

            self._state.error = self._governor.failure_message(self._state, online=online)
            log_event(
                "route_retry_failed",
                level=logging.WARNING,
                cache_key=key,
                attempt=self._state.retry_count,
                online=online,
                last_error=outcome.last_error if outcome is not None else None,
            )
        finally:
            self._state.is_loading = False
