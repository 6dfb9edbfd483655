from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any

import pytest

from route_engine.models import RouteProvider, RouteQuery, RouteResult
from route_engine.providers import ProviderCredentials
from route_engine.resolver import (
    DEGRADED_MESSAGE,
    NO_PROVIDER_MESSAGE,
    OFFLINE_MESSAGE,
    RouteResolver,
)
from route_engine.retry_governor import RetryGovernor
from route_engine.route_cache import RouteCacheStore
from route_engine.transport import AttemptRecord, TransportOutcome

NYC = {"lat": 40.7128, "lng": -74.0060}
PHL = {"lat": 39.9526, "lng": -75.1652}
KEY = "40.7128,-74.0060_to_39.9526,-75.1652"
BOTH = ProviderCredentials(mapbox_token="pk.test", ors_api_key="ors-key")


def _live(provider: RouteProvider = RouteProvider.MAPBOX) -> RouteResult:
    return RouteResult(duration_s=5400.0, distance_m=150_000.0, provider=provider)


class FakeCache:
    def __init__(self, seed: dict[str, RouteResult] | None = None) -> None:
        self.data = dict(seed or {})
        self.gets = 0
        self.puts = 0

    def get(self, key: str) -> RouteResult | None:
        self.gets += 1
        return self.data.get(key)

    def put(self, key: str, result: RouteResult) -> None:
        self.puts += 1
        self.data[key] = result


class BrokenCache(FakeCache):
    def get(self, key: str) -> RouteResult | None:
        self.gets += 1
        raise OSError("storage unavailable")

    def put(self, key: str, result: RouteResult) -> None:
        self.puts += 1
        raise OSError("storage unavailable")


class SlowCache(FakeCache):
    def get(self, key: str) -> RouteResult | None:
        self.gets += 1
        time.sleep(0.3)
        return None


class FakeTransport:
    def __init__(self, result: RouteResult | None = None, error: str = "Mapbox 503: busy") -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[RouteQuery, RouteProvider]] = []

    async def fetch(
        self, query: RouteQuery, provider: RouteProvider, credentials: ProviderCredentials
    ) -> TransportOutcome:
        self.calls.append((query, provider))
        if self.result is not None:
            tagged = self.result.model_copy(update={"provider": provider})
            return TransportOutcome(
                provider=provider,
                result=tagged,
                attempts=[AttemptRecord(channel="direct", ok=True, elapsed_ms=12.0)],
            )
        return TransportOutcome(
            provider=provider,
            result=None,
            attempts=[
                AttemptRecord(channel="direct", ok=False, elapsed_ms=5000.0, reason="timeout", error="direct call timed out after 5s"),
                AttemptRecord(channel="relay", ok=False, elapsed_ms=40.0, reason="http_status", error=self.error),
            ],
        )


def _resolver(
    *,
    cache: Any = None,
    transport: FakeTransport | None = None,
    online: bool = True,
    credentials: ProviderCredentials = BOTH,
    cache_io_timeout_s: float = 2.0,
) -> RouteResolver:
    return RouteResolver(
        cache=cache if cache is not None else FakeCache(),
        transport=transport or FakeTransport(result=_live()),
        online=lambda: online,
        credentials=lambda: credentials,
        governor=RetryGovernor(min_interval_ms=2000, max_attempts=3),
        cache_io_timeout_s=cache_io_timeout_s,
    )


def test_cold_online_resolution_fetches_and_caches() -> None:
    cache = FakeCache()
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport)

    asyncio.run(resolver.resolve(NYC, PHL))

    state = resolver.state
    assert state.current_route is not None
    assert state.current_route.provider is RouteProvider.MAPBOX
    assert state.current_route.duration_s == 5400.0
    assert state.error is None
    assert state.is_loading is False
    assert state.is_offline is False
    assert state.retry_count == 0
    assert len(transport.calls) == 1
    assert KEY in cache.data


def test_second_resolution_is_served_from_cache() -> None:
    cache = FakeCache()
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport)

    asyncio.run(resolver.resolve(NYC, PHL))
    first = resolver.state.current_route
    asyncio.run(resolver.resolve(NYC, PHL))
    second = resolver.state.current_route

    assert len(transport.calls) == 1
    assert first is not None and second is not None
    assert second.duration_s == first.duration_s
    assert second.distance_m == first.distance_m


def test_offline_warm_cache_serves_route_without_network() -> None:
    cache = FakeCache({KEY: _live(RouteProvider.ORS)})
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport, online=False)

    asyncio.run(resolver.resolve(NYC, PHL))

    state = resolver.state
    assert state.current_route is not None
    assert state.current_route.provider is RouteProvider.ORS
    assert state.error is None
    assert state.is_offline is True
    assert transport.calls == []


def test_offline_warm_hour_old_entry_from_disk(tmp_path: Path) -> None:
    now = [1_700_000_000.0]
    store = RouteCacheStore(tmp_path / "cache.json", clock=lambda: now[0])
    store.put(KEY, _live())
    now[0] += 3600
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=store, transport=transport, online=False)

    asyncio.run(resolver.resolve(NYC, PHL))

    assert resolver.state.current_route is not None
    assert resolver.state.current_route.provider is RouteProvider.MAPBOX
    assert transport.calls == []


def test_offline_cold_cache_degrades_with_offline_message() -> None:
    cache = FakeCache()
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport, online=False)

    asyncio.run(resolver.resolve(NYC, PHL))

    state = resolver.state
    assert state.current_route is not None
    assert state.current_route.provider is RouteProvider.FALLBACK
    assert state.current_route.duration_s is None
    assert state.current_route.distance_m is None
    assert state.error == OFFLINE_MESSAGE
    assert transport.calls == []
    assert cache.puts == 0


def test_both_channels_failing_degrades_and_is_not_cached() -> None:
    cache = FakeCache()
    transport = FakeTransport(result=None, error="ProviderError: relay 502: upstream down")
    resolver = _resolver(cache=cache, transport=transport)

    asyncio.run(resolver.resolve(NYC, PHL))

    state = resolver.state
    assert state.current_route is not None and state.current_route.is_fallback
    assert state.error == f"{DEGRADED_MESSAGE} (last error: ProviderError: relay 502: upstream down)"
    assert state.is_loading is False
    assert cache.puts == 0
    assert cache.data == {}


def test_missing_credentials_never_touch_transport() -> None:
    transport = FakeTransport(result=_live())
    resolver = _resolver(transport=transport, credentials=ProviderCredentials())

    asyncio.run(resolver.resolve(NYC, PHL))

    assert transport.calls == []
    assert resolver.state.current_route is not None
    assert resolver.state.current_route.is_fallback
    assert resolver.state.error == NO_PROVIDER_MESSAGE


def test_ors_is_used_when_only_ors_is_configured() -> None:
    transport = FakeTransport(result=_live())
    resolver = _resolver(transport=transport, credentials=ProviderCredentials(ors_api_key="ors-key"))

    asyncio.run(resolver.resolve(NYC, PHL))

    assert [provider for _, provider in transport.calls] == [RouteProvider.ORS]
    assert resolver.state.current_route is not None
    assert resolver.state.current_route.provider is RouteProvider.ORS


@pytest.mark.parametrize(
    "origin",
    [{"lat": float("nan"), "lng": 0.0}, {"lat": 10**400, "lng": 0.0}, {"lat": 0.0, "lng": -(10**400)}],
)
def test_malformed_coordinates_do_nothing_but_report(origin: dict[str, Any]) -> None:
    cache = FakeCache()
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport)

    asyncio.run(resolver.resolve(origin, PHL))

    state = resolver.state
    assert state.error is not None and state.error.startswith("Invalid origin location")
    assert state.current_route is None
    assert state.is_loading is False
    assert cache.gets == 0 and cache.puts == 0
    assert transport.calls == []


def test_malformed_input_keeps_previous_route() -> None:
    resolver = _resolver()
    asyncio.run(resolver.resolve(NYC, PHL))
    asyncio.run(resolver.resolve(NYC, {"lat": 10.0}))

    state = resolver.state
    assert state.current_route is not None
    assert state.current_route.provider is RouteProvider.MAPBOX
    assert state.error is not None and "destination" in state.error


def test_cache_read_failure_is_a_miss() -> None:
    cache = BrokenCache()
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport)

    asyncio.run(resolver.resolve(NYC, PHL))

    # Live route still delivered even though the write failed too.
    assert len(transport.calls) == 1
    assert cache.puts == 1
    assert resolver.state.current_route is not None
    assert resolver.state.current_route.provider is RouteProvider.MAPBOX
    assert resolver.state.error is None


def test_slow_cache_read_times_out_as_miss() -> None:
    cache = SlowCache()
    transport = FakeTransport(result=_live())
    resolver = _resolver(cache=cache, transport=transport, cache_io_timeout_s=0.05)

    asyncio.run(resolver.resolve(NYC, PHL))

    assert len(transport.calls) == 1
    assert resolver.state.current_route is not None
    assert not resolver.state.current_route.is_fallback


def test_broken_connectivity_probe_reads_as_offline() -> None:
    def probe() -> bool:
        raise RuntimeError("no network stack")

    transport = FakeTransport(result=_live())
    resolver = RouteResolver(
        cache=FakeCache(),
        transport=transport,
        online=probe,
        credentials=lambda: BOTH,
        governor=RetryGovernor(min_interval_ms=2000, max_attempts=3),
    )

    asyncio.run(resolver.resolve(NYC, PHL))

    assert resolver.state.is_offline is True
    assert resolver.state.error == OFFLINE_MESSAGE
    assert transport.calls == []


def test_state_snapshots_are_isolated() -> None:
    resolver = _resolver()
    asyncio.run(resolver.resolve(NYC, PHL))

    snapshot = resolver.state
    snapshot.retry_count = 99
    snapshot.error = "tampered"

    assert resolver.state.retry_count == 0
    assert resolver.state.error is None


def test_resolvers_do_not_share_session_state() -> None:
    cache = FakeCache()
    online = _resolver(cache=cache)
    offline = _resolver(cache=FakeCache(), online=False)

    asyncio.run(online.resolve(NYC, PHL))
    asyncio.run(offline.resolve(NYC, PHL))

    assert online.state.current_route is not None and not online.state.current_route.is_fallback
    assert offline.state.current_route is not None and offline.state.current_route.is_fallback
    assert online.state.error is None


def test_clear_drops_route_and_error() -> None:
    resolver = _resolver(online=False)
    asyncio.run(resolver.resolve(NYC, PHL))
    resolver.clear()

    assert resolver.state.current_route is None
    assert resolver.state.error is None
