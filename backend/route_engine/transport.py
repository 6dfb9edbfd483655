from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal, Protocol

import httpx

from .logging_utils import log_event
from .models import RelayRequest, RelayResponse, RouteProvider, RouteQuery, RouteResult
from .providers import ProviderCredentials, ProviderError, request_route
from .settings import settings

Channel = Literal["direct", "relay"]


@dataclass
class AttemptRecord:
    channel: Channel
    ok: bool
    elapsed_ms: float
    reason: str | None = None
    error: str | None = None


@dataclass
class TransportOutcome:
    provider: RouteProvider
    result: RouteResult | None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def last_error(self) -> str | None:
        for attempt in reversed(self.attempts):
            if attempt.ok or attempt.reason == "relay_unconfigured":
                continue
            if attempt.error:
                return attempt.error
        return None


class RouteTransport(Protocol):
    async def fetch(
        self,
        query: RouteQuery,
        provider: RouteProvider,
        credentials: ProviderCredentials,
    ) -> TransportOutcome: ...


def _classify(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, ProviderError):
        return "http_status" if exc.status_code is not None else "provider_response"
    if isinstance(exc, httpx.TransportError):
        return "network"
    return "unexpected"


def _describe(exc: BaseException, *, channel: Channel, timeout_s: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"{channel} call timed out after {timeout_s:g}s"
    # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
    msg = str(exc).strip()
    return f"{type(exc).__name__}: {msg}" if msg else f"{type(exc).__name__}: {exc!r}"


class TransportChain:
    """Direct provider call first, then the backend relay.

    Each attempt has its own timeout and the relay never inherits time left
    over from a slow direct call. A timeout only stops this chain from
    waiting; it does not promise the in-flight request was torn down on the
    wire. Failures are recorded on the outcome, never raised.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        relay_base_url: str | None = None,
        direct_timeout_s: float | None = None,
        relay_timeout_s: float | None = None,
        profile: str | None = None,
    ) -> None:
        self.relay_base_url = (
            relay_base_url if relay_base_url is not None else settings.relay_base_url
        ).rstrip("/")
        self.direct_timeout_s = float(direct_timeout_s or settings.direct_timeout_s)
        self.relay_timeout_s = float(relay_timeout_s or settings.relay_timeout_s)
        self.profile = profile or settings.routing_profile

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(max(self.direct_timeout_s, self.relay_timeout_s)),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _direct(
        self, query: RouteQuery, provider: RouteProvider, credentials: ProviderCredentials
    ) -> RouteResult:
        credential = credentials.for_provider(provider)
        if not credential:
            raise ProviderError(f"no credential configured for {provider.value}")
        parsed = await request_route(
            self._client,
            provider,
            query,
            credential=credential,
            profile=self.profile,
            timeout_s=self.direct_timeout_s,
        )
        return parsed.to_result(provider)

    async def _relay(
        self, query: RouteQuery, provider: RouteProvider, credentials: ProviderCredentials
    ) -> RouteResult:
        body = RelayRequest(
            origin={"lat": query.origin.latitude, "lon": query.origin.longitude},
            destination={"lat": query.destination.latitude, "lon": query.destination.longitude},
            provider=provider.value,
            profile=self.profile if self.profile in ("driving-hgv", "driving-car") else "driving-hgv",
            mapbox_token=credentials.mapbox_token if provider is RouteProvider.MAPBOX else None,
            ors_key=credentials.ors_api_key if provider is RouteProvider.ORS else None,
        )
        resp = await self._client.post(
            f"{self.relay_base_url}/route/eta",
            json=body.model_dump(mode="json", by_alias=True, exclude_none=True),
            timeout=self.relay_timeout_s,
        )
        if resp.status_code >= 400:
            detail = (resp.text or "").strip().replace("\n", " ")[:240]
            raise ProviderError(
                f"relay {resp.status_code}: {detail}" if detail else f"relay HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            data = RelayResponse.model_validate(resp.json())
        except ValueError as exc:
            raise ProviderError("relay returned an invalid payload") from exc
        if data.duration_sec is None or data.distance_meters is None:
            raise ProviderError("relay returned no route metrics")

        # Tagged with the selected provider; the relay is a path, not a source.
        return RouteResult(
            duration_s=data.duration_sec,
            distance_m=data.distance_meters,
            provider=provider,
        )

    async def _attempt(
        self,
        channel: Channel,
        provider: RouteProvider,
        call: Callable[[], Awaitable[RouteResult]],
        timeout_s: float,
    ) -> tuple[RouteResult | None, AttemptRecord]:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(call(), timeout=timeout_s)
        except Exception as exc:  # every failure only drives fallthrough
            record = AttemptRecord(
                channel=channel,
                ok=False,
                elapsed_ms=round((time.monotonic() - started) * 1000.0, 1),
                reason=_classify(exc),
                error=_describe(exc, channel=channel, timeout_s=timeout_s),
            )
            log_event(
                "route_attempt",
                level=logging.WARNING,
                channel=channel,
                provider=provider.value,
                ok=False,
                reason=record.reason,
                error=record.error,
                elapsed_ms=record.elapsed_ms,
            )
            return None, record

        record = AttemptRecord(
            channel=channel,
            ok=True,
            elapsed_ms=round((time.monotonic() - started) * 1000.0, 1),
        )
        log_event(
            "route_attempt",
            channel=channel,
            provider=provider.value,
            ok=True,
            elapsed_ms=record.elapsed_ms,
        )
        return result, record

    async def fetch(
        self,
        query: RouteQuery,
        provider: RouteProvider,
        credentials: ProviderCredentials,
    ) -> TransportOutcome:
        outcome = TransportOutcome(provider=provider, result=None)

        result, record = await self._attempt(
            "direct",
            provider,
            lambda: self._direct(query, provider, credentials),
            self.direct_timeout_s,
        )
        outcome.attempts.append(record)
        if result is not None:
            outcome.result = result
            return outcome

        if not self.relay_base_url:
            outcome.attempts.append(
                AttemptRecord(
                    channel="relay",
                    ok=False,
                    elapsed_ms=0.0,
                    reason="relay_unconfigured",
                    error="relay URL not configured",
                )
            )
            return outcome

        result, record = await self._attempt(
            "relay",
            provider,
            lambda: self._relay(query, provider, credentials),
            self.relay_timeout_s,
        )
        outcome.attempts.append(record)
        outcome.result = result
        return outcome
