from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Final

import httpx

from .models import RouteProvider, RouteQuery, RouteResult
from .settings import settings


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRetryableError(ProviderError):
    """A provider error that is likely transient (rate limit, 5xx)."""

    pass


_RETRYABLE_STATUS: Final[set[int]] = {408, 425, 429, 500, 502, 503, 504}
_ABSENT_STRINGS: Final[set[str]] = {"", "undefined", "null"}


def _pick(value: str | None) -> str | None:
    text = value.strip() if isinstance(value, str) else ""
    if text.lower() in _ABSENT_STRINGS:
        return None
    return text


@dataclass(frozen=True)
class ProviderCredentials:
    mapbox_token: str | None = None
    ors_api_key: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mapbox_token", _pick(self.mapbox_token))
        object.__setattr__(self, "ors_api_key", _pick(self.ors_api_key))

    @classmethod
    def from_settings(cls) -> ProviderCredentials:
        return cls(mapbox_token=settings.mapbox_token, ors_api_key=settings.ors_api_key)

    def for_provider(self, provider: RouteProvider) -> str | None:
        if provider is RouteProvider.MAPBOX:
            return self.mapbox_token
        if provider is RouteProvider.ORS:
            return self.ors_api_key
        return None

    def __repr__(self) -> str:
        # Never leak tokens into logs or tracebacks.
        return (
            f"ProviderCredentials(mapbox_token={'set' if self.mapbox_token else None}, "
            f"ors_api_key={'set' if self.ors_api_key else None})"
        )


def select_provider(credentials: ProviderCredentials) -> RouteProvider | None:
    """Mapbox first, then ORS. The order is a product decision; keep it."""
    if credentials.mapbox_token:
        return RouteProvider.MAPBOX
    if credentials.ors_api_key:
        return RouteProvider.ORS
    return None


@dataclass(frozen=True)
class ProviderRequest:
    method: str
    url: str
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    json: dict[str, Any] | None = None


@dataclass(frozen=True)
class ParsedRoute:
    duration_s: float
    distance_m: float
    instructions: list[str] | None = None
    geometry: Any | None = None

    def to_result(self, provider: RouteProvider) -> RouteResult:
        return RouteResult(
            duration_s=self.duration_s,
            distance_m=self.distance_m,
            instructions=self.instructions,
            geometry=self.geometry,
            provider=provider,
        )


def _metric(value: Any, *, label: str, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ProviderError(f"{label} response has no numeric {field_name}")
    return float(value)


def _first_route(data: Any, *, label: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ProviderError(f"{label} returned a non-object payload")
    routes = data.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        raise ProviderError(f"{label} returned no routes")
    return routes[0]


# Mapbox has no truck profile; ORS-style names map to its plain driving profile.
_MAPBOX_PROFILES: Final[dict[str, str]] = {"driving-hgv": "driving", "driving-car": "driving"}


def _mapbox_profile(profile: str) -> str:
    return _MAPBOX_PROFILES.get(profile, profile)


def _build_mapbox_request(query: RouteQuery, credential: str, profile: str, base_url: str) -> ProviderRequest:
    o, d = query.origin, query.destination
    coords = f"{o.longitude},{o.latitude};{d.longitude},{d.latitude}"
    return ProviderRequest(
        method="GET",
        url=f"{base_url.rstrip('/')}/directions/v5/mapbox/{_mapbox_profile(profile)}/{coords}",
        params={
            "alternatives": "false",
            "overview": "simplified",
            "geometries": "geojson",
            "steps": "true",
            "access_token": credential,
        },
    )


def _parse_mapbox_response(data: Any) -> ParsedRoute:
    if isinstance(data, dict) and data.get("code") not in (None, "Ok"):
        raise ProviderError(f"Mapbox error code={data.get('code')} message={data.get('message')}")
    route = _first_route(data, label="Mapbox")

    instructions: list[str] = []
    for leg in route.get("legs") or []:
        for step in (leg or {}).get("steps") or []:
            text = ((step or {}).get("maneuver") or {}).get("instruction")
            if isinstance(text, str) and text:
                instructions.append(text)

    return ParsedRoute(
        duration_s=_metric(route.get("duration"), label="Mapbox", field_name="duration"),
        distance_m=_metric(route.get("distance"), label="Mapbox", field_name="distance"),
        instructions=instructions or None,
        geometry=route.get("geometry"),
    )


def _build_ors_request(query: RouteQuery, credential: str, profile: str, base_url: str) -> ProviderRequest:
    o, d = query.origin, query.destination
    return ProviderRequest(
        method="POST",
        url=f"{base_url.rstrip('/')}/v2/directions/{profile}",
        headers={"Authorization": credential, "content-type": "application/json"},
        json={"coordinates": [[o.longitude, o.latitude], [d.longitude, d.latitude]]},
    )


def _parse_ors_response(data: Any) -> ParsedRoute:
    route = _first_route(data, label="ORS")
    summary = route.get("summary")
    if not isinstance(summary, dict):
        raise ProviderError("ORS response has no route summary")

    instructions: list[str] = []
    for segment in route.get("segments") or []:
        for step in (segment or {}).get("steps") or []:
            text = (step or {}).get("instruction")
            if isinstance(text, str) and text:
                instructions.append(text)

    # ORS drops zero-valued summary fields (e.g. origin == destination).
    return ParsedRoute(
        duration_s=_metric(summary.get("duration", 0.0), label="ORS", field_name="duration"),
        distance_m=_metric(summary.get("distance", 0.0), label="ORS", field_name="distance"),
        instructions=instructions or None,
        geometry=route.get("geometry"),
    )


@dataclass(frozen=True)
class ProviderSpec:
    provider: RouteProvider
    label: str
    build_request: Callable[[RouteQuery, str, str, str], ProviderRequest]
    parse_response: Callable[[Any], ParsedRoute]
    base_url: Callable[[], str]


PROVIDERS: Final[dict[RouteProvider, ProviderSpec]] = {
    RouteProvider.MAPBOX: ProviderSpec(
        provider=RouteProvider.MAPBOX,
        label="Mapbox",
        build_request=_build_mapbox_request,
        parse_response=_parse_mapbox_response,
        base_url=lambda: settings.mapbox_base_url,
    ),
    RouteProvider.ORS: ProviderSpec(
        provider=RouteProvider.ORS,
        label="ORS",
        build_request=_build_ors_request,
        parse_response=_parse_ors_response,
        base_url=lambda: settings.ors_base_url,
    ),
}


def _format_provider_error(resp: httpx.Response, *, label: str) -> str:
    """Best-effort decode of provider JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                message = err.get("message")
                code = err.get("code")
            else:
                message = data.get("message") or err
                code = data.get("code")
            if code and message:
                return f"{label} {resp.status_code} {code}: {message}"
            if message:
                return f"{label} {resp.status_code}: {message}"
            if code:
                return f"{label} {resp.status_code} {code}"
    except ValueError:
        # fall through to text
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"{label} {resp.status_code}: {body}"
    return f"{label} HTTP {resp.status_code}"


async def request_route(
    client: httpx.AsyncClient,
    provider: RouteProvider,
    query: RouteQuery,
    *,
    credential: str,
    profile: str,
    timeout_s: float | None = None,
) -> ParsedRoute:
    """One provider call, no retries. Raises ProviderError or an httpx error."""
    spec = PROVIDERS.get(provider)
    if spec is None:
        raise ProviderError(f"no direct endpoint for provider {provider.value!r}")

    req = spec.build_request(query, credential, profile, spec.base_url())
    resp = await client.request(
        req.method,
        req.url,
        params=req.params or None,
        headers=req.headers or None,
        json=req.json,
        timeout=timeout_s if timeout_s is not None else httpx.USE_CLIENT_DEFAULT,
    )

    if resp.status_code in _RETRYABLE_STATUS:
        raise ProviderRetryableError(
            _format_provider_error(resp, label=spec.label), status_code=resp.status_code
        )
    if resp.status_code >= 400:
        raise ProviderError(_format_provider_error(resp, label=spec.label), status_code=resp.status_code)

    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderError(f"{spec.label} returned invalid JSON") from exc
    return spec.parse_response(data)
