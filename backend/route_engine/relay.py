from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Annotated

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .logging_utils import log_event
from .models import Coordinate, RelayRequest, RelayResponse, RouteProvider, RouteQuery
from .providers import PROVIDERS, ProviderCredentials, ProviderError, request_route
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.relay_upstream_timeout_s),
        headers={"accept": "application/json"},
    )
    yield
    await app.state.http.aclose()


app = FastAPI(title="Route ETA Relay", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def upstream_client(request: Request) -> httpx.AsyncClient:
    client: httpx.AsyncClient | None = getattr(request.app.state, "http", None)  # type: ignore[attr-defined]
    if client is None:
        raise HTTPException(status_code=503, detail="upstream client not initialised")
    return client


UpstreamDep = Annotated[httpx.AsyncClient, Depends(upstream_client)]


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/route/eta", response_model=RelayResponse)
async def route_eta(payload: RelayRequest, client: UpstreamDep) -> RelayResponse:
    provider = RouteProvider(payload.provider)
    label = PROVIDERS[provider].label

    # Request credentials win; the relay's own configuration is the fallback.
    requested = ProviderCredentials(mapbox_token=payload.mapbox_token, ors_api_key=payload.ors_key)
    credential = requested.for_provider(provider) or ProviderCredentials.from_settings().for_provider(provider)
    if not credential:
        raise HTTPException(status_code=400, detail=f"{label} credential required")

    query = RouteQuery(
        origin=Coordinate(latitude=payload.origin.lat, longitude=payload.origin.lon),
        destination=Coordinate(latitude=payload.destination.lat, longitude=payload.destination.lon),
    )
    log_event("relay_request", provider=provider.value, profile=payload.profile)

    try:
        parsed = await request_route(
            client,
            provider,
            query,
            credential=credential,
            profile=payload.profile,
            timeout_s=settings.relay_upstream_timeout_s,
        )
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    except httpx.TimeoutException as e:
        raise HTTPException(status_code=504, detail=f"{label} request timed out") from e
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"{label} request failed: {type(e).__name__}") from e

    return RelayResponse(duration_sec=parsed.duration_s, distance_meters=parsed.distance_m)
