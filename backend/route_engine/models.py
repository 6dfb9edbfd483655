from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class RouteProvider(str, Enum):
    MAPBOX = "mapbox"
    ORS = "ors"
    FALLBACK = "fallback"


class Coordinate(BaseModel):
    """A WGS84 point. Mappings may use lat/lng/lon as well as the full names."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(
        ...,
        ge=-180,
        le=180,
        validation_alias=AliasChoices("longitude", "lng", "lon"),
    )

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def finite_number(cls, v: Any) -> Any:
        # bool is an int subclass and numeric strings would coerce; neither is a coordinate.
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("must be a number")
        try:
            finite = math.isfinite(v)
        except OverflowError:
            # ints beyond float range
            finite = False
        if not finite:
            raise ValueError("must be finite")
        return v


class RouteQuery(BaseModel):
    origin: Coordinate
    destination: Coordinate


class RouteResult(BaseModel):
    duration_s: float | None = Field(default=None, ge=0)
    distance_m: float | None = Field(default=None, ge=0)
    instructions: list[str] | None = None
    # Opaque; carried as the provider sent it.
    geometry: Any | None = None
    provider: RouteProvider
    cached_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def fallback_has_no_metrics(self) -> "RouteResult":
        if self.provider is RouteProvider.FALLBACK and (
            self.duration_s is not None or self.distance_m is not None
        ):
            raise ValueError("fallback results carry no duration or distance")
        return self

    @property
    def is_fallback(self) -> bool:
        return self.provider is RouteProvider.FALLBACK


class CacheEntry(BaseModel):
    key: str
    value: RouteResult
    stored_at: float


class ResolutionState(BaseModel):
    """Session state of one resolver; the UI reads snapshots of it."""

    is_loading: bool = False
    current_route: RouteResult | None = None
    error: str | None = None
    is_offline: bool = False
    retry_count: int = Field(default=0, ge=0)
    last_retry_at: float | None = None


# Backend relay wire format.


class LatLon(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


RelayProfile = Literal["driving-hgv", "driving-car"]


class RelayRequest(BaseModel):
    """Accepts snake_case or the mobile client's camelCase; dumps camelCase by alias."""

    origin: LatLon
    destination: LatLon
    provider: Literal["mapbox", "ors"] = "ors"
    profile: RelayProfile = "driving-hgv"
    mapbox_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("mapbox_token", "mapboxToken"),
        serialization_alias="mapboxToken",
    )
    ors_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ors_key", "orsKey"),
        serialization_alias="orsKey",
    )


class RelayResponse(BaseModel):
    duration_sec: float | None = Field(
        default=None,
        validation_alias=AliasChoices("duration_sec", "durationSec"),
        serialization_alias="durationSec",
    )
    distance_meters: float | None = Field(
        default=None,
        validation_alias=AliasChoices("distance_meters", "distanceMeters"),
        serialization_alias="distanceMeters",
    )
