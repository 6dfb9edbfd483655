from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep the offline cache and logs in backend/out unless OUT_DIR says otherwise.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven) for the route resolution engine."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider credentials. Mapbox is the primary provider, ORS the secondary.
    mapbox_token: str = Field(default="", alias="MAPBOX_TOKEN")
    ors_api_key: str = Field(default="", alias="ORS_API_KEY")

    mapbox_base_url: str = Field(default="https://api.mapbox.com", alias="MAPBOX_BASE_URL")
    ors_base_url: str = Field(default="https://api.openrouteservice.org", alias="ORS_BASE_URL")
    # Empty disables the relayed attempt entirely.
    relay_base_url: str = Field(default="", alias="ROUTE_RELAY_BASE_URL")
    routing_profile: str = Field(default="driving-hgv", alias="ROUTING_PROFILE")

    direct_timeout_s: float = Field(default=5.0, gt=0.0, le=60.0, alias="ROUTE_DIRECT_TIMEOUT_S")
    relay_timeout_s: float = Field(default=3.0, gt=0.0, le=60.0, alias="ROUTE_RELAY_TIMEOUT_S")
    relay_upstream_timeout_s: float = Field(
        default=2.5,
        gt=0.0,
        le=60.0,
        alias="RELAY_UPSTREAM_TIMEOUT_S",
    )

    route_cache_ttl_s: int = Field(default=24 * 60 * 60, ge=1, alias="ROUTE_CACHE_TTL_S")
    route_cache_path: str = Field(default="", alias="ROUTE_CACHE_PATH")
    cache_io_timeout_s: float = Field(default=2.0, gt=0.0, le=30.0, alias="CACHE_IO_TIMEOUT_S")

    retry_min_interval_ms: int = Field(default=2000, ge=0, alias="ROUTE_RETRY_MIN_INTERVAL_MS")
    retry_max_attempts: int = Field(default=3, ge=1, le=20, alias="ROUTE_RETRY_MAX_ATTEMPTS")

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @model_validator(mode="after")
    def _clamp_relay_budget(self) -> "Settings":
        # The relay has to answer inside the client's relay window, so its own
        # upstream call must finish first.
        if self.relay_upstream_timeout_s >= self.relay_timeout_s:
            self.relay_upstream_timeout_s = max(0.1, self.relay_timeout_s * 0.8)
        self.relay_base_url = self.relay_base_url.strip().rstrip("/")
        self.routing_profile = self.routing_profile.strip() or "driving-hgv"
        return self

    def resolved_cache_path(self) -> Path:
        if self.route_cache_path.strip():
            return Path(self.route_cache_path)
        return Path(self.out_dir) / "offline" / "route_cache.json"


settings = Settings()
