from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep runtime state in backend/out by default to avoid polluting the package.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping provider endpoints and limits out of code."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env"
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    provider_connect_timeout_s: float = Field(default=10.0, gt=0.0, le=120.0, alias="PROVIDER_CONNECT_TIMEOUT_S")
    provider_timeout_s: float = Field(default=10.0, gt=0.0, le=120.0, alias="PROVIDER_TIMEOUT_S")
    # Grid-point fan-out (so a 10x10 grid doesn't hammer the provider)
    batch_concurrency: int = Field(default=8, ge=1, le=64, alias="BATCH_CONCURRENCY")

    google_roads_url: str = Field(
        default="https://roads.googleapis.com/v1/nearestRoads?points={lat},{lng}&key={key}",
        alias="GOOGLE_ROADS_URL",
    )
    tomtom_flow_url: str = Field(
        default=(
            "https://api.tomtom.com/traffic/services/4/flowSegmentData/absolute/10/json"
            "?point={lat},{lng}&key={key}"
        ),
        alias="TOMTOM_FLOW_URL",
    )
    # Literal braces in the TomTom field selector are doubled for str.format.
    tomtom_incidents_url: str = Field(
        default=(
            "https://api.tomtom.com/traffic/services/5/incidentDetails"
            "?bbox={bbox}"
            "&fields={{incidents{{type,geometry,properties{{iconCategory,magnitudeOfDelay,"
            "events{{description,code}}}}}}}}"
            "&key={key}"
        ),
        alias="TOMTOM_INCIDENTS_URL",
    )
    here_flow_url: str = Field(
        default=(
            "https://data.traffic.hereapi.com/v7/flow"
            "?in=circle:{lat},{lng};r={radius_m}&locationReferencing=shape&apiKey={key}"
        ),
        alias="HERE_FLOW_URL",
    )

    grid_cache_ttl_s: int = Field(default=600, ge=1, le=86_400, alias="GRID_CACHE_TTL_S")
    grid_center_lat: float = Field(default=51.505, ge=-90.0, le=90.0, alias="GRID_CENTER_LAT")
    grid_center_lng: float = Field(default=-0.09, ge=-180.0, le=180.0, alias="GRID_CENTER_LNG")
    grid_half_extent_deg: float = Field(default=0.05, gt=0.0, le=5.0, alias="GRID_HALF_EXTENT_DEG")

    traffic_retention_hours: int = Field(default=24, ge=1, le=24 * 365, alias="TRAFFIC_RETENTION_HOURS")
    simulation_seed: int | None = Field(default=None, alias="SIMULATION_SEED")

    @model_validator(mode="after")
    def _normalize(self) -> "Settings":
        self.log_level = str(self.log_level or "INFO").strip().upper() or "INFO"
        # A connect timeout longer than the whole call budget is never honoured.
        if self.provider_connect_timeout_s > self.provider_timeout_s:
            self.provider_connect_timeout_s = self.provider_timeout_s
        return self


settings = Settings()
