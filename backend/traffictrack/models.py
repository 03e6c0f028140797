from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

DataSource = Literal["google", "tomtom", "here", "static"]
IncidentType = Literal["accident", "roadwork", "congestion", "closure", "other"]
Severity = Literal["low", "medium", "high", "critical"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    # Rows written without an offset are taken as UTC so comparisons never mix naive and aware.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def mask_secret(value: str | None) -> str:
    if not value:
        return ""
    return "****" + value[-4:]


def clamp_unit(value: float) -> float:
    v = float(value)
    if math.isnan(v):
        return 0.0
    return max(0.0, min(1.0, v))


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Incident(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    incident_type: IncidentType = "other"
    severity: Severity = "low"
    description: str | None = None
    delay_minutes: int | None = Field(default=None, ge=0)
    reported_at: datetime = Field(default_factory=utc_now)

    @field_validator("reported_at")
    @classmethod
    def reported_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class TrafficReading(BaseModel):
    """Normalized traffic conditions for one point, whatever provider produced them."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    latitude: float
    longitude: float
    radius_km: float = Field(..., ge=0)
    congestion_level: float = Field(..., ge=0.0, le=1.0)
    flow_speed: float = Field(..., ge=0.0)
    free_flow_speed: float = Field(..., gt=0.0)
    current_travel_time: int | None = Field(default=None, ge=0)
    free_flow_travel_time: int | None = Field(default=None, ge=0)
    road_closure: bool = False
    data_source: DataSource
    fetched_at: datetime = Field(default_factory=utc_now)
    incidents: list[Incident] = Field(default_factory=list)

    @field_validator("fetched_at")
    @classmethod
    def fetched_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("congestion_level", mode="before")
    @classmethod
    def clamp_congestion(cls, v: object) -> float:
        return clamp_unit(float(v))  # type: ignore[arg-type]

    @field_validator("flow_speed", mode="before")
    @classmethod
    def non_negative_speed(cls, v: object) -> float:
        return max(0.0, float(v))  # type: ignore[arg-type]


class Credential(BaseModel):
    id: str
    provider: str
    secret: SecretStr
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", "updated_at")
    @classmethod
    def timestamps_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def has_secret(self) -> bool:
        return bool(self.secret.get_secret_value().strip())

    def masked_secret(self) -> str:
        return mask_secret(self.secret.get_secret_value())


class CredentialInput(BaseModel):
    provider: str = ""
    api_key: str = ""


class CredentialResponse(BaseModel):
    id: str
    provider: str
    api_key_masked: str
    created_at: datetime
    updated_at: datetime


class Intersection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    grid_x: int = Field(..., ge=0)
    grid_y: int = Field(..., ge=0)
    lat: float
    lng: float
    name: str
    congestion: float = Field(..., ge=0.0, le=1.0)
    cycle_duration: int = Field(..., ge=1)
    time_remaining: int = Field(..., ge=0)


class Road(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    start_lat: float
    start_lng: float
    end_lat: float
    end_lng: float
    congestion: float = Field(..., ge=0.0, le=1.0)


class RoadView(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: tuple[float, float]
    end: tuple[float, float]
    congestion: float


class GridSnapshot(BaseModel):
    """Materialized grid response; never mutated once published.

    Tuples of frozen rows, so a reader cannot alter what other readers see.
    """

    model_config = ConfigDict(frozen=True)

    intersections: tuple[Intersection, ...]
    roads: tuple[RoadView, ...]
    timestamp: int


class GridPoint(BaseModel):
    grid_x: int
    grid_y: int
    lat: float
    lng: float
    congestion: float
    flow_speed: float
    free_flow_speed: float
    data_source: DataSource


class GridTrafficResponse(BaseModel):
    center: LatLng
    radius_km: float
    grid_size: int
    points: list[GridPoint]
    timestamp: int


class CleanupResponse(BaseModel):
    removed: int
    message: str


class Vehicle(BaseModel):
    id: str | None = None
    plate: str = Field(..., min_length=1, max_length=32)
    speed: float = Field(default=0.0, ge=0.0)
