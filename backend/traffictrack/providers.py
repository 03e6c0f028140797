from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, ClassVar, Final
from urllib.parse import quote

import httpx

from .errors import ProviderError
from .geo import bounding_box
from .incident_parser import parse_incidents
from .logging_utils import log_event
from .models import Credential, DataSource, Incident, TrafficReading, mask_secret
from .settings import settings

DEFAULT_FREE_FLOW_SPEED_KMH: Final[float] = 50.0
# The nearest-roads endpoint carries no congestion signal, so the reading uses a bounded proxy.
GOOGLE_PROXY_MAX_CONGESTION: Final[float] = 0.5
_BODY_PREVIEW_CHARS: Final[int] = 200


class ProviderKind(str, Enum):
    GOOGLE = "google"
    TOMTOM = "tomtom"
    HERE = "here"
    UNKNOWN = "unknown"


_PROVIDER_NAMES: Final[dict[str, ProviderKind]] = {
    "google maps traffic api": ProviderKind.GOOGLE,
    "tomtom traffic api": ProviderKind.TOMTOM,
    "here traffic api": ProviderKind.HERE,
    "google": ProviderKind.GOOGLE,
    "tomtom": ProviderKind.TOMTOM,
    "here": ProviderKind.HERE,
}


def resolve_provider(name: str | None) -> ProviderKind:
    return _PROVIDER_NAMES.get(str(name or "").strip().lower(), ProviderKind.UNKNOWN)


def create_http_client(*, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout_s, connect=settings.provider_connect_timeout_s),
        headers={"accept": "application/json"},
        transport=transport,
    )


def _coord(value: float) -> str:
    # Six decimals, matching the providers' documented examples.
    return f"{float(value):f}"


def _body_preview(resp: httpx.Response) -> str:
    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > _BODY_PREVIEW_CHARS:
        body = body[:_BODY_PREVIEW_CHARS] + "..."
    return body


def _safe_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class ProviderClient(ABC):
    """Turns (credential, location, radius) into a TrafficReading for one provider, or raises ProviderError."""

    kind: ClassVar[ProviderKind] = ProviderKind.UNKNOWN
    data_source: ClassVar[DataSource] = "static"

    def __init__(self, http: httpx.AsyncClient, *, rng: random.Random | None = None) -> None:
        self._http = http
        self._rng = rng or random.Random()

    @abstractmethod
    async def fetch_reading(
        self,
        credential: Credential,
        lat: float,
        lng: float,
        radius_km: float,
    ) -> TrafficReading: ...

    def _error(self, reason_code: str, message: str, status_code: int | None = None) -> ProviderError:
        return ProviderError(
            provider=self.data_source,
            reason_code=reason_code,
            message=message,
            status_code=status_code,
        )

    async def _get_json(self, url: str, *, key: str, headers: dict[str, str] | None = None) -> Any:
        log_event(
            "provider_request",
            level=logging.DEBUG,
            provider=self.data_source,
            url=url.replace(key, mask_secret(key)) if key else url,
        )
        try:
            resp = await asyncio.wait_for(
                self._http.get(url, headers=headers),
                timeout=settings.provider_timeout_s,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise self._error("provider_timeout", f"request timed out ({type(e).__name__})") from e
        except httpx.TransportError as e:
            raise self._error("provider_network_error", f"{type(e).__name__}: {e}") from e

        if resp.status_code == 401:
            raise self._error(
                "provider_unauthorized",
                "HTTP 401 (unauthorized: check API key validity and permissions): " + _body_preview(resp),
                status_code=401,
            )
        if resp.status_code != 200:
            raise self._error(
                "provider_http_error",
                f"HTTP {resp.status_code}: {_body_preview(resp)}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise self._error("provider_payload_invalid", "response body is not valid JSON") from e

    def _payload_object(self, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise self._error("provider_payload_invalid", "expected a JSON object")
        return payload


class GoogleRoadsClient(ProviderClient):
    kind = ProviderKind.GOOGLE
    data_source = "google"

    async def fetch_reading(
        self,
        credential: Credential,
        lat: float,
        lng: float,
        radius_km: float,
    ) -> TrafficReading:
        key = quote(credential.secret.get_secret_value(), safe="")
        url = settings.google_roads_url.format(lat=_coord(lat), lng=_coord(lng), key=key)
        payload = self._payload_object(await self._get_json(url, key=key))

        points = payload.get("snappedPoints")
        if not isinstance(points, list) or not points:
            raise self._error("provider_no_data", "no snapped points near location")

        congestion = self._rng.random() * GOOGLE_PROXY_MAX_CONGESTION
        return TrafficReading(
            latitude=lat,
            longitude=lng,
            radius_km=radius_km,
            congestion_level=congestion,
            flow_speed=DEFAULT_FREE_FLOW_SPEED_KMH * (1.0 - congestion),
            free_flow_speed=DEFAULT_FREE_FLOW_SPEED_KMH,
            data_source="google",
        )


class TomTomFlowClient(ProviderClient):
    kind = ProviderKind.TOMTOM
    data_source = "tomtom"

    async def fetch_reading(
        self,
        credential: Credential,
        lat: float,
        lng: float,
        radius_km: float,
    ) -> TrafficReading:
        key = quote(credential.secret.get_secret_value(), safe="")
        url = settings.tomtom_flow_url.format(lat=_coord(lat), lng=_coord(lng), key=key)
        payload = self._payload_object(await self._get_json(url, key=key))

        flow = payload.get("flowSegmentData")
        if not isinstance(flow, dict):
            raise self._error("provider_payload_invalid", "missing flowSegmentData")

        current_speed = _safe_float(flow.get("currentSpeed", 0.0), 0.0)
        free_flow_speed = _safe_float(flow.get("freeFlowSpeed", DEFAULT_FREE_FLOW_SPEED_KMH), DEFAULT_FREE_FLOW_SPEED_KMH)
        if free_flow_speed <= 0.0:
            raise self._error("provider_payload_invalid", f"non-positive freeFlowSpeed {free_flow_speed}")

        incidents = await self._fetch_incidents(key, lat, lng, radius_km)

        return TrafficReading(
            latitude=lat,
            longitude=lng,
            radius_km=radius_km,
            congestion_level=1.0 - (current_speed / free_flow_speed),
            flow_speed=current_speed,
            free_flow_speed=free_flow_speed,
            current_travel_time=max(0, _safe_int(flow.get("currentTravelTime", 0))),
            free_flow_travel_time=max(0, _safe_int(flow.get("freeFlowTravelTime", 0))),
            road_closure=_as_bool(flow.get("roadClosure", False)),
            data_source="tomtom",
            incidents=incidents,
        )

    async def _fetch_incidents(self, key: str, lat: float, lng: float, radius_km: float) -> list[Incident]:
        bbox = ",".join(_coord(v) for v in bounding_box(lat, lng, radius_km))
        url = settings.tomtom_incidents_url.format(bbox=bbox, key=key)
        try:
            payload = await self._get_json(url, key=key)
        except (ProviderError, httpx.HTTPError) as e:
            # Incidents are an enrichment; the flow reading stands on its own.
            log_event(
                "tomtom_incidents_failed",
                level=logging.WARNING,
                provider=self.data_source,
                reason_code=getattr(e, "reason_code", type(e).__name__),
                error=str(e),
            )
            return []
        return parse_incidents(payload)


class HereFlowClient(ProviderClient):
    kind = ProviderKind.HERE
    data_source = "here"

    async def fetch_reading(
        self,
        credential: Credential,
        lat: float,
        lng: float,
        radius_km: float,
    ) -> TrafficReading:
        key = quote(credential.secret.get_secret_value(), safe="")
        url = settings.here_flow_url.format(
            lat=_coord(lat),
            lng=_coord(lng),
            radius_m=int(radius_km * 1000),
            key=key,
        )
        payload = self._payload_object(await self._get_json(url, key=key, headers={"Accept": "application/json"}))

        results = payload.get("results")
        if not isinstance(results, list):
            raise self._error("provider_payload_invalid", "missing results array")

        total_congestion = 0.0
        total_speed = 0.0
        count = 0
        for result in results:
            flow = result.get("currentFlow") if isinstance(result, dict) else None
            if not isinstance(flow, dict):
                continue
            speed = _safe_float(flow.get("speed", 0.0), 0.0)
            free_flow = _safe_float(flow.get("freeFlow", DEFAULT_FREE_FLOW_SPEED_KMH), DEFAULT_FREE_FLOW_SPEED_KMH)
            if free_flow <= 0.0:
                continue
            total_speed += speed
            total_congestion += 1.0 - (speed / free_flow)
            count += 1

        if count == 0:
            raise self._error("provider_no_data", "no flow segments in results")

        return TrafficReading(
            latitude=lat,
            longitude=lng,
            radius_km=radius_km,
            congestion_level=total_congestion / count,
            flow_speed=total_speed / count,
            free_flow_speed=DEFAULT_FREE_FLOW_SPEED_KMH,
            data_source="here",
        )


def build_provider_clients(
    http: httpx.AsyncClient,
    *,
    rng: random.Random | None = None,
) -> dict[ProviderKind, ProviderClient]:
    return {
        ProviderKind.GOOGLE: GoogleRoadsClient(http, rng=rng),
        ProviderKind.TOMTOM: TomTomFlowClient(http, rng=rng),
        ProviderKind.HERE: HereFlowClient(http, rng=rng),
    }
