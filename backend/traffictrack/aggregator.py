from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from datetime import datetime, timedelta

from .errors import ProviderError, StoreError
from .geo import degree_offsets
from .logging_utils import log_event
from .models import GridPoint, TrafficReading, utc_now
from .provider_metrics import record_provider_outcome
from .providers import ProviderClient, ProviderKind, resolve_provider
from .settings import settings
from .stores import CredentialStore, ReadingStore
from .synthetic import SyntheticGenerator


def grid_positions(
    center_lat: float,
    center_lng: float,
    radius_km: float,
    grid_size: int,
) -> list[tuple[int, int, float, float]]:
    """Row-major (i, j, lat, lng) lattice spanning `radius_km` either side of the center."""
    if grid_size < 1:
        raise ValueError(f"grid_size must be >= 1, got {grid_size}")
    if grid_size == 1:
        return [(0, 0, center_lat, center_lng)]

    lat_r, lng_r = degree_offsets(center_lat, radius_km)
    lat_step = (2.0 * lat_r) / (grid_size - 1)
    lng_step = (2.0 * lng_r) / (grid_size - 1)
    top = center_lat + lat_r
    left = center_lng - lng_r
    return [
        (i, j, top - i * lat_step, left + j * lng_step)
        for i in range(grid_size)
        for j in range(grid_size)
    ]


class TrafficAggregator:
    def __init__(
        self,
        credentials: CredentialStore,
        readings: ReadingStore,
        clients: Mapping[ProviderKind, ProviderClient],
        generator: SyntheticGenerator | None = None,
    ) -> None:
        self._credentials = credentials
        self._readings = readings
        self._clients = dict(clients)
        self._generator = generator or SyntheticGenerator()

    async def _acquire(
        self,
        lat: float,
        lng: float,
        radius_km: float,
    ) -> tuple[TrafficReading, str, bool, str | None]:
        credential = self._credentials.get_active_credential()
        if credential is None or not credential.has_secret():
            log_event("live_traffic_no_credential", level=logging.DEBUG, lat=lat, lng=lng)
            return self._generator.generate(lat, lng, radius_km), "static", False, None

        kind = resolve_provider(credential.provider)
        client = self._clients.get(kind)
        if client is None:
            log_event(
                "live_traffic_unknown_provider",
                level=logging.WARNING,
                provider=credential.provider,
            )
            return self._generator.generate(lat, lng, radius_km), kind.value, True, None

        try:
            reading = await client.fetch_reading(credential, lat, lng, radius_km)
        except ProviderError as e:
            log_event(
                "live_traffic_provider_failed",
                level=logging.WARNING,
                provider=e.provider,
                reason_code=e.reason_code,
                status_code=e.status_code,
                detail=e.message,
            )
            return self._generator.generate(lat, lng, radius_km), kind.value, True, e.reason_code
        except Exception as e:
            log_event(
                "live_traffic_provider_failed",
                level=logging.ERROR,
                exc_info=True,
                provider=kind.value,
                reason_code="provider_payload_invalid",
                detail=f"{type(e).__name__}: {e}",
            )
            return self._generator.generate(lat, lng, radius_km), kind.value, True, "provider_payload_invalid"
        return reading, kind.value, False, None

    async def fetch_live_traffic_data(self, lat: float, lng: float, radius_km: float) -> TrafficReading:
        """Current conditions around a point; synthetic when no provider can answer.

        Raises StoreError only when the credential or reading store is unusable.
        """
        t0 = time.perf_counter()
        reading, source, fallback, reason_code = await self._acquire(lat, lng, radius_km)
        duration_ms = (time.perf_counter() - t0) * 1000.0
        record_provider_outcome(source, duration_ms=duration_ms, fallback=fallback, reason_code=reason_code)

        saved = self._readings.save(reading)
        log_event(
            "live_traffic",
            lat=lat,
            lng=lng,
            radius_km=radius_km,
            data_source=saved.data_source,
            congestion_level=round(saved.congestion_level, 4),
            incidents=len(saved.incidents),
            duration_ms=round(duration_ms, 2),
        )
        return saved

    async def fetch_grid_traffic_data(
        self,
        center_lat: float,
        center_lng: float,
        radius_km: float,
        grid_size: int,
    ) -> list[GridPoint]:
        positions = grid_positions(center_lat, center_lng, radius_km, grid_size)
        point_radius_km = radius_km / grid_size
        sem = asyncio.Semaphore(settings.batch_concurrency)

        async def one(i: int, j: int, lat: float, lng: float) -> GridPoint | None:
            async with sem:
                try:
                    reading = await self.fetch_live_traffic_data(lat, lng, point_radius_km)
                except Exception as e:
                    log_event(
                        "grid_point_failed",
                        level=logging.WARNING,
                        grid_x=i,
                        grid_y=j,
                        error=f"{type(e).__name__}: {e}",
                    )
                    return None
            return GridPoint(
                grid_x=i,
                grid_y=j,
                lat=lat,
                lng=lng,
                congestion=reading.congestion_level,
                flow_speed=reading.flow_speed,
                free_flow_speed=reading.free_flow_speed,
                data_source=reading.data_source,
            )

        results = await asyncio.gather(*[one(*pos) for pos in positions])
        points = [p for p in results if p is not None]
        log_event(
            "grid_traffic",
            grid_size=grid_size,
            requested=len(positions),
            returned=len(points),
        )
        return points

    def cleanup_old_data(self, *, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - timedelta(hours=settings.traffic_retention_hours)
        try:
            removed_readings = self._readings.delete_older_than(cutoff)
            removed_incidents = self._readings.delete_incidents_older_than(cutoff)
        except StoreError as e:
            log_event(
                "traffic_cleanup_failed",
                level=logging.ERROR,
                store=e.store,
                reason_code=e.reason_code,
                detail=e.message,
            )
            return 0
        except Exception as e:
            log_event(
                "traffic_cleanup_failed",
                level=logging.ERROR,
                exc_info=True,
                reason_code="store_corrupt",
                detail=f"{type(e).__name__}: {e}",
            )
            return 0

        log_event(
            "traffic_cleanup",
            cutoff=cutoff.isoformat(),
            removed_readings=removed_readings,
            removed_incidents=removed_incidents,
        )
        return removed_readings + removed_incidents
