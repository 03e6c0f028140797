from __future__ import annotations

import asyncio
import json
import random
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from traffictrack.aggregator import TrafficAggregator, grid_positions
from traffictrack.errors import ProviderError, StoreError
from traffictrack.models import Credential, Incident, TrafficReading, utc_now
from traffictrack.provider_metrics import provider_metrics_snapshot, reset_provider_metrics
from traffictrack.providers import ProviderKind
from traffictrack.settings import settings
from traffictrack.stores import CredentialStore, ReadingStore
from traffictrack.synthetic import SyntheticGenerator


class FakeClient:
    def __init__(self, *, error: Exception | None = None, source: str = "tomtom") -> None:
        self.error = error
        self.source = source
        self.calls: list[tuple[float, float, float]] = []

    async def fetch_reading(self, credential: Credential, lat: float, lng: float, radius_km: float) -> TrafficReading:
        self.calls.append((lat, lng, radius_km))
        if self.error is not None:
            raise self.error
        return TrafficReading(
            latitude=lat,
            longitude=lng,
            radius_km=radius_km,
            congestion_level=0.4,
            flow_speed=30.0,
            free_flow_speed=50.0,
            data_source=self.source,
        )


@pytest.fixture(autouse=True)
def _isolated_out_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "out_dir", str(tmp_path))
    reset_provider_metrics()


def _aggregator(clients: dict[ProviderKind, Any] | None = None) -> tuple[TrafficAggregator, CredentialStore, ReadingStore]:
    credentials = CredentialStore()
    readings = ReadingStore()
    agg = TrafficAggregator(
        credentials,
        readings,
        clients if clients is not None else {},
        SyntheticGenerator(random.Random(11)),
    )
    return agg, credentials, readings


def test_no_credential_returns_static_without_calling_providers() -> None:
    tomtom = FakeClient()
    agg, _, readings = _aggregator({ProviderKind.TOMTOM: tomtom})

    reading = asyncio.run(agg.fetch_live_traffic_data(51.5, -0.1, 5.0))

    assert reading.data_source == "static"
    assert 0.0 <= reading.congestion_level <= 1.0
    assert tomtom.calls == []
    stored = readings.list_readings()
    assert [r.id for r in stored] == [reading.id]
    assert reading.id


def test_blank_secret_is_treated_as_missing_credential() -> None:
    tomtom = FakeClient()
    agg, credentials, _ = _aggregator({ProviderKind.TOMTOM: tomtom})
    credentials.save("tomtom traffic api", "   ")

    reading = asyncio.run(agg.fetch_live_traffic_data(51.5, -0.1, 5.0))

    assert reading.data_source == "static"
    assert tomtom.calls == []


def test_known_provider_reading_is_returned_and_persisted() -> None:
    tomtom = FakeClient()
    agg, credentials, readings = _aggregator({ProviderKind.TOMTOM: tomtom})
    credentials.save("TomTom Traffic API", "secret-key")

    reading = asyncio.run(agg.fetch_live_traffic_data(51.5, -0.1, 2.5))

    assert reading.data_source == "tomtom"
    assert tomtom.calls == [(51.5, -0.1, 2.5)]
    assert readings.list_readings()[0].data_source == "tomtom"
    snap = provider_metrics_snapshot()
    assert snap["sources"]["tomtom"]["request_count"] == 1  # type: ignore[index]
    assert snap["total_fallbacks"] == 0


def test_unknown_provider_falls_back_to_static() -> None:
    tomtom = FakeClient()
    agg, credentials, _ = _aggregator({ProviderKind.TOMTOM: tomtom})
    credentials.save("Bing Traffic API", "secret-key")

    reading = asyncio.run(agg.fetch_live_traffic_data(51.5, -0.1, 5.0))

    assert reading.data_source == "static"
    assert tomtom.calls == []
    snap = provider_metrics_snapshot()
    assert snap["sources"]["unknown"]["fallback_count"] == 1  # type: ignore[index]


def test_provider_failure_falls_back_to_static() -> None:
    failing = FakeClient(error=ProviderError(provider="here", reason_code="provider_timeout", message="slow"))
    agg, credentials, readings = _aggregator({ProviderKind.HERE: failing})
    credentials.save("here traffic api", "secret-key")

    reading = asyncio.run(agg.fetch_live_traffic_data(40.7, -74.0, 1.0))

    assert reading.data_source == "static"
    assert len(failing.calls) == 1
    assert len(readings.list_readings()) == 1
    snap = provider_metrics_snapshot()
    assert snap["reason_codes"] == {"provider_timeout": 1}


def test_unexpected_client_exception_also_falls_back() -> None:
    failing = FakeClient(error=KeyError("currentFlow"))
    agg, credentials, _ = _aggregator({ProviderKind.HERE: failing})
    credentials.save("here", "secret-key")

    reading = asyncio.run(agg.fetch_live_traffic_data(40.7, -74.0, 1.0))

    assert reading.data_source == "static"


def test_credential_store_failure_propagates(tmp_path: Path) -> None:
    agg, _, _ = _aggregator()
    store_dir = tmp_path / "store"
    store_dir.mkdir(parents=True)
    (store_dir / "credentials.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreError) as exc:
        asyncio.run(agg.fetch_live_traffic_data(51.5, -0.1, 5.0))
    assert exc.value.reason_code == "store_corrupt"


def test_grid_of_three_is_row_major_around_center() -> None:
    agg, _, _ = _aggregator()

    points = asyncio.run(agg.fetch_grid_traffic_data(51.5, -0.1, 3.0, 3))

    assert len(points) == 9
    assert [(p.grid_x, p.grid_y) for p in points] == [(i, j) for i in range(3) for j in range(3)]
    assert all(0.0 <= p.congestion <= 1.0 for p in points)
    assert all(p.data_source == "static" for p in points)
    assert points[0].lat > 51.5 > points[-1].lat
    assert points[0].lng < -0.1 < points[-1].lng
    assert points[4].lat == pytest.approx(51.5)
    assert points[4].lng == pytest.approx(-0.1)


def test_grid_of_one_is_the_center_point() -> None:
    tomtom = FakeClient()
    agg, credentials, _ = _aggregator({ProviderKind.TOMTOM: tomtom})
    credentials.save("tomtom", "secret-key")

    points = asyncio.run(agg.fetch_grid_traffic_data(51.5, -0.1, 4.0, 1))

    assert len(points) == 1
    assert (points[0].grid_x, points[0].grid_y) == (0, 0)
    assert (points[0].lat, points[0].lng) == (51.5, -0.1)
    assert tomtom.calls == [(51.5, -0.1, 4.0)]


def test_grid_size_below_one_is_rejected() -> None:
    agg, _, _ = _aggregator()
    with pytest.raises(ValueError):
        asyncio.run(agg.fetch_grid_traffic_data(51.5, -0.1, 3.0, 0))


def test_grid_points_use_radius_divided_by_size() -> None:
    tomtom = FakeClient()
    agg, credentials, _ = _aggregator({ProviderKind.TOMTOM: tomtom})
    credentials.save("tomtom", "secret-key")

    asyncio.run(agg.fetch_grid_traffic_data(51.5, -0.1, 6.0, 2))

    assert len(tomtom.calls) == 4
    assert {radius for _, _, radius in tomtom.calls} == {3.0}


def test_failed_grid_points_are_omitted(monkeypatch: pytest.MonkeyPatch) -> None:
    agg, _, readings = _aggregator()
    original_save = ReadingStore.save

    def flaky_save(self: ReadingStore, reading: TrafficReading) -> TrafficReading:
        if reading.latitude > 51.5 + 1e-6:
            raise StoreError("reading", "disk full")
        return original_save(self, reading)

    monkeypatch.setattr(ReadingStore, "save", flaky_save)

    points = asyncio.run(agg.fetch_grid_traffic_data(51.5, -0.1, 3.0, 3))

    assert len(points) == 6
    assert {p.grid_x for p in points} == {1, 2}
    assert len(readings.list_readings()) == 6


def test_grid_positions_span_the_radius() -> None:
    positions = grid_positions(0.0, 0.0, 111.0, 2)
    assert [(i, j) for i, j, _, _ in positions] == [(0, 0), (0, 1), (1, 0), (1, 1)]
    _, _, top_lat, left_lng = positions[0]
    assert top_lat == pytest.approx(1.0)
    assert left_lng == pytest.approx(-1.0)


def test_cleanup_removes_stale_readings_and_incidents() -> None:
    agg, _, readings = _aggregator()
    now = utc_now()
    old = now - timedelta(hours=48)

    base: dict[str, Any] = {
        "latitude": 51.5,
        "longitude": -0.1,
        "radius_km": 1.0,
        "congestion_level": 0.3,
        "flow_speed": 35.0,
        "free_flow_speed": 50.0,
        "data_source": "static",
    }
    readings.save(TrafficReading(**base, fetched_at=old))
    readings.save(
        TrafficReading(
            **base,
            fetched_at=now,
            incidents=[
                Incident(latitude=51.5, longitude=-0.1, reported_at=old),
                Incident(latitude=51.5, longitude=-0.1, reported_at=now),
            ],
        )
    )

    removed = agg.cleanup_old_data(now=now)

    assert removed == 2
    remaining = readings.list_readings()
    assert len(remaining) == 1
    assert len(remaining[0].incidents) == 1


def test_cleanup_failure_is_swallowed(tmp_path: Path) -> None:
    agg, _, _ = _aggregator()
    store_dir = tmp_path / "store"
    store_dir.mkdir(parents=True)
    (store_dir / "readings.jsonl").write_text("[1, 2\n", encoding="utf-8")

    assert agg.cleanup_old_data() == 0


def test_cleanup_handles_rows_stored_without_offset(tmp_path: Path) -> None:
    agg, _, readings = _aggregator()
    store_dir = tmp_path / "store"
    store_dir.mkdir(parents=True)
    row = {
        "latitude": 51.5,
        "longitude": -0.1,
        "radius_km": 1.0,
        "congestion_level": 0.3,
        "flow_speed": 35.0,
        "free_flow_speed": 50.0,
        "data_source": "static",
        "fetched_at": "2020-01-01T00:00:00",
    }
    (store_dir / "readings.jsonl").write_text(json.dumps(row) + "\n", encoding="utf-8")

    assert agg.cleanup_old_data() == 1
    assert readings.list_readings() == []


def test_cleanup_swallows_unexpected_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    agg, _, readings = _aggregator()

    def boom(cutoff: Any) -> int:
        raise TypeError("can't compare offset-naive and offset-aware datetimes")

    monkeypatch.setattr(readings, "delete_older_than", boom)

    assert agg.cleanup_old_data() == 0
