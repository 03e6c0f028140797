from __future__ import annotations

import asyncio
import random
from typing import Any

import httpx
import pytest

from traffictrack.errors import ProviderError
from traffictrack.models import Credential
from traffictrack.providers import (
    GoogleRoadsClient,
    HereFlowClient,
    ProviderClient,
    ProviderKind,
    TomTomFlowClient,
    create_http_client,
    resolve_provider,
)

CREDENTIAL = Credential(id="c1", provider="TomTom Traffic API", secret="abc123")


def _fetch(handler: Any, client_cls: type, **kwargs: Any):
    async def _go():
        async with create_http_client(transport=httpx.MockTransport(handler)) as http:
            return await client_cls(http, **kwargs).fetch_reading(CREDENTIAL, 51.5, -0.1, 2.0)

    return asyncio.run(_go())


def test_resolve_provider_is_case_insensitive_with_aliases() -> None:
    assert resolve_provider("TomTom Traffic API") is ProviderKind.TOMTOM
    assert resolve_provider("  google maps traffic api ") is ProviderKind.GOOGLE
    assert resolve_provider("HERE") is ProviderKind.HERE
    assert resolve_provider("bing traffic api") is ProviderKind.UNKNOWN
    assert resolve_provider(None) is ProviderKind.UNKNOWN


def test_tomtom_flow_half_speed_gives_half_congestion_with_incidents() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "flowSegmentData" in request.url.path:
            return httpx.Response(
                200,
                json={
                    "flowSegmentData": {
                        "currentSpeed": 25,
                        "freeFlowSpeed": 50,
                        "currentTravelTime": 120,
                        "freeFlowTravelTime": 60,
                        "roadClosure": False,
                    }
                },
            )
        if "incidentDetails" in request.url.path:
            return httpx.Response(
                200,
                json={
                    "incidents": [
                        {
                            "type": "Feature",
                            "geometry": {"type": "Point", "coordinates": [-0.11, 51.51]},
                            "properties": {
                                "iconCategory": 1,
                                "magnitudeOfDelay": 2,
                                "events": [{"description": "Crash", "code": 1}],
                            },
                        },
                        {"type": "Feature", "properties": {"iconCategory": "jam"}},
                    ]
                },
            )
        return httpx.Response(404)

    reading = _fetch(handler, TomTomFlowClient)

    assert reading.congestion_level == 0.5
    assert reading.flow_speed == 25.0
    assert reading.free_flow_speed == 50.0
    assert reading.current_travel_time == 120
    assert reading.free_flow_travel_time == 60
    assert reading.road_closure is False
    assert reading.data_source == "tomtom"
    assert len(reading.incidents) == 1
    incident = reading.incidents[0]
    assert incident.incident_type == "accident"
    assert incident.severity == "medium"
    assert incident.description == "Crash"
    assert (incident.latitude, incident.longitude) == (51.51, -0.11)

    assert len(seen) == 2
    assert seen[0].url.params["point"] == "51.500000,-0.100000"
    assert seen[0].url.params["key"] == "abc123"
    min_lng, min_lat, max_lng, max_lat = (float(v) for v in seen[1].url.params["bbox"].split(","))
    assert min_lng < -0.1 < max_lng
    assert min_lat < 51.5 < max_lat


def test_tomtom_incident_failure_keeps_flow_reading() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "flowSegmentData" in request.url.path:
            return httpx.Response(200, json={"flowSegmentData": {"currentSpeed": 60, "freeFlowSpeed": 50}})
        return httpx.Response(500, text="boom")

    reading = _fetch(handler, TomTomFlowClient)

    # Faster than free flow clamps to zero congestion.
    assert reading.congestion_level == 0.0
    assert reading.incidents == []


def test_tomtom_missing_flow_block_is_payload_invalid() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"something": "else"})

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, TomTomFlowClient)
    assert exc.value.reason_code == "provider_payload_invalid"
    assert exc.value.provider == "tomtom"


def test_tomtom_zero_free_flow_is_payload_invalid() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"flowSegmentData": {"currentSpeed": 10, "freeFlowSpeed": 0}})

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, TomTomFlowClient)
    assert exc.value.reason_code == "provider_payload_invalid"


def test_google_snapped_points_gives_bounded_proxy_reading() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["points"] == "51.500000,-0.100000"
        return httpx.Response(200, json={"snappedPoints": [{"location": {"latitude": 51.5, "longitude": -0.1}}]})

    reading = _fetch(handler, GoogleRoadsClient, rng=random.Random(3))

    assert 0.0 <= reading.congestion_level < 0.5
    assert reading.free_flow_speed == 50.0
    assert reading.flow_speed == pytest.approx(50.0 * (1.0 - reading.congestion_level))
    assert reading.data_source == "google"


def test_google_without_snapped_points_is_no_data() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, GoogleRoadsClient)
    assert exc.value.reason_code == "provider_no_data"


def test_here_averages_usable_segments() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["accept"] == "application/json"
        assert request.url.params["in"] == "circle:51.500000,-0.100000;r=2000"
        assert request.url.params["apiKey"] == "abc123"
        return httpx.Response(
            200,
            json={
                "results": [
                    {"currentFlow": {"speed": 30, "freeFlow": 60}},
                    {"currentFlow": {"speed": 10, "freeFlow": 40}},
                    {"currentFlow": {"speed": 5, "freeFlow": 0}},
                    {"location": {}},
                ]
            },
        )

    reading = _fetch(handler, HereFlowClient)

    assert reading.congestion_level == pytest.approx(0.625)
    assert reading.flow_speed == pytest.approx(20.0)
    assert reading.free_flow_speed == 50.0
    assert reading.data_source == "here"


def test_here_without_segments_is_no_data() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": []})

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, HereFlowClient)
    assert exc.value.reason_code == "provider_no_data"


def test_unauthorized_is_reported_distinctly_with_body_preview() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="Invalid apiKey " + "x" * 500)

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, HereFlowClient)
    assert exc.value.reason_code == "provider_unauthorized"
    assert exc.value.status_code == 401
    assert "Invalid apiKey" in exc.value.message
    assert len(exc.value.message) < 400


def test_non_200_is_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, GoogleRoadsClient)
    assert exc.value.reason_code == "provider_http_error"
    assert exc.value.status_code == 503


def test_timeout_and_network_errors_map_to_reason_codes() -> None:
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as exc:
        _fetch(slow, TomTomFlowClient)
    assert exc.value.reason_code == "provider_timeout"

    with pytest.raises(ProviderError) as exc:
        _fetch(down, TomTomFlowClient)
    assert exc.value.reason_code == "provider_network_error"


def test_invalid_json_is_payload_invalid() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>not json</html>")

    with pytest.raises(ProviderError) as exc:
        _fetch(handler, HereFlowClient)
    assert exc.value.reason_code == "provider_payload_invalid"


def test_provider_client_base_cannot_be_instantiated() -> None:
    http = create_http_client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    with pytest.raises(TypeError):
        ProviderClient(http)  # type: ignore[abstract]
    asyncio.run(http.aclose())
