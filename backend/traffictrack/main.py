from __future__ import annotations

import logging
import random
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .aggregator import TrafficAggregator
from .errors import GridRegenerationError, StoreError
from .grid_cache import GridCache
from .logging_utils import log_event
from .models import (
    CleanupResponse,
    Credential,
    CredentialInput,
    CredentialResponse,
    GridSnapshot,
    GridTrafficResponse,
    LatLng,
    TrafficReading,
    Vehicle,
)
from .provider_metrics import provider_metrics_snapshot
from .providers import build_provider_clients, create_http_client
from .settings import settings
from .stores import CredentialStore, GridStore, ReadingStore, VehicleStore
from .synthetic import SyntheticGenerator


@asynccontextmanager
async def lifespan(app: FastAPI):
    rng = random.Random(settings.simulation_seed)
    http = create_http_client()
    credentials = CredentialStore()
    readings = ReadingStore()
    grid = GridStore()
    vehicles = VehicleStore()

    app.state.http = http
    app.state.credentials = credentials
    app.state.vehicles = vehicles
    app.state.stores = (credentials, readings, grid, vehicles)
    app.state.aggregator = TrafficAggregator(
        credentials,
        readings,
        build_provider_clients(http, rng=rng),
        SyntheticGenerator(rng),
    )
    app.state.grid_cache = GridCache(grid, rng=rng)
    yield
    await http.aclose()


app = FastAPI(title="TrafficTrack", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def traffic_aggregator(request: Request) -> TrafficAggregator:
    aggregator: TrafficAggregator | None = getattr(request.app.state, "aggregator", None)
    if aggregator is None:
        raise HTTPException(status_code=503, detail="traffic aggregator not initialised")
    return aggregator


def grid_cache(request: Request) -> GridCache:
    cache: GridCache | None = getattr(request.app.state, "grid_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="grid cache not initialised")
    return cache


def credential_store(request: Request) -> CredentialStore:
    store: CredentialStore | None = getattr(request.app.state, "credentials", None)
    if store is None:
        raise HTTPException(status_code=503, detail="credential store not initialised")
    return store


def vehicle_store(request: Request) -> VehicleStore:
    store: VehicleStore | None = getattr(request.app.state, "vehicles", None)
    if store is None:
        raise HTTPException(status_code=503, detail="vehicle store not initialised")
    return store


AggregatorDep = Annotated[TrafficAggregator, Depends(traffic_aggregator)]
GridCacheDep = Annotated[GridCache, Depends(grid_cache)]
CredentialStoreDep = Annotated[CredentialStore, Depends(credential_store)]
VehicleStoreDep = Annotated[VehicleStore, Depends(vehicle_store)]


def _unavailable(endpoint: str, e: StoreError | GridRegenerationError) -> HTTPException:
    log_event(
        "request_failed",
        level=logging.ERROR,
        endpoint=endpoint,
        reason_code=getattr(e, "reason_code", "store_unavailable"),
        error=str(e),
    )
    return HTTPException(status_code=503, detail=str(e))


def _check_stores(request: Request) -> str | None:
    """None when every store document reads cleanly, else the first failure."""
    for store in getattr(request.app.state, "stores", ()):
        try:
            store.ping()
        except StoreError as e:
            log_event(
                "health_store_failed",
                level=logging.WARNING,
                store=e.store,
                reason_code=e.reason_code,
                detail=e.message,
            )
            return str(e)
    return None


@app.get("/health")
def health(request: Request):
    failure = _check_stores(request)
    if failure is not None:
        return JSONResponse(
            status_code=503,
            content={"status": "DEGRADED", "store": {"status": "DOWN", "message": failure}},
        )
    return {"status": "UP", "service": "traffictrack", "store": {"status": "UP"}}


@app.get("/health/db")
def health_db(request: Request):
    failure = _check_stores(request)
    if failure is not None:
        return JSONResponse(status_code=503, content={"db": "error", "message": failure})
    return {"db": "ok"}


@app.get("/api/traffic/live", response_model=TrafficReading)
async def live_traffic(
    aggregator: AggregatorDep,
    lat: Annotated[float, Query(ge=-90.0, le=90.0)],
    lng: Annotated[float, Query(ge=-180.0, le=180.0)],
    radius: Annotated[float, Query(gt=0.0, le=100.0)] = 5.0,
) -> TrafficReading:
    try:
        return await aggregator.fetch_live_traffic_data(lat, lng, radius)
    except StoreError as e:
        raise _unavailable("/api/traffic/live", e) from e


@app.get("/api/traffic/grid", response_model=GridTrafficResponse)
async def grid_traffic(
    aggregator: AggregatorDep,
    center_lat: Annotated[float, Query(ge=-90.0, le=90.0)],
    center_lng: Annotated[float, Query(ge=-180.0, le=180.0)],
    radius: Annotated[float, Query(gt=0.0, le=100.0)] = 5.0,
    grid_size: Annotated[int, Query(ge=1, le=10)] = 3,
) -> GridTrafficResponse:
    t0 = time.perf_counter()
    points = await aggregator.fetch_grid_traffic_data(center_lat, center_lng, radius, grid_size)
    log_event(
        "grid_traffic_request",
        grid_size=grid_size,
        points=len(points),
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return GridTrafficResponse(
        center=LatLng(lat=center_lat, lng=center_lng),
        radius_km=radius,
        grid_size=grid_size,
        points=points,
        timestamp=int(time.time() * 1000),
    )


@app.post("/api/traffic/cleanup", response_model=CleanupResponse)
def cleanup_traffic(aggregator: AggregatorDep) -> CleanupResponse:
    removed = aggregator.cleanup_old_data()
    return CleanupResponse(removed=removed, message="Old traffic data cleaned up successfully")


@app.get("/api/swarm", response_model=GridSnapshot)
def swarm_data(cache: GridCacheDep) -> GridSnapshot:
    try:
        return cache.get_swarm_data()
    except GridRegenerationError as e:
        raise _unavailable("/api/swarm", e) from e


@app.post("/api/swarm/initialize", response_model=GridSnapshot)
def swarm_initialize(cache: GridCacheDep) -> GridSnapshot:
    try:
        return cache.initialize_default_data()
    except GridRegenerationError as e:
        raise _unavailable("/api/swarm/initialize", e) from e


@app.post("/api/swarm/update-congestion")
def swarm_update_congestion(cache: GridCacheDep) -> dict[str, object]:
    try:
        updated = cache.update_congestion()
    except StoreError as e:
        raise _unavailable("/api/swarm/update-congestion", e) from e
    return {"message": "Congestion updated", "intersections": updated}


@app.delete("/api/swarm")
def swarm_clear(cache: GridCacheDep) -> dict[str, object]:
    try:
        removed = cache.clear_all_data()
    except StoreError as e:
        raise _unavailable("/api/swarm", e) from e
    return {"message": "Swarm data cleared", "removed": removed}


def _credential_response(credential: Credential) -> CredentialResponse:
    return CredentialResponse(
        id=credential.id,
        provider=credential.provider,
        api_key_masked=credential.masked_secret(),
        created_at=credential.created_at,
        updated_at=credential.updated_at,
    )


@app.post("/api/credentials", response_model=CredentialResponse)
def save_credentials(body: CredentialInput, store: CredentialStoreDep) -> CredentialResponse:
    provider = body.provider.strip()
    api_key = body.api_key.strip()
    if not provider or not api_key:
        raise HTTPException(status_code=400, detail="provider and api_key are required")
    try:
        credential = store.save(provider, api_key)
    except StoreError as e:
        raise _unavailable("/api/credentials", e) from e
    log_event("credential_saved", provider=provider, api_key=credential.masked_secret())
    return _credential_response(credential)


@app.get("/api/credentials/latest", response_model=CredentialResponse)
def latest_credentials(store: CredentialStoreDep):
    try:
        credential = store.latest()
    except StoreError as e:
        raise _unavailable("/api/credentials/latest", e) from e
    if credential is None:
        return Response(status_code=204)
    return _credential_response(credential)


@app.get("/metrics/providers")
def provider_metrics(cache: GridCacheDep) -> dict[str, object]:
    return {**provider_metrics_snapshot(), "grid_cache": cache.stats()}


@app.get("/api/vehicles", response_model=list[Vehicle])
def list_vehicles(store: VehicleStoreDep) -> list[Vehicle]:
    try:
        return store.list_vehicles()
    except StoreError as e:
        raise _unavailable("/api/vehicles", e) from e


@app.post("/api/vehicles", response_model=Vehicle)
def create_vehicle(body: Vehicle, store: VehicleStoreDep) -> Vehicle:
    try:
        vehicle = store.save(body)
    except StoreError as e:
        raise _unavailable("/api/vehicles", e) from e
    log_event("vehicle_saved", vehicle_id=vehicle.id, plate=vehicle.plate)
    return vehicle
