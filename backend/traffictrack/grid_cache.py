from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from .errors import GridRegenerationError, StoreError
from .grid_simulator import DEFAULT_GRID_SIZE, build_grid, perturb_congestion, snapshot_of
from .logging_utils import log_event
from .models import GridSnapshot, Intersection, Road
from .settings import settings
from .stores import GridStore


@dataclass(frozen=True)
class _GridCacheEntry:
    snapshot: GridSnapshot
    populated_at: float


class GridCache:
    """Serves the grid snapshot, regenerating it at most once per TTL window.

    Readers on the fresh path never take the lock. Regeneration and every
    mutation run under a single writer lock, and a new entry is published by
    replacing `_entry` in one assignment.
    """

    def __init__(
        self,
        store: GridStore,
        *,
        ttl_s: float | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        center_lat: float | None = None,
        center_lng: float | None = None,
        half_extent: float | None = None,
        size: int = DEFAULT_GRID_SIZE,
    ) -> None:
        self._store = store
        self._ttl_s = max(1.0, float(ttl_s if ttl_s is not None else settings.grid_cache_ttl_s))
        self._rng = rng or random.Random(settings.simulation_seed)
        self._clock = clock
        self._center_lat = settings.grid_center_lat if center_lat is None else center_lat
        self._center_lng = settings.grid_center_lng if center_lng is None else center_lng
        self._half_extent = settings.grid_half_extent_deg if half_extent is None else half_extent
        self._size = size

        self._lock = Lock()
        self._entry: _GridCacheEntry | None = None
        self._regenerations = 0

    def _is_fresh(self, entry: _GridCacheEntry | None) -> bool:
        return entry is not None and (self._clock() - entry.populated_at) < self._ttl_s

    def _publish(self, snapshot: GridSnapshot) -> None:
        self._entry = _GridCacheEntry(snapshot=snapshot, populated_at=self._clock())

    def _build_and_persist(self) -> tuple[list[Intersection], list[Road]]:
        intersections, roads = build_grid(
            self._rng,
            center_lat=self._center_lat,
            center_lng=self._center_lng,
            half_extent=self._half_extent,
            size=self._size,
        )
        return self._store.save_all_intersections(intersections), self._store.save_all_roads(roads)

    def _regenerate(self) -> GridSnapshot:
        try:
            intersections = self._store.find_all_intersections()
            roads = self._store.find_all_roads()
            if not intersections and not roads:
                intersections, roads = self._build_and_persist()
        except StoreError as e:
            log_event(
                "grid_regeneration_failed",
                level=logging.ERROR,
                store=e.store,
                reason_code=e.reason_code,
                detail=e.message,
            )
            raise GridRegenerationError(str(e)) from e

        self._regenerations += 1
        log_event(
            "grid_regenerated",
            intersections=len(intersections),
            roads=len(roads),
            regenerations=self._regenerations,
        )
        return snapshot_of(intersections, roads)

    def get_swarm_data(self) -> GridSnapshot:
        entry = self._entry
        if self._is_fresh(entry):
            return entry.snapshot  # type: ignore[union-attr]

        with self._lock:
            # Another caller may have regenerated while we waited.
            entry = self._entry
            if self._is_fresh(entry):
                return entry.snapshot  # type: ignore[union-attr]
            snapshot = self._regenerate()
            self._publish(snapshot)
            return snapshot

    def initialize_default_data(self) -> GridSnapshot:
        with self._lock:
            try:
                self._store.delete_all_roads()
                self._store.delete_all_intersections()
                intersections, roads = self._build_and_persist()
            except StoreError as e:
                log_event(
                    "grid_initialize_failed",
                    level=logging.ERROR,
                    store=e.store,
                    reason_code=e.reason_code,
                    detail=e.message,
                )
                raise GridRegenerationError(str(e)) from e
            self._regenerations += 1
            snapshot = snapshot_of(intersections, roads)
            self._publish(snapshot)

        log_event("grid_initialized", intersections=len(intersections), roads=len(roads))
        return snapshot

    def clear_all_data(self) -> int:
        with self._lock:
            removed = self._store.delete_all_roads() + self._store.delete_all_intersections()
            self._entry = None
        log_event("grid_cleared", removed=removed)
        return removed

    def update_congestion(self) -> int:
        with self._lock:
            intersections, roads = perturb_congestion(
                self._store.find_all_intersections(),
                self._store.find_all_roads(),
                self._rng,
            )
            self._store.save_all_intersections(intersections)
            self._store.save_all_roads(roads)
            self._entry = None
        log_event("grid_congestion_updated", intersections=len(intersections), roads=len(roads))
        return len(intersections)

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None

    def stats(self) -> dict[str, float | int | bool]:
        entry = self._entry
        return {
            "cached": entry is not None,
            "fresh": self._is_fresh(entry),
            "age_s": round(self._clock() - entry.populated_at, 3) if entry is not None else 0.0,
            "ttl_s": self._ttl_s,
            "regenerations": self._regenerations,
        }
