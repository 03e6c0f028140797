from __future__ import annotations

import random
import time

from .models import GridSnapshot, Intersection, Road, RoadView

DEFAULT_GRID_SIZE = 9
MAX_INTERSECTION_CONGESTION = 0.8
MAX_ROAD_CONGESTION = 0.7
MIN_CYCLE_S = 30
CYCLE_SPAN_S = 31

STREET_NAMES = ("Main", "Oak", "Pine", "Maple", "Cedar", "Elm", "Wall", "Park")
AVENUE_NAMES = ("1st", "2nd", "3rd", "4th", "5th", "Broadway", "Central", "Lexington")


def intersection_name(i: int, j: int) -> str:
    street = STREET_NAMES[(i + j) % len(STREET_NAMES)]
    avenue = AVENUE_NAMES[j % len(AVENUE_NAMES)]
    return f"{street} St & {avenue} Ave"


def build_grid(
    rng: random.Random,
    *,
    center_lat: float,
    center_lng: float,
    half_extent: float,
    size: int = DEFAULT_GRID_SIZE,
) -> tuple[list[Intersection], list[Road]]:
    """Square lattice of intersections joined to their right and bottom neighbours."""
    if size < 2:
        raise ValueError(f"grid size must be at least 2, got {size}")

    step = (2.0 * half_extent) / (size - 1)
    top = center_lat + half_extent
    left = center_lng - half_extent

    grid: list[list[Intersection]] = []
    for i in range(size):
        row: list[Intersection] = []
        for j in range(size):
            cycle = MIN_CYCLE_S + int(rng.random() * CYCLE_SPAN_S)
            row.append(
                Intersection(
                    grid_x=i,
                    grid_y=j,
                    lat=top - i * step,
                    lng=left + j * step,
                    name=intersection_name(i, j),
                    congestion=rng.random() * MAX_INTERSECTION_CONGESTION,
                    cycle_duration=cycle,
                    time_remaining=cycle,
                )
            )
        grid.append(row)

    roads: list[Road] = []
    for i in range(size):
        for j in range(size):
            here = grid[i][j]
            neighbours = []
            if j + 1 < size:
                neighbours.append(grid[i][j + 1])
            if i + 1 < size:
                neighbours.append(grid[i + 1][j])
            for other in neighbours:
                roads.append(
                    Road(
                        start_lat=here.lat,
                        start_lng=here.lng,
                        end_lat=other.lat,
                        end_lng=other.lng,
                        congestion=rng.random() * MAX_ROAD_CONGESTION,
                    )
                )

    return [it for row in grid for it in row], roads


def perturb_congestion(
    intersections: list[Intersection],
    roads: list[Road],
    rng: random.Random,
) -> tuple[list[Intersection], list[Road]]:
    new_intersections = [
        it.model_copy(
            update={
                "congestion": rng.random() * MAX_INTERSECTION_CONGESTION,
                "time_remaining": int(rng.random() * it.cycle_duration),
            }
        )
        for it in intersections
    ]
    new_roads = [road.model_copy(update={"congestion": rng.random() * MAX_ROAD_CONGESTION}) for road in roads]
    return new_intersections, new_roads


def snapshot_of(
    intersections: list[Intersection],
    roads: list[Road],
    *,
    timestamp_ms: int | None = None,
) -> GridSnapshot:
    return GridSnapshot(
        intersections=tuple(intersections),
        roads=tuple(
            RoadView(
                start=(road.start_lat, road.start_lng),
                end=(road.end_lat, road.end_lng),
                congestion=road.congestion,
            )
            for road in roads
        ),
        timestamp=timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
    )
