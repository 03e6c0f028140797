from __future__ import annotations

import random

from .models import TrafficReading

SYNTHETIC_MAX_CONGESTION = 0.7
SYNTHETIC_MIN_SPEED_KMH = 20.0
SYNTHETIC_SPEED_SPAN_KMH = 30.0
SYNTHETIC_FREE_FLOW_SPEED_KMH = 50.0
SYNTHETIC_FREE_FLOW_TRAVEL_TIME_S = 300
SYNTHETIC_TRAVEL_TIME_SPAN_S = 600


class SyntheticGenerator:
    """Network-free fallback readings, random within fixed bounds."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(self, lat: float, lng: float, radius_km: float) -> TrafficReading:
        rng = self._rng
        return TrafficReading(
            latitude=lat,
            longitude=lng,
            radius_km=radius_km,
            congestion_level=rng.random() * SYNTHETIC_MAX_CONGESTION,
            flow_speed=SYNTHETIC_MIN_SPEED_KMH + rng.random() * SYNTHETIC_SPEED_SPAN_KMH,
            free_flow_speed=SYNTHETIC_FREE_FLOW_SPEED_KMH,
            current_travel_time=int(
                rng.random() * SYNTHETIC_TRAVEL_TIME_SPAN_S + SYNTHETIC_FREE_FLOW_TRAVEL_TIME_S
            ),
            free_flow_travel_time=SYNTHETIC_FREE_FLOW_TRAVEL_TIME_S,
            road_closure=False,
            data_source="static",
        )
