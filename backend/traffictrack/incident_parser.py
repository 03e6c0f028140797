from __future__ import annotations

from typing import Any

from .logging_utils import log_event
from .models import Incident, IncidentType, Severity

# TomTom reports iconCategory as a word in older payloads and as a numeric code in v5.
_ICON_CATEGORY_TYPES: dict[str, IncidentType] = {
    "accident": "accident",
    "roadwork": "roadwork",
    "construction": "roadwork",
    "congestion": "congestion",
    "jam": "congestion",
    "closure": "closure",
    "roadclosed": "closure",
    "1": "accident",
    "6": "congestion",
    "7": "closure",
    "8": "closure",
    "9": "roadwork",
}


def incident_type_for_icon(icon_category: Any) -> IncidentType:
    key = str(icon_category if icon_category is not None else "").strip().lower()
    return _ICON_CATEGORY_TYPES.get(key, "other")


def severity_for_magnitude(magnitude: int) -> Severity:
    if magnitude < 1:
        return "low"
    if magnitude < 3:
        return "medium"
    if magnitude < 5:
        return "high"
    return "critical"


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _lng_lat(coordinates: Any) -> tuple[float, float] | None:
    if not isinstance(coordinates, list) or len(coordinates) < 2:
        return None
    first = coordinates[0]
    # LineString geometries carry a list of [lng, lat] vertices; use the first one.
    if isinstance(first, list):
        return _lng_lat(first)
    try:
        return float(coordinates[0]), float(coordinates[1])
    except (TypeError, ValueError):
        return None


def parse_incident(record: Any) -> Incident | None:
    """Parse one TomTom incident record, or return None when it lacks geometry or properties."""
    if not isinstance(record, dict):
        return None
    geometry = record.get("geometry")
    if not isinstance(geometry, dict):
        return None
    position = _lng_lat(geometry.get("coordinates"))
    if position is None:
        return None
    properties = record.get("properties")
    if not isinstance(properties, dict):
        return None

    lng, lat = position
    magnitude = _safe_int(properties.get("magnitudeOfDelay", 0))

    description = ""
    events = properties.get("events")
    if isinstance(events, list) and events and isinstance(events[0], dict):
        description = str(events[0].get("description") or "")

    try:
        return Incident(
            latitude=lat,
            longitude=lng,
            incident_type=incident_type_for_icon(properties.get("iconCategory", "other")),
            severity=severity_for_magnitude(magnitude),
            description=description,
            delay_minutes=max(0, magnitude),
        )
    except ValueError as e:
        log_event("incident_parse_skipped", reason=str(e))
        return None


def parse_incidents(payload: Any) -> list[Incident]:
    if not isinstance(payload, dict):
        return []
    records = payload.get("incidents")
    if not isinstance(records, list):
        return []
    out: list[Incident] = []
    for record in records:
        incident = parse_incident(record)
        if incident is not None:
            out.append(incident)
    return out
