from __future__ import annotations

import json
import uuid
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import StoreError
from .models import Credential, Intersection, Road, TrafficReading, Vehicle, utc_now
from .settings import settings

_RowT = TypeVar("_RowT", Intersection, Road)


def _new_id() -> str:
    return uuid.uuid4().hex


class _JsonDocumentStore:
    """One JSON document under <OUT_DIR>/store, rewritten whole on every mutation."""

    name = "document"
    filename = "document.json"

    def __init__(self) -> None:
        self._lock = Lock()

    def _path(self) -> Path:
        # Resolved per call so OUT_DIR changes (tests, scripts) take effect.
        return Path(settings.out_dir) / "store" / self.filename

    def _read(self) -> dict[str, Any]:
        path = self._path()
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreError(self.name, f"read failed: {e}") from e
        except json.JSONDecodeError as e:
            raise StoreError(self.name, f"invalid JSON in {path.name}: {e}", reason_code="store_corrupt") from e
        if not isinstance(raw, dict):
            raise StoreError(self.name, f"{path.name} is not a JSON object", reason_code="store_corrupt")
        return raw

    def _write_text(self, text: str) -> None:
        path = self._path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise StoreError(self.name, f"write failed: {e}") from e

    def _write(self, payload: dict[str, Any]) -> None:
        self._write_text(json.dumps(payload, indent=2))

    def ping(self) -> None:
        """Raise StoreError when the backing file cannot be read or parsed."""
        with self._lock:
            self._read()

    def _rows(self, payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
        rows = payload.get(key, [])
        if not isinstance(rows, list):
            raise StoreError(self.name, f"'{key}' is not a list", reason_code="store_corrupt")
        return [row for row in rows if isinstance(row, dict)]

    def _parse(self, model: type[BaseModel], row: dict[str, Any]) -> Any:
        try:
            return model.model_validate(row)
        except ValidationError as e:
            raise StoreError(self.name, f"invalid {model.__name__} row: {e.error_count()} error(s)", reason_code="store_corrupt") from e


class CredentialStore(_JsonDocumentStore):
    name = "credential"
    filename = "credentials.json"

    @staticmethod
    def _dump(credential: Credential) -> dict[str, Any]:
        # The store is the one place the secret is kept in clear.
        return {
            "id": credential.id,
            "provider": credential.provider,
            "secret": credential.secret.get_secret_value(),
            "created_at": credential.created_at.isoformat(),
            "updated_at": credential.updated_at.isoformat(),
        }

    def _load_all(self) -> list[Credential]:
        return [self._parse(Credential, row) for row in self._rows(self._read(), "credentials")]

    def save(self, provider: str, secret: str) -> Credential:
        now = utc_now()
        credential = Credential(id=_new_id(), provider=provider, secret=secret, created_at=now, updated_at=now)
        with self._lock:
            payload = self._read()
            rows = self._rows(payload, "credentials")
            rows.append(self._dump(credential))
            payload["credentials"] = rows
            self._write(payload)
        return credential

    def latest(self) -> Credential | None:
        with self._lock:
            credentials = self._load_all()
        return _most_recent(credentials)

    def get_active_credential(self) -> Credential | None:
        with self._lock:
            credentials = self._load_all()
        return _most_recent(c for c in credentials if c.has_secret())

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._rows(self._read(), "credentials"))
            self._write({"credentials": []})
        return count


def _most_recent(credentials: Iterable[Credential]) -> Credential | None:
    best: Credential | None = None
    for credential in credentials:
        # Later rows win ties; rows are appended in save order.
        if best is None or credential.created_at >= best.created_at:
            best = credential
    return best


class ReadingStore(_JsonDocumentStore):
    """Append-only JSON Lines file; only the retention deletes rewrite it."""

    name = "reading"
    filename = "readings.jsonl"

    def _load_all(self) -> list[TrafficReading]:
        path = self._path()
        if not path.exists():
            return []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreError(self.name, f"read failed: {e}") from e
        readings: list[TrafficReading] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as e:
                raise StoreError(self.name, f"invalid JSON on line {lineno} of {path.name}: {e}", reason_code="store_corrupt") from e
            if not isinstance(row, dict):
                raise StoreError(self.name, f"line {lineno} of {path.name} is not a JSON object", reason_code="store_corrupt")
            readings.append(self._parse(TrafficReading, row))
        return readings

    def _rewrite(self, readings: list[TrafficReading]) -> None:
        self._write_text("".join(r.model_dump_json() + "\n" for r in readings))

    def ping(self) -> None:
        with self._lock:
            self._load_all()

    def save(self, reading: TrafficReading) -> TrafficReading:
        stored = reading if reading.id else reading.model_copy(update={"id": _new_id()})
        line = stored.model_dump_json() + "\n"
        path = self._path()
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
            except OSError as e:
                raise StoreError(self.name, f"append failed: {e}") from e
        return stored

    def list_readings(self) -> list[TrafficReading]:
        with self._lock:
            return self._load_all()

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete readings fetched before `cutoff`; their incidents go with them."""
        with self._lock:
            readings = self._load_all()
            kept = [r for r in readings if r.fetched_at >= cutoff]
            removed = len(readings) - len(kept)
            if removed:
                self._rewrite(kept)
        return removed

    def delete_incidents_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            readings = self._load_all()
            removed = 0
            kept: list[TrafficReading] = []
            for reading in readings:
                incidents = [i for i in reading.incidents if i.reported_at >= cutoff]
                removed += len(reading.incidents) - len(incidents)
                kept.append(reading.model_copy(update={"incidents": incidents}))
            if removed:
                self._rewrite(kept)
        return removed


class VehicleStore(_JsonDocumentStore):
    name = "vehicle"
    filename = "vehicles.json"

    def list_vehicles(self) -> list[Vehicle]:
        with self._lock:
            return [self._parse(Vehicle, row) for row in self._rows(self._read(), "vehicles")]

    def save(self, vehicle: Vehicle) -> Vehicle:
        stored = vehicle if vehicle.id else vehicle.model_copy(update={"id": _new_id()})
        with self._lock:
            payload = self._read()
            rows = [row for row in self._rows(payload, "vehicles") if row.get("id") != stored.id]
            rows.append(stored.model_dump(mode="json"))
            payload["vehicles"] = rows
            self._write(payload)
        return stored


class GridStore(_JsonDocumentStore):
    name = "grid"
    filename = "grid.json"

    def _find(self, key: str, model: type[_RowT]) -> list[_RowT]:
        with self._lock:
            return [self._parse(model, row) for row in self._rows(self._read(), key)]

    def _save_all(self, key: str, items: Iterable[_RowT]) -> list[_RowT]:
        saved = [item if item.id else item.model_copy(update={"id": _new_id()}) for item in items]
        with self._lock:
            payload = self._read()
            rows = self._rows(payload, key)
            index = {row.get("id"): pos for pos, row in enumerate(rows)}
            for item in saved:
                row = item.model_dump(mode="json")
                pos = index.get(item.id)
                if pos is None:
                    index[item.id] = len(rows)
                    rows.append(row)
                else:
                    rows[pos] = row
            payload[key] = rows
            self._write(payload)
        return saved

    def _delete_all(self, key: str) -> int:
        with self._lock:
            payload = self._read()
            count = len(self._rows(payload, key))
            payload[key] = []
            self._write(payload)
        return count

    def find_all_intersections(self) -> list[Intersection]:
        items = self._find("intersections", Intersection)
        return sorted(items, key=lambda it: (it.grid_x, it.grid_y))

    def save_all_intersections(self, items: Iterable[Intersection]) -> list[Intersection]:
        return self._save_all("intersections", items)

    def delete_all_intersections(self) -> int:
        return self._delete_all("intersections")

    def find_all_roads(self) -> list[Road]:
        return self._find("roads", Road)

    def save_all_roads(self, items: Iterable[Road]) -> list[Road]:
        return self._save_all("roads", items)

    def delete_all_roads(self) -> int:
        return self._delete_all("roads")
