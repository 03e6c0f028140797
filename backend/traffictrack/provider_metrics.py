from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class SourceStats:
    request_count: int = 0
    fallback_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0


class ProviderMetricsStore:
    """Per-source outcome counters for live acquisitions."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._sources: dict[str, SourceStats] = {}
        self._reasons: dict[str, int] = {}

    def record(
        self,
        source: str,
        *,
        duration_ms: float,
        fallback: bool = False,
        reason_code: str | None = None,
    ) -> None:
        name = source.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._sources.setdefault(name, SourceStats())
            stats.request_count += 1
            if fallback:
                stats.fallback_count += 1
            if reason_code:
                stats.error_count += 1
                self._reasons[reason_code] = self._reasons.get(reason_code, 0) + 1
            stats.total_duration_ms += d_ms
            if d_ms > stats.max_duration_ms:
                stats.max_duration_ms = d_ms

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            sources: dict[str, dict[str, float | int]] = {}
            total_requests = 0
            total_fallbacks = 0

            for name in sorted(self._sources):
                stats = self._sources[name]
                total_requests += stats.request_count
                total_fallbacks += stats.fallback_count
                avg_duration_ms = (
                    stats.total_duration_ms / stats.request_count if stats.request_count else 0.0
                )
                sources[name] = {
                    "request_count": stats.request_count,
                    "fallback_count": stats.fallback_count,
                    "error_count": stats.error_count,
                    "avg_duration_ms": round(avg_duration_ms, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                }

            return {
                "created_at": self._created_at,
                "total_requests": total_requests,
                "total_fallbacks": total_fallbacks,
                "sources": sources,
                "reason_codes": dict(sorted(self._reasons.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._sources.clear()
            self._reasons.clear()


PROVIDER_METRICS = ProviderMetricsStore()


def record_provider_outcome(
    source: str,
    *,
    duration_ms: float,
    fallback: bool = False,
    reason_code: str | None = None,
) -> None:
    PROVIDER_METRICS.record(source, duration_ms=duration_ms, fallback=fallback, reason_code=reason_code)


def provider_metrics_snapshot() -> dict[str, object]:
    return PROVIDER_METRICS.snapshot()


def reset_provider_metrics() -> None:
    PROVIDER_METRICS.reset()
