from __future__ import annotations

from dataclasses import dataclass

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "provider_http_error",
        "provider_unauthorized",
        "provider_timeout",
        "provider_network_error",
        "provider_payload_invalid",
        "provider_no_data",
        "store_unavailable",
        "store_corrupt",
        "grid_regeneration_failed",
    }
)


@dataclass
class ProviderError(RuntimeError):
    """A single provider call failed; always recovered by the aggregator."""

    provider: str
    reason_code: str
    message: str
    status_code: int | None = None

    def __post_init__(self) -> None:
        self.reason_code = normalize_reason_code(self.reason_code, default="provider_http_error")

    def __str__(self) -> str:
        return f"{self.provider}: {self.message}"


@dataclass
class StoreError(RuntimeError):
    store: str
    message: str
    reason_code: str = "store_unavailable"

    def __str__(self) -> str:
        return f"{self.store} store: {self.message}"


class GridRegenerationError(RuntimeError):
    reason_code = "grid_regeneration_failed"


def normalize_reason_code(reason_code: str, *, default: str = "provider_http_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
