from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_coordinates",
        "timeout",
        "network",
        "http_status",
        "provider_response",
        "relay_unconfigured",
        "no_provider_configured",
        "offline",
        "unexpected",
    }
)


@dataclass
class RouteInputError(ValueError):
    """Malformed origin/destination. Permanent; never retried."""

    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


def normalize_reason_code(reason_code: str, *, default: str = "unexpected") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
