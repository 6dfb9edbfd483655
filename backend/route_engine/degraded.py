from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from .models import RouteProvider, RouteResult, utc_now


def degraded_result(*, now: Callable[[], datetime] = utc_now) -> RouteResult:
    """Provider-less result: no metrics, the UI hands off to an external map app."""
    return RouteResult(provider=RouteProvider.FALLBACK, cached_at=now())
