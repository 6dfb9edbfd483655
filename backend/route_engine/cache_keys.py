from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .errors import RouteInputError
from .models import Coordinate

# ~11 m at the equator.
KEY_PRECISION = 4


def parse_coordinate(value: Any, *, label: str) -> Coordinate:
    """Validate a Coordinate or a mapping with lat/lng keys.

    Raises RouteInputError for anything that is not a finite, in-range point.
    """
    if isinstance(value, Coordinate):
        return value
    if not isinstance(value, Mapping):
        raise RouteInputError(
            reason_code="invalid_coordinates",
            message=f"Invalid {label} location",
            details={"type": type(value).__name__},
        )
    try:
        return Coordinate.model_validate(dict(value))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or label}: {err['msg']}" for err in exc.errors()
        )
        raise RouteInputError(
            reason_code="invalid_coordinates",
            message=f"Invalid {label} location ({problems})",
            details={"errors": problems},
        ) from exc


def _round_component(value: float) -> str:
    # Adding 0.0 turns -0.0 into 0.0 so "-0.0000" never appears.
    return f"{round(value, KEY_PRECISION) + 0.0:.{KEY_PRECISION}f}"


def _point_key(point: Coordinate) -> str:
    return f"{_round_component(point.latitude)},{_round_component(point.longitude)}"


def derive_cache_key(origin: Any, destination: Any) -> str:
    o = parse_coordinate(origin, label="origin")
    d = parse_coordinate(destination, label="destination")
    return f"{_point_key(o)}_to_{_point_key(d)}"
