"""Wire physics for power-limited signaling loops.

Pure functions. All distances are in feet, resistance in ohms per 1000 ft.

Measurements that can fail (missing connector, non-finite geometry) never
raise: they return a ``SegmentMeasurement`` carrying the substituted default
and the reason, so callers can see which segments are estimates.
"""

from __future__ import annotations

import logging
import math
from enum import Enum

from pydantic import BaseModel

from loopcalc.schemas.device import ConnectionPoint

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_LENGTH = 25.0
MIN_SEGMENT_LENGTH = 1.0
MAX_SEGMENT_LENGTH = 1000.0
DEFAULT_ROUTING_OVERHEAD = 1.15


class MeasurementSource(str, Enum):
    MEASURED = "measured"
    CLAMPED = "clamped"
    DEFAULT = "default"


class SegmentMeasurement(BaseModel):
    length: float
    source: MeasurementSource = MeasurementSource.MEASURED
    reason: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.source == MeasurementSource.DEFAULT


def calculate_voltage_drop(current: float, distance: float, resistance: float) -> float:
    """V = I * R, with R = (2 * distance / 1000) * resistance per 1000 ft.

    The factor 2 covers the supply and return conductors.
    """
    return current * (2.0 * distance / 1000.0) * resistance


def _default(reason: str) -> SegmentMeasurement:
    logger.debug("Segment length defaulted to %.1fft: %s", DEFAULT_SEGMENT_LENGTH, reason)
    return SegmentMeasurement(
        length=DEFAULT_SEGMENT_LENGTH,
        source=MeasurementSource.DEFAULT,
        reason=reason,
    )


def measure_segment(
    start: ConnectionPoint | None,
    end: ConnectionPoint | None,
    routing_overhead: float = DEFAULT_ROUTING_OVERHEAD,
) -> SegmentMeasurement:
    """Routed wire length between two connection points."""
    if start is None or end is None:
        return _default("connection point missing")

    distance = start.distance_to(end)
    if not math.isfinite(distance) or distance < 0:
        return _default(f"invalid geometric distance {distance}")

    if not math.isfinite(routing_overhead) or routing_overhead <= 0:
        routing_overhead = DEFAULT_ROUTING_OVERHEAD

    routed = distance * routing_overhead
    if not math.isfinite(routed):
        return _default(f"invalid routed distance {routed}")

    clamped = max(MIN_SEGMENT_LENGTH, min(routed, MAX_SEGMENT_LENGTH))
    if clamped != routed:
        return SegmentMeasurement(
            length=clamped,
            source=MeasurementSource.CLAMPED,
            reason=f"routed length {routed:.1f}ft outside "
            f"[{MIN_SEGMENT_LENGTH:g}, {MAX_SEGMENT_LENGTH:g}]",
        )
    return SegmentMeasurement(length=routed)


def calculate_max_distance(
    current_load: float,
    system_voltage: float,
    min_voltage: float,
    resistance: float,
    supply_distance: float = 0.0,
) -> float:
    """Additional circuit length the present load can be carried before the
    end-of-line voltage reaches the minimum.

    Returns ``math.inf`` when the load or the resistance is non-positive.
    """
    if current_load <= 0 or resistance <= 0:
        return math.inf

    allowed_drop = system_voltage - min_voltage
    max_circuit_distance = (allowed_drop / current_load) * 1000.0 / (2.0 * resistance)
    return max(0.0, max_circuit_distance - supply_distance)
