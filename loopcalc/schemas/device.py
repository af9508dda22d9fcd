from __future__ import annotations

import math

from pydantic import BaseModel, Field


class ConnectionPoint(BaseModel):
    """Electrical connector origin of a device, in feet."""

    x: float
    y: float
    z: float = 0.0

    model_config = {"frozen": True}

    def distance_to(self, other: ConnectionPoint) -> float:
        return math.dist((self.x, self.y, self.z), (other.x, other.y, other.z))


class DeviceElectricalData(BaseModel):
    name: str
    device_type: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    alarm_current: float = Field(default=0.0, ge=0)  # amps
    standby_current: float = Field(default=0.0, ge=0)  # amps
    current_source: str | None = None  # instance, type, manual
    connector: ConnectionPoint | None = None

    model_config = {"frozen": True}
