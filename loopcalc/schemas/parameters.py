from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class CircuitParameters(BaseModel):
    """Supply contract for a whole circuit.

    Every value is required except ``usable_load``, which is derived from
    ``max_load`` and ``safety_percent`` when omitted.
    """

    system_voltage: float = Field(..., gt=0)
    min_voltage: float = Field(..., ge=0)
    max_load: float = Field(..., gt=0)
    safety_percent: float = Field(..., ge=0, lt=1)  # reserved fraction
    usable_load: float | None = Field(default=None, ge=0)
    wire_gauge: str = Field(..., min_length=1)
    resistance: float = Field(..., ge=0)  # ohms per 1000 ft
    supply_distance: float = Field(..., ge=0)
    routing_overhead: float = Field(..., gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _derive_usable_load(cls, data):
        if isinstance(data, dict) and data.get("usable_load") is None:
            max_load = data.get("max_load")
            reserved = data.get("safety_percent")
            if max_load is not None and reserved is not None:
                data = {
                    **data,
                    "usable_load": float(max_load) * (1 - float(reserved)),
                }
        return data

    @model_validator(mode="after")
    def _check_voltages(self) -> CircuitParameters:
        if self.min_voltage >= self.system_voltage:
            raise ValueError(
                f"min_voltage ({self.min_voltage}V) must be below "
                f"system_voltage ({self.system_voltage}V)"
            )
        if self.usable_load is not None and self.usable_load > self.max_load:
            raise ValueError(
                f"usable_load ({self.usable_load}A) exceeds "
                f"max_load ({self.max_load}A)"
            )
        return self
