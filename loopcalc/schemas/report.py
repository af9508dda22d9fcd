from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from loopcalc.schemas.parameters import CircuitParameters
from loopcalc.schemas.validation import ValidationResult

DEFAULT_DEVICE_TYPE = "Fire Alarm Device"
MAIN_LOCATION = "Main"


class DeviceStatus(str, Enum):
    OK = "OK"
    LOW_VOLTAGE = "LOW VOLTAGE"


class CircuitStatistics(BaseModel):
    total_devices: int = 0
    main_circuit_devices: int = 0
    branch_devices: int = 0
    total_branches: int = 0
    total_load: float = 0.0
    total_standby_load: float = 0.0
    total_wire_length: float = 0.0
    last_updated: datetime | None = None


class ReportDeviceRow(BaseModel):
    position: int
    device_id: str
    name: str
    device_type: str = DEFAULT_DEVICE_TYPE
    location: str = MAIN_LOCATION  # "Main" or the branch label
    tap_device_id: str | None = None
    current: float
    standby_current: float = 0.0
    distance_from_parent: float = 0.0
    voltage_drop: float = 0.0
    voltage: float
    status: DeviceStatus

    @property
    def passed(self) -> bool:
        return self.status == DeviceStatus.OK


class CircuitReport(BaseModel):
    generated_at: datetime
    parameters: CircuitParameters
    total_devices: int = 0
    main_circuit_devices: int = 0
    branch_devices: int = 0
    total_branches: int = 0
    total_load: float = 0.0
    total_standby_load: float = 0.0
    total_wire_length: float = 0.0
    max_voltage_drop: float = 0.0
    max_voltage_drop_percent: float = 0.0
    worst_case_device: str | None = None
    worst_case_device_id: str | None = None
    worst_case_voltage: float | None = None
    end_of_line_voltage: float
    devices: list[ReportDeviceRow] = Field(default_factory=list)
    validation: ValidationResult
    validation_errors: list[str] = Field(default_factory=list)
    is_valid: bool = True


class RemovalResult(BaseModel):
    device_id: str | None = None
    location: str | None = None  # "main" or the branch label
    position: int = 0  # 1-based

    @property
    def found(self) -> bool:
        return self.location is not None


class CircuitChange(BaseModel):
    """What a mutation changed, for hosts that refresh their own views."""

    operation: str
    device_id: str | None = None
    changed_node_ids: list[str] = Field(default_factory=list)
    removed_node_ids: list[str] = Field(default_factory=list)
    voltages: dict[str, float] = Field(default_factory=dict)  # node id -> volts
