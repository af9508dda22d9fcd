from __future__ import annotations

from enum import Enum
from pydantic import BaseModel, Field


class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationError(BaseModel):
    code: str
    severity: ValidationSeverity
    message: str
    device_ids: list[str] = Field(default_factory=list)
    suggestion: str | None = None


class ValidationStatus(str, Enum):
    VALID = "VALID"
    INVALID = "INVALID"


class ValidationResult(BaseModel):
    status: ValidationStatus
    errors: list[ValidationError] = Field(default_factory=list)
    warnings: list[ValidationError] = Field(default_factory=list)
    checks_passed: int = 0
    checks_total: int = 0

    @property
    def is_valid(self) -> bool:
        return self.status == ValidationStatus.VALID

    @property
    def messages(self) -> list[str]:
        return [e.message for e in self.errors]


class ValidationLimits(BaseModel):
    """Advisory thresholds; exceeding them only raises warnings."""

    max_voltage_drop_percent: float = Field(default=10.0, gt=0)
    max_circuit_length: float = Field(default=3000.0, gt=0)  # feet
    voltage_warning_margin: float = Field(default=2.0, ge=0)  # volts above minimum
