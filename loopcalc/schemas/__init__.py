from loopcalc.schemas.device import ConnectionPoint, DeviceElectricalData
from loopcalc.schemas.parameters import CircuitParameters
from loopcalc.schemas.circuit import CircuitNode, CircuitType, NodeKind, SelectionMode
from loopcalc.schemas.validation import ValidationLimits, ValidationResult
from loopcalc.schemas.report import (
    CircuitChange,
    CircuitReport,
    CircuitStatistics,
    RemovalResult,
)

__all__ = [
    "ConnectionPoint",
    "DeviceElectricalData",
    "CircuitParameters",
    "CircuitNode",
    "CircuitType",
    "NodeKind",
    "SelectionMode",
    "ValidationLimits",
    "ValidationResult",
    "CircuitChange",
    "CircuitReport",
    "CircuitStatistics",
    "RemovalResult",
]
