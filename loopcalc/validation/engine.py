"""Circuit Validation Engine — Deterministic Rule-Based Loop Checker.

Pure Python. Fully unit-testable.

Validates a circuit held by a CircuitManager against its supply contract:
  1. Total alarm load vs. rated maximum load
  2. Total alarm load vs. usable (safety-margined) load
  3. Voltage at every main-circuit device vs. minimum voltage
  4. Voltage at every T-tap branch device vs. minimum voltage
  5. Total wire length vs. maximum distance for the present load
  6. Devices within the warning margin above minimum voltage (warning)
  7. Worst-case voltage drop percentage (warning)
  8. Total circuit length vs. configured maximum (warning)

Input:  CircuitManager
Output: ValidationResult with status VALID|INVALID, errors[], warnings[]

Violations are data, not exceptions: only ERROR-severity findings make a
circuit INVALID.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loopcalc.schemas.circuit import CircuitType
from loopcalc.schemas.validation import (
    ValidationResult,
    ValidationError,
    ValidationStatus,
    ValidationSeverity,
)

if TYPE_CHECKING:
    from loopcalc.circuit.manager import CircuitManager


def _device_name(manager: CircuitManager, device_id: str) -> str:
    data = manager.device_data.get(device_id)
    return data.name if data else device_id


# ═══════════════════════════════════════════════════════════
# Check 1: Rated Maximum Load
# ═══════════════════════════════════════════════════════════


def check_max_load(manager: CircuitManager) -> list[ValidationError]:
    """Total alarm current must not exceed the supply's rated load."""
    total = manager.get_total_system_load()
    max_load = manager.parameters.max_load
    if total <= max_load:
        return []
    return [
        ValidationError(
            code="E_MAX_LOAD",
            severity=ValidationSeverity.ERROR,
            message=f"Total load ({total:.3f}A) exceeds maximum ({max_load:.3f}A)",
            device_ids=list(manager.device_data),
            suggestion="Split the devices across additional circuits",
        )
    ]


# ═══════════════════════════════════════════════════════════
# Check 2: Usable Load
# ═══════════════════════════════════════════════════════════


def check_usable_load(manager: CircuitManager) -> list[ValidationError]:
    """Total alarm current must stay inside the safety-reserved budget."""
    total = manager.get_total_system_load()
    usable = manager.parameters.usable_load
    if usable is None or total <= usable:
        return []
    return [
        ValidationError(
            code="E_USABLE_LOAD",
            severity=ValidationSeverity.ERROR,
            message=f"Total load ({total:.3f}A) exceeds usable load ({usable:.3f}A)",
            device_ids=list(manager.device_data),
            suggestion=(
                f"Keep {manager.parameters.safety_percent:.0%} of the rated "
                "load in reserve"
            ),
        )
    ]


# ═══════════════════════════════════════════════════════════
# Check 3: Main Circuit Voltage
# ═══════════════════════════════════════════════════════════


def check_main_voltages(manager: CircuitManager) -> list[ValidationError]:
    """Every main-circuit device must see at least the minimum voltage."""
    errors: list[ValidationError] = []
    min_voltage = manager.parameters.min_voltage

    for device_id in manager.main_circuit:
        voltage = manager.get_voltage_at_device(device_id, CircuitType.MAIN)
        if voltage < min_voltage:
            errors.append(
                ValidationError(
                    code="E_LOW_VOLTAGE",
                    severity=ValidationSeverity.ERROR,
                    message=(
                        f"Device '{_device_name(manager, device_id)}' voltage "
                        f"({voltage:.1f}V) below minimum ({min_voltage:.1f}V)"
                    ),
                    device_ids=[device_id],
                    suggestion="Use a heavier wire gauge or shorten the circuit",
                )
            )

    return errors


# ═══════════════════════════════════════════════════════════
# Check 4: Branch Voltage
# ═══════════════════════════════════════════════════════════


def check_branch_voltages(manager: CircuitManager) -> list[ValidationError]:
    """Every T-tap device must see at least the minimum voltage."""
    errors: list[ValidationError] = []
    min_voltage = manager.parameters.min_voltage

    for tap_id, members in manager.branches.items():
        for device_id in members:
            voltage = manager.get_voltage_at_device(
                device_id, CircuitType.BRANCH, tap_id
            )
            if voltage < min_voltage:
                errors.append(
                    ValidationError(
                        code="E_LOW_VOLTAGE_BRANCH",
                        severity=ValidationSeverity.ERROR,
                        message=(
                            f"Branch device '{_device_name(manager, device_id)}' "
                            f"voltage ({voltage:.1f}V) below minimum "
                            f"({min_voltage:.1f}V)"
                        ),
                        device_ids=[tap_id, device_id],
                        suggestion=(
                            "Move the branch closer to the supply or reduce "
                            "its load"
                        ),
                    )
                )

    return errors


# ═══════════════════════════════════════════════════════════
# Check 5: Wire Length
# ═══════════════════════════════════════════════════════════


def check_wire_length(manager: CircuitManager) -> list[ValidationError]:
    """Total wire must fit inside the distance the load allows."""
    total_length = manager.calculate_total_wire_length()
    max_length = (
        manager.calculate_max_distance(manager.get_total_system_load())
        + manager.parameters.supply_distance
    )
    if total_length <= max_length:
        return []
    return [
        ValidationError(
            code="E_WIRE_LENGTH",
            severity=ValidationSeverity.ERROR,
            message=(
                f"Total wire length ({total_length:.0f}ft) exceeds maximum "
                f"({max_length:.0f}ft)"
            ),
            suggestion="Reduce the load or use a heavier wire gauge",
        )
    ]


# ═══════════════════════════════════════════════════════════
# Check 6: Marginal Voltage
# ═══════════════════════════════════════════════════════════


def check_marginal_voltages(manager: CircuitManager) -> list[ValidationError]:
    """Flag devices that pass, but with little headroom."""
    min_voltage = manager.parameters.min_voltage
    threshold = min_voltage + manager.limits.voltage_warning_margin
    marginal: list[str] = []

    for device_id in manager.main_circuit:
        voltage = manager.get_voltage_at_device(device_id, CircuitType.MAIN)
        if min_voltage <= voltage < threshold:
            marginal.append(device_id)
    for tap_id, members in manager.branches.items():
        for device_id in members:
            voltage = manager.get_voltage_at_device(
                device_id, CircuitType.BRANCH, tap_id
            )
            if min_voltage <= voltage < threshold:
                marginal.append(device_id)

    if not marginal:
        return []
    names = ", ".join(_device_name(manager, d) for d in marginal)
    return [
        ValidationError(
            code="W_MARGINAL_VOLTAGE",
            severity=ValidationSeverity.WARNING,
            message=(
                f"{len(marginal)} device(s) within "
                f"{manager.limits.voltage_warning_margin:.1f}V of minimum: {names}"
            ),
            device_ids=marginal,
            suggestion="Leave headroom for battery discharge and wire tolerance",
        )
    ]


# ═══════════════════════════════════════════════════════════
# Check 7: Voltage Drop Percentage
# ═══════════════════════════════════════════════════════════


def check_voltage_drop_percent(manager: CircuitManager) -> list[ValidationError]:
    worst_id, max_drop = manager.worst_case()
    percent = max_drop / manager.parameters.system_voltage * 100
    limit = manager.limits.max_voltage_drop_percent
    if worst_id is None or percent <= limit:
        return []
    return [
        ValidationError(
            code="W_VOLTAGE_DROP_PERCENT",
            severity=ValidationSeverity.WARNING,
            message=(
                f"Voltage drop at '{_device_name(manager, worst_id)}' is "
                f"{percent:.1f}% (limit {limit:.1f}%)"
            ),
            device_ids=[worst_id],
        )
    ]


# ═══════════════════════════════════════════════════════════
# Check 8: Circuit Length
# ═══════════════════════════════════════════════════════════


def check_circuit_length(manager: CircuitManager) -> list[ValidationError]:
    total_length = manager.calculate_total_wire_length()
    limit = manager.limits.max_circuit_length
    if total_length <= limit:
        return []
    return [
        ValidationError(
            code="W_CIRCUIT_LENGTH",
            severity=ValidationSeverity.WARNING,
            message=(
                f"Total wire length ({total_length:.0f}ft) exceeds the "
                f"recommended {limit:.0f}ft"
            ),
        )
    ]


# ═══════════════════════════════════════════════════════════
# Main Validator
# ═══════════════════════════════════════════════════════════

# Registry of all checks, run in order
ALL_CHECKS = [
    check_max_load,
    check_usable_load,
    check_main_voltages,
    check_branch_voltages,
    check_wire_length,
    check_marginal_voltages,
    check_voltage_drop_percent,
    check_circuit_length,
]


def validate_circuit(
    manager: CircuitManager,
    checks: list | None = None,
) -> ValidationResult:
    """Run all (or selected) validation checks on a circuit.

    Args:
        manager: The circuit engine to validate.
        checks: Optional subset of check functions to run.
                 Defaults to ALL_CHECKS.

    Returns:
        ValidationResult with VALID/INVALID status, errors, warnings.
    """
    check_fns = checks if checks is not None else ALL_CHECKS
    all_errors: list[ValidationError] = []
    all_warnings: list[ValidationError] = []
    checks_passed = 0

    for check_fn in check_fns:
        issues = check_fn(manager)
        errs = [e for e in issues if e.severity == ValidationSeverity.ERROR]
        warns = [e for e in issues if e.severity != ValidationSeverity.ERROR]
        all_errors.extend(errs)
        all_warnings.extend(warns)
        if not errs:
            checks_passed += 1

    status = (
        ValidationStatus.VALID if len(all_errors) == 0 else ValidationStatus.INVALID
    )

    return ValidationResult(
        status=status,
        errors=all_errors,
        warnings=all_warnings,
        checks_passed=checks_passed,
        checks_total=len(check_fns),
    )
