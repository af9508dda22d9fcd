"""Circuit engine — sole owner and mutator of a circuit.

Keeps the flat indexes (main chain order, branch membership, branch labels,
device data, device -> node) and the tree in step, and recomputes loads,
voltages and statistics at the end of every mutation.

Expected-input problems (unknown or duplicate ids, missing data, unknown tap
points) are no-ops that return ``None`` or a not-found result. Every
mutation runs inside a snapshot: if anything raises part-way, the indexes and
the tree are restored before the exception propagates.
"""

from __future__ import annotations

import copy
import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone

from loopcalc.circuit import calculations
from loopcalc.circuit.calculations import (
    MIN_SEGMENT_LENGTH,
    DEFAULT_SEGMENT_LENGTH,
    MeasurementSource,
    SegmentMeasurement,
)
from loopcalc.circuit.tree import CircuitTree
from loopcalc.schemas.circuit import (
    CircuitNode,
    CircuitType,
    NodeStatus,
    SelectionMode,
)
from loopcalc.schemas.configuration import CircuitConfiguration
from loopcalc.schemas.device import ConnectionPoint, DeviceElectricalData
from loopcalc.schemas.parameters import CircuitParameters
from loopcalc.schemas.report import (
    DEFAULT_DEVICE_TYPE,
    MAIN_LOCATION,
    CircuitChange,
    CircuitReport,
    CircuitStatistics,
    DeviceStatus,
    RemovalResult,
    ReportDeviceRow,
)
from loopcalc.schemas.validation import ValidationLimits, ValidationResult
from loopcalc.validation import engine as validation_engine

logger = logging.getLogger(__name__)

_BRANCH_LABEL = re.compile(r"^T-Tap (\d+)$")


class CircuitManager:
    def __init__(
        self,
        parameters: CircuitParameters,
        limits: ValidationLimits | None = None,
    ):
        if parameters is None:
            raise ValueError("Circuit parameters are required")
        if not isinstance(parameters, CircuitParameters):
            parameters = CircuitParameters.model_validate(parameters)

        self.parameters = parameters
        self.limits = limits or ValidationLimits()

        self.main_circuit: list[str] = []
        self.branches: dict[str, list[str]] = {}
        self.branch_names: dict[str, str] = {}
        self.device_data: dict[str, DeviceElectricalData] = {}
        self.node_map: dict[str, str] = {}
        self.tree = CircuitTree.create(parameters.system_voltage)

        self.mode = SelectionMode.MAIN
        self.active_tap_point: str | None = None
        self._branch_counter = 1

        self.statistics = CircuitStatistics()
        self.last_change: CircuitChange | None = None
        self._update_statistics()

    # ─── Lookup ───

    @property
    def root(self) -> CircuitNode:
        return self.tree.root

    @property
    def current_node(self) -> CircuitNode:
        """Growth point of the main chain: its last device, or the root."""
        if self.main_circuit:
            node = self.node_for(self.main_circuit[-1])
            if node is not None:
                return node
        return self.tree.root

    def node_for(self, device_id: str | None) -> CircuitNode | None:
        if device_id is None:
            return None
        return self.tree.get(self.node_map.get(device_id))

    def find_node(self, device_id: str | None) -> CircuitNode | None:
        return self.tree.find_by_device_id(device_id)

    def branch_of(self, device_id: str | None) -> str | None:
        """Tap point id of the branch containing ``device_id``."""
        for tap_id, members in self.branches.items():
            if device_id in members:
                return tap_id
        return None

    def is_known(self, device_id: str | None) -> bool:
        return device_id is not None and (
            device_id in self.device_data or device_id in self.node_map
        )

    @staticmethod
    def _is_valid_id(device_id) -> bool:
        return isinstance(device_id, str) and bool(device_id.strip())

    def _accepts(self, device_id, data) -> bool:
        if not self._is_valid_id(device_id):
            logger.debug("Rejected device with invalid id %r", device_id)
            return False
        if not isinstance(data, DeviceElectricalData):
            logger.debug("Rejected %s: no electrical data", device_id)
            return False
        if self.is_known(device_id):
            logger.debug("Rejected %s: already in circuit", device_id)
            return False
        return True

    # ─── Selection mode ───

    def start_branch_from_device(self, tap_id: str | None) -> bool:
        if tap_id is None or tap_id not in self.main_circuit:
            return False
        self.active_tap_point = tap_id
        self.mode = SelectionMode.BRANCH
        return True

    def return_to_main(self) -> None:
        self.mode = SelectionMode.MAIN
        self.active_tap_point = None

    def add_device(
        self, device_id: str, data: DeviceElectricalData
    ) -> CircuitChange | None:
        """Add to whichever index the current selection mode points at."""
        if self.mode == SelectionMode.BRANCH:
            return self.add_device_to_branch(device_id, data)
        return self.add_device_to_main(device_id, data)

    # ─── Mutation plumbing ───

    def _snapshot(self) -> dict:
        return copy.deepcopy(
            {
                "main_circuit": self.main_circuit,
                "branches": self.branches,
                "branch_names": self.branch_names,
                "device_data": self.device_data,
                "node_map": self.node_map,
                "tree": self.tree,
                "parameters": self.parameters,
                "mode": self.mode,
                "active_tap_point": self.active_tap_point,
                "_branch_counter": self._branch_counter,
                "statistics": self.statistics,
            }
        )

    def _restore(self, snapshot: dict) -> None:
        for attr, value in snapshot.items():
            setattr(self, attr, value)

    @contextmanager
    def _transaction(self, operation: str):
        snapshot = self._snapshot()
        try:
            yield
        except Exception:
            logger.exception("%s failed, circuit restored to previous state", operation)
            self._restore(snapshot)
            raise

    def _node_state(self) -> dict[str, tuple]:
        return {
            n.node_id: (
                n.voltage,
                n.voltage_drop,
                n.accumulated_load,
                n.distance_from_parent,
                n.parent_id,
            )
            for n in self.tree.nodes.values()
        }

    def _finish(
        self, operation: str, device_id: str | None, before: dict[str, tuple]
    ) -> CircuitChange:
        self._recalculate()
        self._update_statistics()
        after = self._node_state()
        change = CircuitChange(
            operation=operation,
            device_id=device_id,
            changed_node_ids=[nid for nid, s in after.items() if before.get(nid) != s],
            removed_node_ids=[nid for nid in before if nid not in after],
            voltages={nid: s[0] for nid, s in after.items()},
        )
        self.last_change = change
        logger.debug(
            "%s %s: %d node(s) changed, %d removed",
            operation,
            device_id or "",
            len(change.changed_node_ids),
            len(change.removed_node_ids),
        )
        return change

    def _next_branch_label(self) -> str:
        label = f"T-Tap {self._branch_counter}"
        self._branch_counter += 1
        return label

    # ─── Distances ───

    def measure_segment(
        self, start: ConnectionPoint | None, end: ConnectionPoint | None
    ) -> SegmentMeasurement:
        return calculations.measure_segment(
            start, end, self.parameters.routing_overhead
        )

    def get_segment_length(
        self, start: ConnectionPoint | None, end: ConnectionPoint | None
    ) -> float:
        return self.measure_segment(start, end).length

    def _measure_from(
        self, upstream_id: str | None, data: DeviceElectricalData
    ) -> SegmentMeasurement:
        upstream = self.device_data.get(upstream_id) if upstream_id else None
        if upstream is None:
            measurement = SegmentMeasurement(
                length=DEFAULT_SEGMENT_LENGTH,
                source=MeasurementSource.DEFAULT,
                reason="upstream device unknown",
            )
        else:
            measurement = self.measure_segment(upstream.connector, data.connector)
        if measurement.is_fallback:
            logger.warning(
                "Segment to %s defaulted to %.1fft (%s)",
                data.name,
                measurement.length,
                measurement.reason,
            )
        return measurement

    @staticmethod
    def _supply_run(parameters: CircuitParameters) -> float:
        """Length of the first main segment, floored like any other."""
        return max(parameters.supply_distance, MIN_SEGMENT_LENGTH)

    def _segment_length(self, device_id: str) -> float:
        """Recorded length of the wire feeding ``device_id``."""
        node = self.node_for(device_id)
        if node is None:
            return DEFAULT_SEGMENT_LENGTH
        return node.distance_from_parent

    # ─── Adding devices ───

    def add_device_to_main(
        self, device_id: str, data: DeviceElectricalData
    ) -> CircuitChange | None:
        if not self._accepts(device_id, data):
            return None

        before = self._node_state()
        with self._transaction("add_device_to_main"):
            if self.main_circuit:
                distance = self._measure_from(self.main_circuit[-1], data).length
            else:
                distance = self._supply_run(self.parameters)

            tail = self.current_node
            self.main_circuit.append(device_id)
            self.device_data[device_id] = data

            node = CircuitNode(
                name=data.name or f"Device_{device_id}",
                device_id=device_id,
                device_data=data,
                distance_from_parent=distance,
            )
            self.tree.add_child(tail.node_id, node)
            self.node_map[device_id] = node.node_id
            logger.debug("Added %s to main circuit under %s", node.name, tail.name)

            return self._finish("add_device_to_main", device_id, before)

    def add_device_to_branch(
        self,
        device_id: str,
        data: DeviceElectricalData,
        tap_id: str | None = None,
    ) -> CircuitChange | None:
        tap_id = tap_id or self.active_tap_point
        if tap_id is None or tap_id not in self.main_circuit:
            logger.debug("Rejected %s: unknown tap point %r", device_id, tap_id)
            return None
        tap_node = self.node_for(tap_id)
        if tap_node is None or not self._accepts(device_id, data):
            return None

        before = self._node_state()
        with self._transaction("add_device_to_branch"):
            if tap_id not in self.branches:
                self.branches[tap_id] = []
                self.branch_names[tap_id] = self._next_branch_label()

            chain = self.tree.branch_chain(tap_node.node_id)
            parent = chain[-1] if chain else tap_node
            distance = self._measure_from(parent.device_id, data).length

            self.branches[tap_id].append(device_id)
            self.device_data[device_id] = data

            node = CircuitNode(
                name=data.name or f"Device_{device_id}",
                device_id=device_id,
                device_data=data,
                is_branch_device=True,
                distance_from_parent=distance,
            )
            self.tree.add_child(parent.node_id, node)
            self.node_map[device_id] = node.node_id
            logger.debug(
                "Added %s to %s under %s",
                node.name,
                self.branch_names[tap_id],
                parent.name,
            )

            return self._finish("add_device_to_branch", device_id, before)

    # ─── Removing devices ───

    def remove_device(self, device_id: str | None) -> RemovalResult:
        if not self._is_valid_id(device_id) or device_id not in self.device_data:
            return RemovalResult(device_id=device_id)

        before = self._node_state()
        with self._transaction("remove_device"):
            node_id = self.node_map.get(device_id)
            had_branches = bool(self.branches)

            if device_id in self.main_circuit:
                result = self._remove_from_main(device_id, compose=had_branches)
            else:
                result = self._remove_from_branch(device_id)

            if had_branches:
                self._rebuild_tree_structure()
            elif node_id is not None:
                self.tree.remove_node(node_id)

            if self.active_tap_point is not None and (
                self.active_tap_point not in self.main_circuit
            ):
                self.return_to_main()

            self._finish("remove_device", device_id, before)
            logger.debug(
                "Removed %s from %s at position %d",
                device_id,
                result.location,
                result.position,
            )
            return result

    def _forget(self, device_id: str) -> None:
        self.device_data.pop(device_id, None)
        self.node_map.pop(device_id, None)

    def _remove_from_main(self, device_id: str, compose: bool) -> RemovalResult:
        index = self.main_circuit.index(device_id)
        removed = self.node_for(device_id)
        removed_distance = removed.distance_from_parent if removed else 0.0

        successor = None
        if index + 1 < len(self.main_circuit):
            successor = self.node_for(self.main_circuit[index + 1])
        successor_distance = successor.distance_from_parent if successor else 0.0

        if device_id in self.branches:
            self._rehome_branch(device_id, index, removed_distance, successor_distance)

        # the incremental tree patch composes distances itself
        if compose and successor is not None:
            successor.distance_from_parent += removed_distance

        self.main_circuit.remove(device_id)
        self._forget(device_id)
        return RemovalResult(
            device_id=device_id, location=CircuitType.MAIN.value, position=index + 1
        )

    def _rehome_branch(
        self,
        tap_id: str,
        index: int,
        removed_distance: float,
        successor_distance: float,
    ) -> None:
        members = self.branches.pop(tap_id)
        label = self.branch_names.pop(tap_id, None)

        if index > 0:
            target = self.main_circuit[index - 1]
            extra = removed_distance
        elif len(self.main_circuit) > 1:
            target = self.main_circuit[1]
            extra = successor_distance
        else:
            logger.warning(
                "Discarding %s: its %d device(s) lost the only main-circuit device",
                label,
                len(members),
            )
            for member in members:
                self._forget(member)
            return

        first = self.node_for(members[0])
        if target in self.branches:
            if first is not None and first.device_data is not None:
                last = self.branches[target][-1]
                first.distance_from_parent = self._measure_from(
                    last, first.device_data
                ).length
            self.branches[target].extend(members)
            logger.debug("Merged %s into %s", label, self.branch_names.get(target))
        else:
            if first is not None:
                first.distance_from_parent += extra
            self.branches[target] = members
            self.branch_names[target] = label or self._next_branch_label()
            logger.debug("Moved %s to tap point %s", label, target)

    def _remove_from_branch(self, device_id: str) -> RemovalResult:
        tap_id = self.branch_of(device_id)
        if tap_id is None:
            # known device outside every index; drop the stray entries
            self._forget(device_id)
            return RemovalResult(device_id=device_id)

        members = self.branches[tap_id]
        index = members.index(device_id)
        label = self.branch_names.get(tap_id, "T-Tap")

        removed = self.node_for(device_id)
        if removed is not None and index + 1 < len(members):
            follower = self.node_for(members[index + 1])
            if follower is not None:
                follower.distance_from_parent += removed.distance_from_parent

        members.remove(device_id)
        if not members:
            del self.branches[tap_id]
            self.branch_names.pop(tap_id, None)
        self._forget(device_id)
        return RemovalResult(device_id=device_id, location=label, position=index + 1)

    def _rebuild_tree_structure(self) -> None:
        """Relink the tree from the flat indexes, reusing node records."""
        keep = set(self.node_map.values()) | {self.tree.root_id}
        for node_id in list(self.tree.nodes):
            if node_id not in keep:
                del self.tree.nodes[node_id]
        self.tree.detach_all()

        previous = self.tree.root
        for device_id in self.main_circuit:
            node = self.node_for(device_id)
            if node is None:
                continue
            node.is_branch_device = False
            self.tree.add_child(previous.node_id, node)
            previous = node

        for tap_id, members in self.branches.items():
            parent = self.node_for(tap_id)
            if parent is None:
                continue
            for member in members:
                node = self.node_for(member)
                if node is None:
                    continue
                node.is_branch_device = True
                self.tree.add_child(parent.node_id, node)
                parent = node

        logger.debug("Rebuilt tree from indexes (%d nodes)", len(self.tree))

    # ─── Recalculation ───

    def _status_for(self, node: CircuitNode) -> NodeStatus | None:
        if node.is_root or node.device_data is None:
            return None
        if node.voltage < self.parameters.min_voltage:
            return NodeStatus.LOW
        if node.voltage < self.parameters.min_voltage + self.limits.voltage_warning_margin:
            return NodeStatus.MARGINAL
        return NodeStatus.OK

    def _recalculate(self) -> None:
        self.update_tree_voltages()
        for node in self.tree.iter_preorder():
            node.status = self._status_for(node)

    def update_tree_voltages(self) -> None:
        """Full load sweep followed by the top-down voltage pass."""
        self.tree.refresh_loads()
        root = self.tree.root
        root.voltage = self.parameters.system_voltage
        root.voltage_drop = 0.0
        self.tree.update_voltages(
            self.parameters.system_voltage, self.parameters.resistance
        )

    def _update_statistics(self) -> None:
        s = self.statistics
        s.total_devices = len(self.device_data)
        s.main_circuit_devices = len(self.main_circuit)
        s.branch_devices = len(self.device_data) - len(self.main_circuit)
        s.total_branches = len(self.branches)
        s.total_load = self.get_total_system_load()
        s.total_standby_load = self.get_total_standby_load()
        s.total_wire_length = self.calculate_total_wire_length()
        s.last_updated = datetime.now(timezone.utc)

    # ─── Electrical queries ───

    def calculate_voltage_drop(self, current: float, distance: float) -> float:
        return calculations.calculate_voltage_drop(
            current, distance, self.parameters.resistance
        )

    def get_total_system_load(self) -> float:
        return sum(d.alarm_current for d in self.device_data.values())

    def get_total_standby_load(self) -> float:
        return sum(d.standby_current for d in self.device_data.values())

    def _alarm_current(self, device_id: str) -> float:
        data = self.device_data.get(device_id)
        return data.alarm_current if data else 0.0

    def _tap_load(self, device_id: str) -> float:
        """Own current plus every device on its branch."""
        return self._alarm_current(device_id) + sum(
            self._alarm_current(b) for b in self.branches.get(device_id, [])
        )

    def _downstream_main_load(self, index: int) -> float:
        return sum(self._tap_load(d) for d in self.main_circuit[index:])

    def _main_segment_loads(self, stop: int) -> list[float]:
        """Downstream load of main segments ``0..stop``, one suffix sum pass."""
        loads = [0.0] * (stop + 1)
        running = 0.0
        for i in range(len(self.main_circuit) - 1, -1, -1):
            running += self._tap_load(self.main_circuit[i])
            if i <= stop:
                loads[i] = running
        return loads

    def calculate_segment_load(self, start_id: str, end_id: str) -> float:
        """Current carried by the main-chain wire from ``start_id`` to
        ``end_id``: every device from ``end_id`` onward plus their branches."""
        if start_id not in self.main_circuit or end_id not in self.main_circuit:
            return 0.0
        start_index = self.main_circuit.index(start_id)
        end_index = self.main_circuit.index(end_id)
        if end_index <= start_index:
            return 0.0
        return self._downstream_main_load(end_index)

    def get_voltage_at_device(
        self,
        device_id: str | None,
        circuit_type: CircuitType | str = CircuitType.MAIN,
        tap_id: str | None = None,
    ) -> float:
        """Voltage at a device computed from the flat indexes alone.

        Walks the chain segment by segment from the supply, taking for each
        segment its recorded length and the current of everything wired
        beyond it. Agrees with the tree's node voltages.
        """
        if device_id is None or device_id not in self.device_data:
            return self.parameters.system_voltage
        if circuit_type == CircuitType.BRANCH:
            return self._branch_voltage(device_id, tap_id or self.branch_of(device_id))
        return self._main_circuit_voltage(device_id)

    def _main_circuit_voltage(self, device_id: str) -> float:
        if device_id not in self.main_circuit:
            return self.parameters.system_voltage

        target = self.main_circuit.index(device_id)
        voltage = self.parameters.system_voltage
        for i, load in enumerate(self._main_segment_loads(target)):
            distance = self._segment_length(self.main_circuit[i])
            voltage -= self.calculate_voltage_drop(load, distance)
        logger.debug("Main circuit voltage at %s: %.3fV", device_id, voltage)
        return voltage

    def _branch_voltage(self, device_id: str, tap_id: str | None) -> float:
        if tap_id is None or tap_id not in self.branches:
            return self.parameters.system_voltage

        voltage = self._main_circuit_voltage(tap_id)
        members = self.branches[tap_id]
        if device_id not in members:
            return voltage

        target = members.index(device_id)
        load = sum(self._alarm_current(m) for m in members)
        for member in members[: target + 1]:
            voltage -= self.calculate_voltage_drop(load, self._segment_length(member))
            load -= self._alarm_current(member)
        logger.debug(
            "Branch voltage at %s (%s): %.3fV",
            device_id,
            self.branch_names.get(tap_id),
            voltage,
        )
        return voltage

    def voltage_discrepancies(self, tolerance: float = 1e-9) -> dict[str, float]:
        """Devices whose tree voltage differs from the chain walk."""
        discrepancies: dict[str, float] = {}
        for device_id in self.device_data:
            node = self.node_for(device_id)
            if node is None:
                continue
            tap_id = self.branch_of(device_id)
            circuit_type = CircuitType.BRANCH if tap_id else CircuitType.MAIN
            walked = self.get_voltage_at_device(device_id, circuit_type, tap_id)
            if abs(walked - node.voltage) > tolerance:
                discrepancies[device_id] = walked - node.voltage
        return discrepancies

    def calculate_total_wire_length(self) -> float:
        """Supply run plus every main and branch segment."""
        return sum(self._segment_length(device_id) for device_id in self.device_data)

    def calculate_max_distance(self, current_load: float) -> float:
        p = self.parameters
        return calculations.calculate_max_distance(
            current_load,
            p.system_voltage,
            p.min_voltage,
            p.resistance,
            p.supply_distance,
        )

    # ─── Validation and reporting ───

    def validate_circuit(self) -> ValidationResult:
        return validation_engine.validate_circuit(self)

    def _device_rows(self) -> list[ReportDeviceRow]:
        taps = {m: tap for tap, members in self.branches.items() for m in members}
        rows: list[ReportDeviceRow] = []
        for node in self.tree.iter_preorder():
            if node.is_root or node.device_data is None or node.device_id is None:
                continue
            tap_id = taps.get(node.device_id)
            location = (
                self.branch_names.get(tap_id, "T-Tap") if tap_id else MAIN_LOCATION
            )
            status = (
                DeviceStatus.OK
                if node.voltage >= self.parameters.min_voltage
                else DeviceStatus.LOW_VOLTAGE
            )
            rows.append(
                ReportDeviceRow(
                    position=len(rows) + 1,
                    device_id=node.device_id,
                    name=node.name,
                    device_type=node.device_data.device_type or DEFAULT_DEVICE_TYPE,
                    location=location,
                    tap_device_id=tap_id,
                    current=node.device_data.alarm_current,
                    standby_current=node.device_data.standby_current,
                    distance_from_parent=node.distance_from_parent,
                    voltage_drop=node.voltage_drop,
                    voltage=node.voltage,
                    status=status,
                )
            )
        return rows

    def worst_case(self) -> tuple[str | None, float]:
        """Device with the largest drop from the supply, and that drop."""
        system_voltage = self.parameters.system_voltage
        worst_id: str | None = None
        max_drop = 0.0

        for device_id in self.main_circuit:
            drop = system_voltage - self.get_voltage_at_device(device_id, CircuitType.MAIN)
            if drop > max_drop:
                worst_id, max_drop = device_id, drop

        for tap_id, members in self.branches.items():
            for branch_id in members:
                drop = system_voltage - self.get_voltage_at_device(
                    branch_id, CircuitType.BRANCH, tap_id
                )
                if drop > max_drop:
                    worst_id, max_drop = branch_id, drop

        return worst_id, max_drop

    def generate_report(self) -> CircuitReport:
        system_voltage = self.parameters.system_voltage
        worst_id, max_drop = self.worst_case()
        validation = self.validate_circuit()
        worst_data = self.device_data.get(worst_id) if worst_id else None

        return CircuitReport(
            generated_at=datetime.now(timezone.utc),
            parameters=self.parameters,
            total_devices=len(self.device_data),
            main_circuit_devices=len(self.main_circuit),
            branch_devices=len(self.device_data) - len(self.main_circuit),
            total_branches=len(self.branches),
            total_load=self.get_total_system_load(),
            total_standby_load=self.get_total_standby_load(),
            total_wire_length=self.calculate_total_wire_length(),
            max_voltage_drop=max_drop,
            max_voltage_drop_percent=max_drop / system_voltage * 100,
            worst_case_device=worst_data.name if worst_data else None,
            worst_case_device_id=worst_id if worst_data else None,
            worst_case_voltage=system_voltage - max_drop if worst_data else None,
            end_of_line_voltage=system_voltage - max_drop,
            devices=self._device_rows(),
            validation=validation,
            validation_errors=validation.messages,
            is_valid=validation.is_valid,
        )

    # ─── Parameters ───

    def update_parameters(self, parameters: CircuitParameters) -> CircuitChange:
        """Replace the supply contract and recompute.

        The supply run is the first main segment, so a change in supply
        distance shifts that segment by the same amount.
        """
        if parameters is None:
            raise ValueError("Circuit parameters are required")
        if not isinstance(parameters, CircuitParameters):
            parameters = CircuitParameters.model_validate(parameters)

        before = self._node_state()
        with self._transaction("update_parameters"):
            delta = self._supply_run(parameters) - self._supply_run(self.parameters)
            self.parameters = parameters
            first = self.node_for(self.main_circuit[0]) if self.main_circuit else None
            if first is not None and delta:
                first.distance_from_parent = max(
                    first.distance_from_parent + delta, MIN_SEGMENT_LENGTH
                )
            return self._finish("update_parameters", None, before)

    # ─── Persistence ───

    def save_configuration(
        self,
        name: str,
        description: str | None = None,
        project_name: str | None = None,
        project_path: str | None = None,
        created_by: str | None = None,
    ) -> CircuitConfiguration:
        config = CircuitConfiguration(
            name=name,
            description=description,
            project_name=project_name,
            project_path=project_path,
            created_by=created_by,
            parameters=self.parameters,
            tree=self.tree.model_copy(deep=True),
            statistics=self.statistics.model_copy(),
        )
        config.metadata["total_devices"] = len(self.device_data)
        config.metadata["main_circuit_count"] = len(self.main_circuit)
        config.metadata["branch_count"] = len(self.branches)
        config.metadata["branch_names"] = dict(self.branch_names)
        return config

    def load_configuration(
        self, config: CircuitConfiguration | None
    ) -> CircuitChange | None:
        if config is None:
            return None

        before = self._node_state()
        with self._transaction("load_configuration"):
            self.clear()
            self.parameters = config.parameters
            self.tree = config.tree.model_copy(deep=True)
            self.tree.root.voltage = self.parameters.system_voltage
            self._rebuild_from_tree(config.metadata.get("branch_names") or {})
            return self._finish("load_configuration", None, before)

    def _rebuild_from_tree(self, labels: dict[str, str]) -> None:
        """Rebuild every flat index from a pre-order walk of the tree."""
        reachable = {n.node_id for n in self.tree.iter_preorder()}
        for node_id in list(self.tree.nodes):
            if node_id not in reachable:
                del self.tree.nodes[node_id]

        member_tap: dict[str, str] = {}
        for node in self.tree.iter_preorder():
            if node.is_root or node.device_id is None or node.device_data is None:
                continue
            if node.device_id in self.node_map:
                logger.warning("Duplicate device %s in saved tree", node.device_id)
                continue

            parent = self.tree.parent_of(node)
            parent_is_branch = parent is not None and parent.is_branch_device
            if parent_is_branch and not node.is_branch_device:
                logger.warning(
                    "%s hangs off branch device %s; treating it as a branch device",
                    node.name,
                    parent.name,
                )
                node.is_branch_device = True

            if node.is_branch_device and parent is not None and parent.device_id:
                tap_id = (
                    member_tap.get(parent.device_id, parent.device_id)
                    if parent_is_branch
                    else parent.device_id
                )
                if tap_id not in self.branches:
                    self.branches[tap_id] = []
                    self.branch_names[tap_id] = labels.get(
                        tap_id, f"T-Tap from {parent.name}"
                    )
                self.branches[tap_id].append(node.device_id)
                member_tap[node.device_id] = tap_id
            else:
                node.is_branch_device = False
                self.main_circuit.append(node.device_id)

            self.device_data[node.device_id] = node.device_data
            self.node_map[node.device_id] = node.node_id

        numbers = [
            int(m.group(1))
            for m in (_BRANCH_LABEL.match(label) for label in self.branch_names.values())
            if m
        ]
        self._branch_counter = max(numbers, default=len(self.branches)) + 1

    # ─── Reset ───

    def clear(self) -> CircuitChange:
        before = self._node_state()
        self.main_circuit = []
        self.branches = {}
        self.branch_names = {}
        self.device_data = {}
        self.node_map = {}
        self.tree = CircuitTree.create(self.parameters.system_voltage)
        self.mode = SelectionMode.MAIN
        self.active_tap_point = None
        self._branch_counter = 1
        return self._finish("clear", None, before)
