"""Unit tests for the circuit engine."""

import pytest
from pydantic import ValidationError

from loopcalc.circuit.calculations import DEFAULT_SEGMENT_LENGTH, calculate_voltage_drop
from loopcalc.circuit.manager import CircuitManager
from loopcalc.schemas.circuit import CircuitType, NodeStatus, SelectionMode
from loopcalc.schemas.device import ConnectionPoint, DeviceElectricalData
from loopcalc.schemas.parameters import CircuitParameters

R = 4.016


# ─── Fixtures ───


def _params(**overrides) -> CircuitParameters:
    values = dict(
        system_voltage=29.0,
        min_voltage=16.0,
        max_load=3.0,
        safety_percent=0.2,
        wire_gauge="16 AWG",
        resistance=R,
        supply_distance=50.0,
        routing_overhead=1.0,
    )
    values.update(overrides)
    return CircuitParameters(**values)


def _device(
    name: str, current: float = 0.03, x: float = 0.0, y: float = 0.0
) -> DeviceElectricalData:
    return DeviceElectricalData(
        name=name,
        alarm_current=current,
        standby_current=current / 3,
        connector=ConnectionPoint(x=x, y=y),
    )


def _manager(**overrides) -> CircuitManager:
    return CircuitManager(_params(**overrides))


def _main_chain(manager: CircuitManager, *names: str, spacing: float = 25.0) -> None:
    for i, name in enumerate(names):
        manager.add_device_to_main(name, _device(name, x=i * spacing))


def _assert_consistent(manager: CircuitManager) -> None:
    tree = manager.tree
    params = manager.parameters
    assert tree.root.voltage == params.system_voltage
    assert tree.root.voltage_drop == 0.0

    reachable = list(tree.iter_preorder())
    assert len(reachable) == len(tree.nodes) == len(manager.device_data) + 1
    assert set(manager.node_map) == set(manager.device_data)

    for node in reachable:
        children = tree.children_of(node)
        assert node.accumulated_load == pytest.approx(
            node.own_current + sum(c.accumulated_load for c in children)
        )
        parent = tree.parent_of(node)
        if parent is not None:
            drop = calculate_voltage_drop(
                node.accumulated_load, node.distance_from_parent, params.resistance
            )
            assert node.voltage == pytest.approx(parent.voltage - drop)

    assert manager.voltage_discrepancies() == {}


# ═══════════════════════════════════════════════════════════
# Construction
# ═══════════════════════════════════════════════════════════


class TestConstruction:
    def test_requires_parameters(self):
        with pytest.raises(ValueError):
            CircuitManager(None)

    def test_dict_parameters_are_validated(self):
        manager = CircuitManager(_params().model_dump())
        assert manager.parameters.usable_load == pytest.approx(2.4)

        with pytest.raises(ValidationError):
            CircuitManager({"system_voltage": 29.0})

    def test_starts_empty(self):
        manager = _manager()
        assert len(manager.tree) == 1
        assert manager.current_node is manager.root
        assert manager.root.voltage == 29.0
        assert manager.mode == SelectionMode.MAIN
        assert manager.statistics.total_devices == 0
        assert manager.calculate_total_wire_length() == 0.0


# ═══════════════════════════════════════════════════════════
# Main circuit
# ═══════════════════════════════════════════════════════════


class TestAddToMain:
    def test_first_device_uses_supply_distance(self):
        manager = _manager()
        manager.add_device_to_main("A", _device("A"))
        assert manager.find_node("A").distance_from_parent == 50.0

    def test_zero_supply_distance_is_floored(self):
        manager = _manager(supply_distance=0.0)
        manager.add_device_to_main("A", _device("A"))
        assert manager.find_node("A").distance_from_parent == 1.0

    def test_later_devices_measured_from_previous(self):
        manager = _manager(routing_overhead=1.15)
        manager.add_device_to_main("A", _device("A", x=0))
        manager.add_device_to_main("B", _device("B", x=40))
        node = manager.find_node("B")
        assert node.distance_from_parent == pytest.approx(46.0)
        assert node.parent_id == manager.find_node("A").node_id
        assert manager.current_node is node

    def test_missing_connector_defaults_segment(self):
        manager = _manager()
        manager.add_device_to_main("A", _device("A"))
        manager.add_device_to_main("B", DeviceElectricalData(name="B", alarm_current=0.03))
        assert manager.find_node("B").distance_from_parent == DEFAULT_SEGMENT_LENGTH

    @pytest.mark.parametrize("device_id", ["", "   ", None])
    def test_rejects_invalid_ids(self, device_id):
        manager = _manager()
        assert manager.add_device_to_main(device_id, _device("X")) is None
        assert manager.main_circuit == []

    def test_rejects_missing_data(self):
        manager = _manager()
        assert manager.add_device_to_main("A", None) is None
        assert len(manager.tree) == 1

    def test_rejects_duplicates(self):
        manager = _manager()
        _main_chain(manager, "A")
        assert manager.add_device_to_main("A", _device("A")) is None
        assert manager.main_circuit == ["A"]

    def test_returns_change_summary(self):
        manager = _manager()
        _main_chain(manager, "A")
        change = manager.add_device_to_main("B", _device("B", x=25))
        a_id, b_id = manager.node_map["A"], manager.node_map["B"]
        assert change.operation == "add_device_to_main"
        assert change.device_id == "B"
        assert {a_id, b_id, manager.root.node_id} <= set(change.changed_node_ids)
        assert change.removed_node_ids == []
        assert change.voltages[b_id] == manager.find_node("B").voltage
        assert manager.last_change is change


# ═══════════════════════════════════════════════════════════
# Branches and selection mode
# ═══════════════════════════════════════════════════════════


class TestBranches:
    def test_label_created_on_first_branch_device(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        assert manager.start_branch_from_device("A")
        assert manager.branches == {}

        manager.add_device_to_branch("A1", _device("A1", y=10))
        assert manager.branches == {"A": ["A1"]}
        assert manager.branch_names == {"A": "T-Tap 1"}

        manager.add_device_to_branch("B1", _device("B1", x=25, y=10), tap_id="B")
        assert manager.branch_names["B"] == "T-Tap 2"

    def test_branch_devices_chain_off_each_other(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")
        manager.add_device_to_branch("A2", _device("A2", y=30), tap_id="A")
        a1, a2 = manager.find_node("A1"), manager.find_node("A2")
        assert a1.is_branch_device and a2.is_branch_device
        assert a1.parent_id == manager.node_map["A"]
        assert a2.parent_id == a1.node_id
        assert a1.distance_from_parent == pytest.approx(10.0)
        assert a2.distance_from_parent == pytest.approx(20.0)

    def test_branch_does_not_move_main_tail(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")
        manager.add_device_to_main("B", _device("B", x=25))
        assert manager.find_node("B").parent_id == manager.node_map["A"]
        assert manager.find_node("B").distance_from_parent == pytest.approx(25.0)

    def test_tap_must_be_main_device(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1"), tap_id="A")
        assert manager.add_device_to_branch("X", _device("X"), tap_id="A1") is None
        assert manager.add_device_to_branch("Y", _device("Y"), tap_id="ghost") is None
        assert manager.add_device_to_branch("Z", _device("Z")) is None
        assert "X" not in manager.device_data

    def test_duplicate_across_indexes_rejected(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1"), tap_id="A")
        assert manager.add_device_to_main("A1", _device("A1")) is None
        assert manager.add_device_to_branch("A", _device("A"), tap_id="A") is None


class TestSelectionMode:
    def test_add_device_follows_mode(self):
        manager = _manager()
        manager.add_device("A", _device("A"))
        assert not manager.start_branch_from_device("ghost")
        assert manager.mode == SelectionMode.MAIN

        assert manager.start_branch_from_device("A")
        assert manager.mode == SelectionMode.BRANCH
        manager.add_device("A1", _device("A1", y=10))
        assert manager.branches == {"A": ["A1"]}

        manager.return_to_main()
        assert manager.active_tap_point is None
        manager.add_device("B", _device("B", x=25))
        assert manager.main_circuit == ["A", "B"]

    def test_removing_active_tap_returns_to_main(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.start_branch_from_device("B")
        manager.remove_device("B")
        assert manager.mode == SelectionMode.MAIN
        assert manager.active_tap_point is None


# ═══════════════════════════════════════════════════════════
# Removal
# ═══════════════════════════════════════════════════════════


class TestRemoval:
    def test_unknown_device_not_found(self):
        manager = _manager()
        for device_id in ["ghost", "", None]:
            result = manager.remove_device(device_id)
            assert not result.found
            assert result.position == 0

    def test_main_removal_without_branches(self):
        manager = _manager()
        _main_chain(manager, "A", "B", "C")
        removed_node = manager.node_map["B"]

        result = manager.remove_device("B")
        assert result.found
        assert (result.location, result.position) == ("main", 2)

        c = manager.find_node("C")
        assert c.parent_id == manager.node_map["A"]
        assert c.distance_from_parent == pytest.approx(50.0)
        assert manager.last_change.removed_node_ids == [removed_node]
        _assert_consistent(manager)

    def test_tail_removal_moves_growth_point(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.remove_device("B")
        assert manager.current_node is manager.find_node("A")
        manager.add_device_to_main("C", _device("C", x=25))
        assert manager.find_node("C").parent_id == manager.node_map["A"]

    def test_branch_rehomed_to_previous_device(self):
        manager = _manager()
        _main_chain(manager, "A", "B", "C")
        manager.add_device_to_branch("B1", _device("B1", x=25, y=10), tap_id="B")

        manager.remove_device("B")

        assert manager.main_circuit == ["A", "C"]
        assert manager.branches == {"A": ["B1"]}
        assert manager.branch_names == {"A": "T-Tap 1"}
        b1, c = manager.find_node("B1"), manager.find_node("C")
        assert b1.parent_id == manager.node_map["A"]
        assert b1.distance_from_parent == pytest.approx(35.0)
        assert c.distance_from_parent == pytest.approx(50.0)
        _assert_consistent(manager)

    def test_branch_rehomed_to_next_device(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")

        manager.remove_device("A")

        assert manager.main_circuit == ["B"]
        assert manager.branches == {"B": ["A1"]}
        a1, b = manager.find_node("A1"), manager.find_node("B")
        assert b.parent_id == manager.root.node_id
        assert b.distance_from_parent == pytest.approx(75.0)
        assert a1.parent_id == b.node_id
        assert a1.distance_from_parent == pytest.approx(35.0)
        _assert_consistent(manager)

    def test_branch_merged_into_existing_branch(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")
        manager.add_device_to_branch("B1", _device("B1", x=25, y=10), tap_id="B")

        manager.remove_device("A")

        assert manager.branches == {"B": ["B1", "A1"]}
        assert manager.branch_names == {"B": "T-Tap 2"}
        a1 = manager.find_node("A1")
        assert a1.parent_id == manager.node_map["B1"]
        assert a1.distance_from_parent == pytest.approx(25.0)
        _assert_consistent(manager)

    def test_only_main_device_discards_branch(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")
        manager.add_device_to_branch("A2", _device("A2", y=20), tap_id="A")

        result = manager.remove_device("A")

        assert result.found
        assert manager.main_circuit == []
        assert manager.branches == {}
        assert manager.branch_names == {}
        assert manager.device_data == {}
        assert manager.node_map == {}
        assert len(manager.tree) == 1
        for member in ["A1", "A2"]:
            assert manager.find_node(member) is None
        assert manager.statistics.total_devices == 0
        _assert_consistent(manager)

    def test_branch_device_removal_composes_distance(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")
        manager.add_device_to_branch("A2", _device("A2", y=30), tap_id="A")

        result = manager.remove_device("A1")

        assert (result.location, result.position) == ("T-Tap 1", 1)
        assert manager.branches == {"A": ["A2"]}
        a2 = manager.find_node("A2")
        assert a2.parent_id == manager.node_map["A"]
        assert a2.distance_from_parent == pytest.approx(30.0)
        _assert_consistent(manager)

    def test_last_branch_device_removes_branch(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")
        manager.remove_device("A1")
        assert manager.branches == {}
        assert manager.branch_names == {}
        assert manager.find_node("A").children == []
        _assert_consistent(manager)


# ═══════════════════════════════════════════════════════════
# Voltages
# ═══════════════════════════════════════════════════════════


class TestVoltages:
    def test_three_device_chain(self):
        manager = _manager()
        _main_chain(manager, "D1", "D2", "D3")

        expected = 29.0 - (2.0 / 1000.0) * R * (0.09 * 50 + 0.06 * 25 + 0.03 * 25)
        assert manager.find_node("D3").voltage == pytest.approx(expected)
        assert manager.get_voltage_at_device("D3") == pytest.approx(expected)
        assert round(expected, 1) == 28.9

        result = manager.validate_circuit()
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_chain_walk_agrees_with_tree(self):
        manager = _manager()
        _main_chain(manager, "A", "B", "C", "D")
        manager.add_device_to_branch("B1", _device("B1", current=0.1, x=25, y=30), tap_id="B")
        manager.add_device_to_branch("B2", _device("B2", current=0.1, x=25, y=70), tap_id="B")
        manager.add_device_to_branch("D1", _device("D1", x=75, y=5), tap_id="D")

        for device_id, node_id in manager.node_map.items():
            tap = manager.branch_of(device_id)
            kind = CircuitType.BRANCH if tap else CircuitType.MAIN
            assert manager.get_voltage_at_device(device_id, kind, tap) == pytest.approx(
                manager.tree.nodes[node_id].voltage
            )
        _assert_consistent(manager)

    def test_long_tapped_chain_agrees_with_tree(self):
        manager = _manager(resistance=0.5)
        names = [f"D{i}" for i in range(120)]
        _main_chain(manager, *names, spacing=3.0)
        for i in range(0, 120, 20):
            tap = names[i]
            for k in range(1, 4):
                manager.add_device_to_branch(
                    f"{tap}-T{k}", _device(f"{tap}-T{k}", x=3.0 * i, y=5.0 * k), tap_id=tap
                )

        assert manager.voltage_discrepancies() == {}
        tail = manager.find_node("D119")
        assert manager.get_voltage_at_device("D119") == pytest.approx(tail.voltage)
        branch_end = manager.find_node("D100-T3")
        assert manager.get_voltage_at_device(
            "D100-T3", CircuitType.BRANCH
        ) == pytest.approx(branch_end.voltage)

    def test_unknown_device_sees_system_voltage(self):
        manager = _manager()
        assert manager.get_voltage_at_device("ghost") == 29.0
        assert manager.get_voltage_at_device(None) == 29.0

    def test_recalculation_is_idempotent(self):
        manager = _manager()
        _main_chain(manager, "A", "B", "C")
        manager.add_device_to_branch("A1", _device("A1", y=40), tap_id="A")
        first = {nid: n.voltage for nid, n in manager.tree.nodes.items()}
        manager.update_tree_voltages()
        manager.update_tree_voltages()
        assert {nid: n.voltage for nid, n in manager.tree.nodes.items()} == first

    def test_segment_load_includes_downstream_branches(self):
        manager = _manager()
        _main_chain(manager, "A", "B", "C")
        manager.add_device_to_branch("C1", _device("C1", current=0.2, x=50, y=10), tap_id="C")
        assert manager.calculate_segment_load("A", "B") == pytest.approx(0.26)
        assert manager.calculate_segment_load("B", "C") == pytest.approx(0.23)
        assert manager.calculate_segment_load("C", "A") == 0.0
        assert manager.calculate_segment_load("A", "ghost") == 0.0

    def test_node_status_tracks_margin(self):
        # 1A over a 100ft supply run at 10 ohm/kft drops 2V
        base = dict(resistance=10.0, supply_distance=100.0, max_load=10.0)
        manager = _manager(**base)
        manager.add_device_to_main("D", _device("D", current=1.0))
        assert manager.find_node("D").status == NodeStatus.OK

        manager.update_parameters(_params(**base, system_voltage=30.0, min_voltage=27.0))
        assert manager.find_node("D").status == NodeStatus.MARGINAL

        manager.update_parameters(_params(**{**base, "resistance": 100.0}))
        assert manager.find_node("D").status == NodeStatus.LOW
        assert manager.root.status is None


# ═══════════════════════════════════════════════════════════
# Scenario: overloaded branch
# ═══════════════════════════════════════════════════════════


class TestOverloadedBranch:
    def _build(self) -> CircuitManager:
        manager = _manager()
        manager.add_device_to_main("M1", _device("M1"))
        for i in range(1, 4):
            manager.add_device_to_branch(
                f"B{i}", _device(f"B{i}", current=1.0, x=500.0 * i), tap_id="M1"
            )
        return manager

    def test_low_voltage_reported_for_worst_branch_device(self):
        manager = self._build()
        result = manager.validate_circuit()
        codes = [e.code for e in result.errors]

        assert not result.is_valid
        assert "E_USABLE_LOAD" in codes
        low = [e for e in result.errors if e.code == "E_LOW_VOLTAGE_BRANCH"]
        assert {e.device_ids[-1] for e in low} == {"B1", "B2", "B3"}

        report = manager.generate_report()
        assert report.worst_case_device_id == "B3"
        assert report.worst_case_device == "B3"
        assert report.worst_case_voltage == pytest.approx(manager.find_node("B3").voltage)
        assert report.worst_case_voltage < manager.parameters.min_voltage
        assert not report.is_valid


# ═══════════════════════════════════════════════════════════
# Failure handling
# ═══════════════════════════════════════════════════════════


class TestRollback:
    def test_failed_mutation_restores_state(self, monkeypatch):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.add_device_to_branch("A1", _device("A1", y=10), tap_id="A")

        main = list(manager.main_circuit)
        branches = {k: list(v) for k, v in manager.branches.items()}
        node_ids = set(manager.tree.nodes)
        voltages = {nid: n.voltage for nid, n in manager.tree.nodes.items()}

        def explode():
            raise RuntimeError("recalculation failed")

        monkeypatch.setattr(manager, "update_tree_voltages", explode)
        with pytest.raises(RuntimeError):
            manager.remove_device("A")

        assert manager.main_circuit == main
        assert manager.branches == branches
        assert set(manager.tree.nodes) == node_ids
        assert {nid: n.voltage for nid, n in manager.tree.nodes.items()} == voltages
        assert manager.find_node("A1").parent_id == manager.node_map["A"]

    def test_failed_add_leaves_no_trace(self, monkeypatch):
        manager = _manager()
        _main_chain(manager, "A")

        def explode():
            raise RuntimeError("recalculation failed")

        monkeypatch.setattr(manager, "update_tree_voltages", explode)
        with pytest.raises(RuntimeError):
            manager.add_device_to_main("B", _device("B", x=25))
        assert manager.main_circuit == ["A"]
        assert "B" not in manager.device_data
        assert manager.find_node("B") is None


# ═══════════════════════════════════════════════════════════
# Parameters and statistics
# ═══════════════════════════════════════════════════════════


class TestParametersAndStatistics:
    def test_update_parameters_moves_supply_run(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.update_parameters(_params(supply_distance=80.0))
        assert manager.find_node("A").distance_from_parent == pytest.approx(80.0)
        assert manager.find_node("B").distance_from_parent == pytest.approx(25.0)
        _assert_consistent(manager)

    @pytest.mark.parametrize(
        "start, end", [(0.0, 50.0), (50.0, 0.0), (0.0, 0.5), (0.5, 20.0)]
    )
    def test_update_parameters_matches_fresh_build(self, start, end):
        updated = _manager(supply_distance=start)
        _main_chain(updated, "A", "B")
        updated.update_parameters(_params(supply_distance=end))

        fresh = _manager(supply_distance=end)
        _main_chain(fresh, "A", "B")

        for device_id in ["A", "B"]:
            assert updated.find_node(device_id).distance_from_parent == pytest.approx(
                fresh.find_node(device_id).distance_from_parent
            )
            assert updated.find_node(device_id).voltage == pytest.approx(
                fresh.find_node(device_id).voltage
            )
        assert updated.calculate_total_wire_length() == pytest.approx(
            fresh.calculate_total_wire_length()
        )

    def test_update_parameters_requires_value(self):
        manager = _manager()
        with pytest.raises(ValueError):
            manager.update_parameters(None)

    def test_statistics_refresh_after_mutation(self):
        manager = _manager()
        _main_chain(manager, "A", "B")
        manager.add_device_to_branch("A1", _device("A1", current=0.06, y=10), tap_id="A")

        stats = manager.statistics
        assert stats.total_devices == 3
        assert stats.main_circuit_devices == 2
        assert stats.branch_devices == 1
        assert stats.total_branches == 1
        assert stats.total_load == pytest.approx(0.12)
        assert stats.total_standby_load == pytest.approx(0.04)
        assert stats.total_wire_length == pytest.approx(85.0)
        assert stats.last_updated is not None

    def test_max_distance_uses_parameters(self):
        manager = _manager()
        expected = (13.0 / 0.5) * 1000.0 / (2.0 * R) - 50.0
        assert manager.calculate_max_distance(0.5) == pytest.approx(expected)

    def test_clear(self):
        manager = _manager()
        _main_chain(manager, "A")
        manager.add_device_to_branch("A1", _device("A1"), tap_id="A")
        manager.start_branch_from_device("A")
        manager.clear()
        assert manager.device_data == {}
        assert manager.branches == {}
        assert len(manager.tree) == 1
        assert manager.mode == SelectionMode.MAIN
