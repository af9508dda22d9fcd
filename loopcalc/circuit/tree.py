"""Circuit tree — an arena of ``CircuitNode`` records keyed by node id.

The tree only keeps structural invariants (single parent, ordered children,
no cycles) and the two propagation passes:

  * accumulated load, bottom-up: own alarm current + sum of children
  * voltage, top-down: parent voltage - drop(load, distance_from_parent)

Traversals are iterative; a main chain is as deep as it is long.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from pydantic import BaseModel, Field

from loopcalc.circuit.calculations import calculate_voltage_drop
from loopcalc.schemas.circuit import CircuitNode, NodeKind

logger = logging.getLogger(__name__)

ROOT_NAME = "Supply Panel"


class CircuitTree(BaseModel):
    root_id: str
    nodes: dict[str, CircuitNode] = Field(default_factory=dict)

    @classmethod
    def create(cls, supply_voltage: float, name: str = ROOT_NAME) -> CircuitTree:
        root = CircuitNode(name=name, kind=NodeKind.ROOT, voltage=supply_voltage)
        return cls(root_id=root.node_id, nodes={root.node_id: root})

    # ─── Lookup ───

    @property
    def root(self) -> CircuitNode:
        return self.nodes[self.root_id]

    def get(self, node_id: str | None) -> CircuitNode | None:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def _require(self, node_id: str) -> CircuitNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise ValueError(f"Node {node_id} is not part of this tree")
        return node

    def parent_of(self, node: CircuitNode) -> CircuitNode | None:
        return self.get(node.parent_id)

    def children_of(self, node: CircuitNode) -> list[CircuitNode]:
        return [self.nodes[child_id] for child_id in node.children]

    def __len__(self) -> int:
        return len(self.nodes)

    # ─── Structure ───

    def is_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        """True if ``ancestor_id`` is ``node_id`` or lies above it."""
        current = self.get(node_id)
        while current is not None:
            if current.node_id == ancestor_id:
                return True
            current = self.get(current.parent_id)
        return False

    def _attach(self, parent: CircuitNode, child: CircuitNode) -> None:
        if child.node_id == self.root_id:
            raise ValueError("The root node cannot be attached to a parent")
        if self.is_ancestor(child.node_id, parent.node_id):
            raise ValueError(
                f"Attaching {child.name} under {parent.name} would create a cycle"
            )
        if child.parent_id is not None and child.parent_id != parent.node_id:
            previous = self.get(child.parent_id)
            if previous is not None and child.node_id in previous.children:
                previous.children.remove(child.node_id)
                self._resequence(previous)
        self.nodes[child.node_id] = child
        child.parent_id = parent.node_id

    def add_child(self, parent_id: str, child: CircuitNode | None) -> None:
        if child is None:
            return
        parent = self._require(parent_id)
        self._attach(parent, child)
        if child.node_id not in parent.children:
            parent.children.append(child.node_id)
        child.sequence_number = len(parent.children)
        self.update_accumulated_load(child.node_id)

    def insert_child(self, parent_id: str, index: int, child: CircuitNode | None) -> None:
        if child is None:
            return
        parent = self._require(parent_id)
        if index < 0 or index > len(parent.children):
            return
        self._attach(parent, child)
        parent.children.insert(index, child.node_id)
        self._resequence(parent)
        self.update_accumulated_load(child.node_id)

    def remove_child(self, parent_id: str, child_id: str) -> None:
        """Detach a child. Its own descendants stay attached to it."""
        parent = self.get(parent_id)
        if parent is None or child_id not in parent.children:
            return
        child = self.nodes[child_id]
        child.parent_id = None
        parent.children.remove(child_id)
        self._resequence(parent)
        self.update_accumulated_load(parent.node_id)

    def remove_node(self, node_id: str) -> CircuitNode | None:
        """Drop a node, handing its children to its former parent.

        Each rehomed child's segment grows by the removed node's segment,
        since the wire now runs through the removed device's position.
        """
        node = self.get(node_id)
        if node is None or node.is_root:
            return None
        parent = self.parent_of(node)
        orphans = self.children_of(node)

        if parent is not None:
            self.remove_child(parent.node_id, node.node_id)
        for child in orphans:
            child.distance_from_parent += node.distance_from_parent
            node.children.remove(child.node_id)
            child.parent_id = None
            if parent is not None:
                self.add_child(parent.node_id, child)
                logger.debug(
                    "Rehomed %s to %s at %.1fft",
                    child.name,
                    parent.name,
                    child.distance_from_parent,
                )
            else:
                self.discard_subtree(child.node_id)

        del self.nodes[node.node_id]
        return node

    def discard_subtree(self, node_id: str) -> list[str]:
        """Remove a detached node and everything under it from the arena."""
        removed = [n.node_id for n in self.iter_preorder(node_id)]
        for removed_id in removed:
            del self.nodes[removed_id]
        return removed

    def detach_all(self) -> None:
        """Strip every parent/child link, keeping the node records."""
        for node in self.nodes.values():
            node.children = []
            node.parent_id = None
            node.sequence_number = 0
        self.refresh_loads()

    def _resequence(self, parent: CircuitNode) -> None:
        for i, child_id in enumerate(parent.children):
            self.nodes[child_id].sequence_number = i + 1

    # ─── Search / traversal ───

    def iter_preorder(self, start_id: str | None = None) -> Iterator[CircuitNode]:
        start = self.get(start_id or self.root_id)
        if start is None:
            return
        stack = [start]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(self.nodes[c] for c in reversed(node.children))

    def all_nodes(self) -> list[CircuitNode]:
        return list(self.iter_preorder())

    def leaf_nodes(self) -> list[CircuitNode]:
        return [n for n in self.iter_preorder() if not n.has_children]

    def find_by_device_id(self, device_id: str | None) -> CircuitNode | None:
        if device_id is None:
            return None
        for node in self.iter_preorder():
            if node.device_id == device_id:
                return node
        return None

    def find_by_node_id(self, node_id: str | None) -> CircuitNode | None:
        if node_id is None:
            return None
        for node in self.iter_preorder():
            if node.node_id == node_id:
                return node
        return None

    def path_to_root(self, node_id: str) -> list[CircuitNode]:
        """Nodes from the root down to ``node_id``."""
        path: list[CircuitNode] = []
        current = self.get(node_id)
        while current is not None:
            path.append(current)
            current = self.get(current.parent_id)
        path.reverse()
        return path

    def depth(self, node_id: str) -> int:
        return max(len(self.path_to_root(node_id)) - 1, 0)

    def path_label(self, node_id: str) -> str:
        return " → ".join(n.name for n in self.path_to_root(node_id))

    def branch_chain(self, tap_node_id: str) -> list[CircuitNode]:
        """Branch devices hanging off a tap point, in wiring order."""
        chain: list[CircuitNode] = []
        current = self.get(tap_node_id)
        while current is not None:
            current = next(
                (c for c in self.children_of(current) if c.is_branch_device),
                None,
            )
            if current is not None:
                chain.append(current)
        return chain

    # ─── Propagation ───

    def _sum_load(self, node: CircuitNode) -> float:
        return node.own_current + sum(
            self.nodes[c].accumulated_load for c in node.children
        )

    def update_accumulated_load(self, node_id: str) -> None:
        """Recompute the load of ``node_id``'s subtree and of its ancestors."""
        node = self.get(node_id)
        if node is None:
            return
        for sub in reversed(list(self.iter_preorder(node_id))):
            sub.accumulated_load = self._sum_load(sub)
        ancestor = self.parent_of(node)
        while ancestor is not None:
            ancestor.accumulated_load = self._sum_load(ancestor)
            ancestor = self.parent_of(ancestor)

    def refresh_loads(self) -> None:
        for node in reversed(self.all_nodes()):
            node.accumulated_load = self._sum_load(node)

    def update_voltages(self, parent_voltage: float, resistance: float) -> None:
        """Top-down voltage pass starting at the root.

        ``parent_voltage`` is the supply voltage applied to the root.
        """
        for node in self.iter_preorder():
            parent = self.parent_of(node)
            upstream = parent_voltage if parent is None else parent.voltage
            if parent is not None and node.distance_from_parent > 0:
                drop = calculate_voltage_drop(
                    node.accumulated_load, node.distance_from_parent, resistance
                )
                node.voltage_drop = drop
                node.voltage = upstream - drop
            else:
                node.voltage_drop = 0.0
                node.voltage = upstream
