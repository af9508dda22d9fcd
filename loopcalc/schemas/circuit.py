from __future__ import annotations

import uuid
from enum import Enum

from pydantic import BaseModel, Field

from loopcalc.schemas.device import DeviceElectricalData


class NodeKind(str, Enum):
    ROOT = "root"
    DEVICE = "device"


class NodeStatus(str, Enum):
    OK = "OK"
    MARGINAL = "MARGINAL"
    LOW = "LOW"


class SelectionMode(str, Enum):
    MAIN = "main"
    BRANCH = "branch"


class CircuitType(str, Enum):
    MAIN = "main"
    BRANCH = "branch"


def new_node_id() -> str:
    return str(uuid.uuid4())


class CircuitNode(BaseModel):
    """One record in the circuit tree arena.

    Parent and children are node ids, not object references, so a node is
    owned by the slot its parent holds for it and the whole arena dumps to
    plain JSON.
    """

    node_id: str = Field(default_factory=new_node_id)
    name: str
    kind: NodeKind = NodeKind.DEVICE
    device_id: str | None = None
    is_branch_device: bool = False
    device_data: DeviceElectricalData | None = None

    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)
    sequence_number: int = 0

    distance_from_parent: float = Field(default=0.0, ge=0)  # feet
    voltage: float = 0.0
    voltage_drop: float = 0.0
    accumulated_load: float = 0.0
    status: NodeStatus | None = None

    @property
    def is_root(self) -> bool:
        return self.kind == NodeKind.ROOT

    @property
    def own_current(self) -> float:
        if self.device_data is None:
            return 0.0
        return self.device_data.alarm_current

    @property
    def has_children(self) -> bool:
        return len(self.children) > 0

    @property
    def display_name(self) -> str:
        display = self.name
        if self.device_data is not None:
            display += f" [{self.device_data.alarm_current:.3f}A]"
        if self.voltage > 0:
            display += f" {self.voltage:.1f}V"
        if self.status is not None:
            display += f" {self.status.value}"
        return display
