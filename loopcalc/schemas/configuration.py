"""Saved circuit document: parameters, the full tree arena and statistics."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from loopcalc.circuit.tree import CircuitTree
from loopcalc.schemas.parameters import CircuitParameters
from loopcalc.schemas.report import CircuitStatistics


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CircuitConfiguration(BaseModel):
    configuration_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    created_at: datetime = Field(default_factory=_now)
    modified_at: datetime = Field(default_factory=_now)
    created_by: str | None = None
    project_name: str | None = None
    project_path: str | None = None

    parameters: CircuitParameters
    tree: CircuitTree
    statistics: CircuitStatistics = Field(default_factory=CircuitStatistics)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> CircuitConfiguration:
        return cls.model_validate_json(data)
