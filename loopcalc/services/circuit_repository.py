"""Circuit repository — persistence for saved circuit configurations."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from loopcalc.models.configuration import SavedCircuit
from loopcalc.schemas.configuration import CircuitConfiguration

logger = logging.getLogger(__name__)


class CircuitRepository:
    def __init__(self, db: Session):
        self.db = db

    def save(
        self, config: CircuitConfiguration, is_valid: bool | None = None
    ) -> CircuitConfiguration:
        config.modified_at = datetime.now(timezone.utc)
        row = self.db.get(SavedCircuit, config.configuration_id)
        if row is None:
            row = SavedCircuit(id=config.configuration_id, created_at=config.created_at)
            self.db.add(row)

        row.name = config.name
        row.description = config.description
        row.project_name = config.project_name
        row.project_path = config.project_path
        row.created_by = config.created_by
        row.total_devices = config.statistics.total_devices
        row.branch_count = config.statistics.total_branches
        row.is_valid = is_valid
        row.document = config.model_dump(mode="json")
        row.updated_at = config.modified_at

        self.db.flush()
        logger.info("Saved circuit '%s' (%s)", config.name, config.configuration_id)
        return config

    def get_by_id(self, configuration_id: str) -> CircuitConfiguration | None:
        row = self.db.get(SavedCircuit, configuration_id)
        if row is None:
            return None
        return CircuitConfiguration.model_validate(row.document)

    def list_all(self, project_path: str | None = None) -> list[CircuitConfiguration]:
        stmt = select(SavedCircuit).order_by(SavedCircuit.updated_at.desc())
        if project_path is not None:
            stmt = stmt.where(SavedCircuit.project_path == project_path)
        rows = self.db.execute(stmt).scalars().all()

        configs: list[CircuitConfiguration] = []
        for row in rows:
            try:
                configs.append(CircuitConfiguration.model_validate(row.document))
            except ValidationError as exc:
                logger.warning("Skipping unreadable circuit %s: %s", row.id, exc)
        return configs

    def find_with_device(self, device_id: str) -> list[CircuitConfiguration]:
        return [
            config
            for config in self.list_all()
            if config.tree.find_by_device_id(device_id) is not None
        ]

    def delete(self, configuration_id: str) -> bool:
        row = self.db.get(SavedCircuit, configuration_id)
        if row is None:
            return False
        self.db.delete(row)
        self.db.flush()
        return True

    def export_to_file(self, configuration_id: str, path: str | Path) -> bool:
        config = self.get_by_id(configuration_id)
        if config is None:
            return False
        Path(path).write_text(config.to_json(), encoding="utf-8")
        return True

    def import_from_file(self, path: str | Path) -> CircuitConfiguration | None:
        """Import a circuit document as a new saved circuit."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            config = CircuitConfiguration.from_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            logger.warning("Could not import %s: %s", path, exc)
            return None

        now = datetime.now(timezone.utc)
        config = config.model_copy(
            update={
                "configuration_id": str(uuid.uuid4()),
                "name": f"{config.name} (Imported)",
                "created_at": now,
                "modified_at": now,
            }
        )
        return self.save(config)
