"""SQLAlchemy ORM model for saved circuit configurations."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from loopcalc.db.session import Base


class SavedCircuit(Base):
    __tablename__ = "circuit_configurations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    project_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Denormalised for listing without parsing the document
    total_devices: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    branch_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    # Full CircuitConfiguration document
    document: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<SavedCircuit {self.name} ({self.id})>"
