"""Scan model for tracking scan executions and their outcome."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from panopticon.models.base import Base

if TYPE_CHECKING:
    from panopticon.models.change import Change


class ScanStatus(str, Enum):
    """Scan status values."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class Scan(Base):
    """One execution of the scan orchestrator."""

    __tablename__ = "scans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    template: Mapped[str] = mapped_column(String(50), nullable=False)
    duration: Mapped[int] = mapped_column(nullable=False, default=0)  # seconds
    devices_found: Mapped[int] = mapped_column(nullable=False, default=0)
    ports_found: Mapped[int] = mapped_column(nullable=False, default=0)
    status: Mapped[ScanStatus] = mapped_column(
        SQLEnum(ScanStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ScanStatus.RUNNING,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    changes: Mapped[list["Change"]] = relationship(
        "Change",
        back_populates="scan",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
