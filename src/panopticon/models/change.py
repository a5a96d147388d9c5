"""Change model for the audit trail of inventory differences."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from panopticon.models.base import Base

if TYPE_CHECKING:
    from panopticon.models.device import Device
    from panopticon.models.scan import Scan


class ChangeType(str, Enum):
    """Kinds of detected inventory differences."""

    NEW_DEVICE = "new_device"
    DEVICE_CHANGE = "device_change"
    NEW_PORT = "new_port"
    PORT_CHANGE = "port_change"


class Change(Base):
    """Append-only record of a detected difference."""

    __tablename__ = "changes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # Null when the change was recorded before any scan existed
    scan_id: Mapped[int | None] = mapped_column(
        ForeignKey("scans.id", ondelete="CASCADE"), nullable=True, index=True
    )
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    change_type: Mapped[ChangeType] = mapped_column(
        SQLEnum(ChangeType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    details: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Relationships
    scan: Mapped["Scan | None"] = relationship("Scan", back_populates="changes")
    device: Mapped["Device"] = relationship("Device", back_populates="changes")
