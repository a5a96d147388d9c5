"""Port model for open ports observed on a device."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from panopticon.models.base import Base

if TYPE_CHECKING:
    from panopticon.models.device import Device


class Port(Base):
    """An open network port, owned by exactly one device."""

    __tablename__ = "ports"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    port_number: Mapped[int] = mapped_column(nullable=False)
    protocol: Mapped[str] = mapped_column(String(10), nullable=False, default="tcp")
    service_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    service_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Relationships
    device: Mapped["Device"] = relationship("Device", back_populates="ports")

    __table_args__ = (
        UniqueConstraint(
            "device_id", "port_number", "protocol", name="uq_ports_device_port_protocol"
        ),
        Index("ix_ports_port_protocol", "port_number", "protocol"),
    )
