"""Device model for hosts discovered by network scans."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from panopticon.models.base import Base

if TYPE_CHECKING:
    from panopticon.models.change import Change
    from panopticon.models.port import Port


class Device(Base):
    """A discovered host, identified by its IP and MAC address pair."""

    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False, index=True)
    mac_address: Mapped[str | None] = mapped_column(String(17), nullable=True, index=True)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    os_fingerprint: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Relationships
    ports: Mapped[list["Port"]] = relationship(
        "Port",
        back_populates="device",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Port.port_number",
    )
    changes: Mapped[list["Change"]] = relationship(
        "Change",
        back_populates="device",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (UniqueConstraint("ip_address", "mac_address", name="uq_devices_ip_mac"),)
