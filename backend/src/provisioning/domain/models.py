from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.database import Base

from .states import DeviceStatus, EquipmentStatus, EquipmentType


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Hub(Base):
    __tablename__ = "hubs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    region_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    # Relationships
    equipment: Mapped[List["EquipmentInventory"]] = relationship(
        "EquipmentInventory", back_populates="hub"
    )


class EquipmentInventory(Base):
    __tablename__ = "equipment_inventory"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_tag: Mapped[str] = mapped_column(String(63), nullable=False)
    hub_id: Mapped[str] = mapped_column(String(128), ForeignKey("hubs.id"), nullable=False)
    equipment_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=EquipmentType.POEM_BOOTH.value
    )
    device_serial: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=EquipmentStatus.PENDING_ACTIVATION.value
    )
    # Set once a device has been pre-registered for this equipment
    device_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    device_certificate_fingerprint: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("asset_tag", "hub_id", name="uq_equipment_asset_tag_hub"),
    )

    # Relationships
    hub: Mapped["Hub"] = relationship("Hub", back_populates="equipment")
    devices: Mapped[List["RegisteredDevice"]] = relationship(
        "RegisteredDevice", back_populates="equipment"
    )


class RegisteredDevice(Base):
    __tablename__ = "registered_devices"

    device_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    equipment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("equipment_inventory.id"), nullable=False
    )
    certificate: Mapped[str] = mapped_column(Text, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    serial_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DeviceStatus.READY_TO_DEPLOY.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    # Relationships
    equipment: Mapped["EquipmentInventory"] = relationship(
        "EquipmentInventory", back_populates="devices"
    )


class TrustedDeviceCA(Base):
    __tablename__ = "trusted_device_cas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    certificate: Mapped[str] = mapped_column(Text, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
