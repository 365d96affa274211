"""Repository layer for provisioning data access."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from provisioning.domain.models import EquipmentInventory, Hub, RegisteredDevice, TrustedDeviceCA

logger = logging.getLogger(__name__)


class HubRepository:
    """Repository for Hub records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, hub_id: str) -> Hub | None:
        """Get hub by id."""
        result = await self.db.execute(select(Hub).where(Hub.id == hub_id))
        return result.scalar_one_or_none()

    async def list_all(self) -> list[Hub]:
        """List all hubs ordered by name."""
        result = await self.db.execute(select(Hub).order_by(Hub.name))
        return list(result.scalars().all())


class EquipmentRepository:
    """Repository for EquipmentInventory records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, equipment_id: int) -> EquipmentInventory | None:
        """Get equipment by id."""
        result = await self.db.execute(
            select(EquipmentInventory).where(EquipmentInventory.id == equipment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_asset_tag_and_hub(
        self, asset_tag: str, hub_id: str
    ) -> EquipmentInventory | None:
        """Get equipment by its natural key."""
        result = await self.db.execute(
            select(EquipmentInventory).where(
                EquipmentInventory.asset_tag == asset_tag,
                EquipmentInventory.hub_id == hub_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, equipment: EquipmentInventory) -> EquipmentInventory:
        """Create a new equipment record."""
        self.db.add(equipment)
        await self.db.flush()
        return equipment


class RegisteredDeviceRepository:
    """Repository for RegisteredDevice records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, device: RegisteredDevice) -> RegisteredDevice:
        """Create a new device registration."""
        self.db.add(device)
        await self.db.flush()
        return device


class TrustedCARepository:
    """Repository for TrustedDeviceCA trust anchors."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_fingerprint(self, fingerprint: str) -> TrustedDeviceCA | None:
        """Get trust anchor by certificate fingerprint."""
        result = await self.db.execute(
            select(TrustedDeviceCA).where(TrustedDeviceCA.fingerprint == fingerprint)
        )
        return result.scalar_one_or_none()

    async def create(self, trusted_ca: TrustedDeviceCA) -> TrustedDeviceCA:
        """Create a new trust anchor."""
        self.db.add(trusted_ca)
        await self.db.flush()
        return trusted_ca
