"""Registration service: equipment inventory, trust anchors and device records."""

import logging
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from provisioning.ca.authority_manager import AuthorityInfo
from provisioning.ca.issuance_engine import IssuedDeviceCertificate
from provisioning.domain.models import (
    EquipmentInventory,
    Hub,
    RegisteredDevice,
    TrustedDeviceCA,
)
from provisioning.domain.states import (
    CAUploadOutcome,
    DeviceStatus,
    EquipmentStatus,
    EquipmentType,
)
from provisioning.metrics import provisioning_metrics
from provisioning.repository.repositories import (
    EquipmentRepository,
    HubRepository,
    RegisteredDeviceRepository,
    TrustedCARepository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RegistrationError(Exception):
    """Raised when a registration record cannot be written."""

    pass


class UnknownHubError(RegistrationError):
    """Raised when a hub id does not match a registered hub."""

    pass


@dataclass
class DeviceSetupOptions:
    """Operator input for one provisioning run."""

    asset_tag: str
    hub_id: str
    serial: str | None = None
    equipment_type: EquipmentType = EquipmentType.POEM_BOOTH


class RegistrationService:
    """Service for the inventory and registration records around issuance."""

    DEFAULT_CA_NAME = "Poem Booth Root CA"

    def __init__(self, db: AsyncSession, ca_name: str = DEFAULT_CA_NAME):
        self.db = db
        self.ca_name = ca_name
        self.hub_repo = HubRepository(db)
        self.equipment_repo = EquipmentRepository(db)
        self.device_repo = RegisteredDeviceRepository(db)
        self.trusted_ca_repo = TrustedCARepository(db)

    async def list_hubs(self) -> list[Hub]:
        """List the hubs devices can be provisioned for."""
        return await self.hub_repo.list_all()

    async def require_hub(self, hub_id: str) -> Hub:
        """Return the hub with this id.

        Raises:
            UnknownHubError: If no hub is registered under hub_id.
        """
        hub = await self.hub_repo.get_by_id(hub_id)
        if hub is None:
            logger.warning("hub_not_found", extra={"hub_id": hub_id})
            raise UnknownHubError(f"Hub {hub_id!r} is not registered; create the hub first")
        return hub

    async def ensure_equipment_exists(self, options: DeviceSetupOptions) -> int:
        """Return the equipment id for (asset_tag, hub_id), creating it if absent."""
        with tracer.start_as_current_span("RegistrationService.ensure_equipment_exists") as span:
            span.set_attribute("asset_tag", options.asset_tag)

            existing = await self.equipment_repo.get_by_asset_tag_and_hub(
                options.asset_tag, options.hub_id
            )
            if existing is not None:
                span.set_attribute("created", False)
                logger.debug(
                    "equipment_found",
                    extra={"asset_tag": options.asset_tag, "equipment_id": existing.id},
                )
                return existing.id

            equipment = EquipmentInventory(
                asset_tag=options.asset_tag,
                hub_id=options.hub_id,
                equipment_type=EquipmentType(options.equipment_type).value,
                device_serial=options.serial or None,
                status=EquipmentStatus.PENDING_ACTIVATION.value,
            )
            try:
                equipment = await self.equipment_repo.create(equipment)
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                # A concurrent run may have inserted the same (asset_tag, hub_id).
                existing = await self.equipment_repo.get_by_asset_tag_and_hub(
                    options.asset_tag, options.hub_id
                )
                if existing is None:
                    raise RegistrationError(f"Failed to create equipment: {e.orig}") from e
                span.set_attribute("created", False)
                logger.info(
                    "equipment_created_concurrently",
                    extra={"asset_tag": options.asset_tag, "equipment_id": existing.id},
                )
                return existing.id

            span.set_attribute("created", True)
            provisioning_metrics.record_equipment_created(equipment.equipment_type)
            logger.info(
                "equipment_created",
                extra={"asset_tag": options.asset_tag, "equipment_id": equipment.id},
            )
            return equipment.id

    async def upload_authority(self, certificate_pem: str, info: AuthorityInfo) -> CAUploadOutcome:
        """Publish the CA certificate as a trusted device CA.

        A CA that is already registered is a normal outcome, reported as
        ALREADY_EXISTS rather than raised.
        """
        with tracer.start_as_current_span("RegistrationService.upload_authority") as span:
            span.set_attribute("fingerprint", info.fingerprint)

            if await self.trusted_ca_repo.get_by_fingerprint(info.fingerprint) is not None:
                outcome = CAUploadOutcome.ALREADY_EXISTS
            else:
                trusted_ca = TrustedDeviceCA(
                    name=self.ca_name,
                    certificate=certificate_pem,
                    fingerprint=info.fingerprint,
                    valid_from=info.not_before,
                    valid_until=info.not_after,
                    is_active=True,
                )
                try:
                    await self.trusted_ca_repo.create(trusted_ca)
                    await self.db.commit()
                    outcome = CAUploadOutcome.CREATED
                except IntegrityError:
                    # Unique fingerprint: another run registered the same CA.
                    await self.db.rollback()
                    outcome = CAUploadOutcome.ALREADY_EXISTS

            span.set_attribute("outcome", outcome.value)
            provisioning_metrics.record_trust_anchor_upload(outcome.value)
            logger.info(
                "trust_anchor_uploaded",
                extra={"fingerprint": info.fingerprint, "outcome": outcome.value},
            )
            return outcome

    async def pre_register_device(
        self,
        options: DeviceSetupOptions,
        issued: IssuedDeviceCertificate,
    ) -> RegisteredDevice:
        """Record an issued device as ready to deploy.

        The device row and the equipment back-reference (device id and
        certificate fingerprint) are written in one commit.
        """
        with tracer.start_as_current_span("RegistrationService.pre_register_device") as span:
            span.set_attribute("device_id", issued.device_id)

            equipment = await self.equipment_repo.get_by_id(int(issued.equipment_id))
            if equipment is None:
                raise RegistrationError(f"Equipment {issued.equipment_id} does not exist")

            device = RegisteredDevice(
                device_id=issued.device_id,
                equipment_id=int(issued.equipment_id),
                certificate=issued.certificate_pem,
                fingerprint=issued.fingerprint,
                serial_number=options.serial or None,
                status=DeviceStatus.READY_TO_DEPLOY.value,
            )
            try:
                device = await self.device_repo.create(device)
                equipment.device_id = issued.device_id
                equipment.device_certificate_fingerprint = issued.fingerprint
                await self.db.flush()
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                raise RegistrationError(f"Failed to register device: {e.orig}") from e

            provisioning_metrics.record_device_registered()
            logger.info(
                "device_registered",
                extra={
                    "device_id": issued.device_id,
                    "equipment_id": str(issued.equipment_id),
                    "asset_tag": options.asset_tag,
                },
            )
            return device
