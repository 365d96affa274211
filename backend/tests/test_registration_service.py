"""Tests for RegistrationService."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from provisioning.ca.authority_manager import AuthorityInfo
from provisioning.ca.issuance_engine import IssuedDeviceCertificate
from provisioning.domain.models import EquipmentInventory, Hub, RegisteredDevice, TrustedDeviceCA
from provisioning.domain.states import (
    CAUploadOutcome,
    DeviceStatus,
    EquipmentStatus,
    EquipmentType,
)
from provisioning.services.registration_service import (
    DeviceSetupOptions,
    RegistrationError,
    RegistrationService,
    UnknownHubError,
)


def make_integrity_error() -> IntegrityError:
    return IntegrityError("INSERT", {}, Exception("duplicate key value"))


def make_authority_info() -> AuthorityInfo:
    now = datetime.now(timezone.utc)
    return AuthorityInfo(
        fingerprint="ab" * 32,
        not_before=now,
        not_after=now + timedelta(days=3650),
    )


def make_issued(equipment_id: int = 42) -> IssuedDeviceCertificate:
    now = datetime.now(timezone.utc)
    return IssuedDeviceCertificate(
        device_id="0b9e4a52-6f0c-4d8e-9f1a-2b3c4d5e6f70",
        equipment_id=equipment_id,
        fingerprint="cd" * 32,
        certificate_path="device-certs/PB-005-cert.pem",
        private_key_path="device-certs/PB-005-key.pem",
        certificate_pem="-----BEGIN CERTIFICATE-----\n...\n-----END CERTIFICATE-----\n",
        serial_number="1f",
        not_before=now,
        not_after=now + timedelta(days=3650),
    )


@pytest.fixture
def service():
    mock_db = AsyncMock()
    svc = RegistrationService(mock_db)
    svc.hub_repo = AsyncMock()
    svc.equipment_repo = AsyncMock()
    svc.device_repo = AsyncMock()
    svc.trusted_ca_repo = AsyncMock()
    return svc


class TestEnsureEquipmentExists:
    """Tests for ensure_equipment_exists."""

    @pytest.mark.asyncio
    async def test_returns_existing_equipment_id(self, service):
        """Test that an existing record is reused without writing."""
        existing = MagicMock(spec=EquipmentInventory)
        existing.id = 42
        service.equipment_repo.get_by_asset_tag_and_hub.return_value = existing

        equipment_id = await service.ensure_equipment_exists(
            DeviceSetupOptions(asset_tag="PB-005", hub_id="hub-1")
        )

        assert equipment_id == 42
        service.equipment_repo.create.assert_not_called()
        service.db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_equipment_when_missing(self, service):
        """Test that a missing record is created pending activation."""
        service.equipment_repo.get_by_asset_tag_and_hub.return_value = None

        async def assign_id(equipment):
            equipment.id = 7
            return equipment

        service.equipment_repo.create.side_effect = assign_id

        with patch("provisioning.services.registration_service.provisioning_metrics") as mock_metrics:
            equipment_id = await service.ensure_equipment_exists(
                DeviceSetupOptions(
                    asset_tag="PB-006",
                    hub_id="hub-1",
                    serial="SN-1",
                    equipment_type=EquipmentType.PRINTER,
                )
            )

        assert equipment_id == 7
        created = service.equipment_repo.create.call_args[0][0]
        assert created.asset_tag == "PB-006"
        assert created.hub_id == "hub-1"
        assert created.device_serial == "SN-1"
        assert created.equipment_type == EquipmentType.PRINTER.value
        assert created.status == EquipmentStatus.PENDING_ACTIVATION.value
        service.db.commit.assert_awaited_once()
        mock_metrics.record_equipment_created.assert_called_once_with("printer")

    @pytest.mark.asyncio
    async def test_integrity_error_rolls_back(self, service):
        """Test that a failed insert rolls back and raises RegistrationError."""
        service.equipment_repo.get_by_asset_tag_and_hub.return_value = None
        service.equipment_repo.create.side_effect = make_integrity_error()

        with pytest.raises(RegistrationError, match="Failed to create equipment"):
            await service.ensure_equipment_exists(
                DeviceSetupOptions(asset_tag="PB-005", hub_id="hub-1")
            )

        service.db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_insert_returns_winning_row(self, service):
        """Test that losing an insert race reuses the row the other run created."""
        winner = MagicMock(spec=EquipmentInventory)
        winner.id = 11
        service.equipment_repo.get_by_asset_tag_and_hub.side_effect = [None, winner]
        service.equipment_repo.create.side_effect = make_integrity_error()

        with patch("provisioning.services.registration_service.provisioning_metrics") as mock_metrics:
            equipment_id = await service.ensure_equipment_exists(
                DeviceSetupOptions(asset_tag="PB-005", hub_id="hub-1")
            )

        assert equipment_id == 11
        service.db.rollback.assert_awaited_once()
        assert service.equipment_repo.get_by_asset_tag_and_hub.await_count == 2
        mock_metrics.record_equipment_created.assert_not_called()


class TestHubs:
    """Tests for hub lookups."""

    @pytest.mark.asyncio
    async def test_require_hub_returns_registered_hub(self, service):
        hub = Hub(id="hub-1", name="Oslo Central")
        service.hub_repo.get_by_id.return_value = hub

        assert await service.require_hub("hub-1") is hub
        service.hub_repo.get_by_id.assert_awaited_once_with("hub-1")

    @pytest.mark.asyncio
    async def test_require_unknown_hub_raises(self, service):
        """Test that an unregistered hub id is rejected."""
        service.hub_repo.get_by_id.return_value = None

        with pytest.raises(UnknownHubError, match="hub-404"):
            await service.require_hub("hub-404")

        service.db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_hubs(self, service):
        hubs = [Hub(id="hub-2", name="Bergen"), Hub(id="hub-1", name="Oslo Central")]
        service.hub_repo.list_all.return_value = hubs

        assert await service.list_hubs() == hubs


class TestUploadAuthority:
    """Tests for upload_authority."""

    @pytest.mark.asyncio
    async def test_upload_new_authority(self, service):
        """Test that an unknown CA is stored as an active trust anchor."""
        service.trusted_ca_repo.get_by_fingerprint.return_value = None
        info = make_authority_info()

        outcome = await service.upload_authority("CA PEM", info)

        assert outcome == CAUploadOutcome.CREATED
        stored = service.trusted_ca_repo.create.call_args[0][0]
        assert isinstance(stored, TrustedDeviceCA)
        assert stored.name == "Poem Booth Root CA"
        assert stored.certificate == "CA PEM"
        assert stored.fingerprint == info.fingerprint
        assert stored.valid_from == info.not_before
        assert stored.valid_until == info.not_after
        assert stored.is_active is True
        service.db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upload_known_authority_reports_already_exists(self, service):
        """Test that a registered CA is not an error."""
        service.trusted_ca_repo.get_by_fingerprint.return_value = MagicMock(spec=TrustedDeviceCA)

        outcome = await service.upload_authority("CA PEM", make_authority_info())

        assert outcome == CAUploadOutcome.ALREADY_EXISTS
        service.trusted_ca_repo.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_race_reports_already_exists(self, service):
        """Test that a unique-constraint conflict is treated as already registered."""
        service.trusted_ca_repo.get_by_fingerprint.return_value = None
        service.trusted_ca_repo.create.side_effect = make_integrity_error()

        outcome = await service.upload_authority("CA PEM", make_authority_info())

        assert outcome == CAUploadOutcome.ALREADY_EXISTS
        service.db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upload_uses_configured_name(self):
        """Test that the trust anchor name comes from the service."""
        svc = RegistrationService(AsyncMock(), ca_name="Fleet Root CA")
        svc.trusted_ca_repo = AsyncMock()
        svc.trusted_ca_repo.get_by_fingerprint.return_value = None

        await svc.upload_authority("CA PEM", make_authority_info())

        assert svc.trusted_ca_repo.create.call_args[0][0].name == "Fleet Root CA"


class TestPreRegisterDevice:
    """Tests for pre_register_device."""

    @pytest.mark.asyncio
    async def test_registers_device_ready_to_deploy(self, service):
        """Test that the issued certificate is recorded for the equipment."""
        equipment = EquipmentInventory(
            id=42,
            asset_tag="PB-005",
            hub_id="hub-1",
            status=EquipmentStatus.PENDING_ACTIVATION.value,
        )
        service.equipment_repo.get_by_id.return_value = equipment
        service.device_repo.create.side_effect = lambda device: device
        issued = make_issued(equipment_id=42)

        device = await service.pre_register_device(
            DeviceSetupOptions(asset_tag="PB-005", hub_id="hub-1", serial="SN-9"), issued
        )

        assert isinstance(device, RegisteredDevice)
        assert device.device_id == issued.device_id
        assert device.equipment_id == 42
        assert device.certificate == issued.certificate_pem
        assert device.fingerprint == issued.fingerprint
        assert device.serial_number == "SN-9"
        assert device.status == DeviceStatus.READY_TO_DEPLOY.value
        service.equipment_repo.get_by_id.assert_awaited_once_with(42)
        assert equipment.device_id == issued.device_id
        assert equipment.device_certificate_fingerprint == issued.fingerprint
        assert equipment.status == EquipmentStatus.PENDING_ACTIVATION.value
        service.db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_equipment_raises(self, service):
        """Test that a device cannot be registered against unknown equipment."""
        service.equipment_repo.get_by_id.return_value = None

        with pytest.raises(RegistrationError, match="does not exist"):
            await service.pre_register_device(
                DeviceSetupOptions(asset_tag="PB-005", hub_id="hub-1"), make_issued()
            )

        service.device_repo.create.assert_not_called()
        service.db.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_registration_raises(self, service):
        """Test that a conflicting device record raises RegistrationError."""
        service.equipment_repo.get_by_id.return_value = MagicMock(spec=EquipmentInventory)
        service.device_repo.create.side_effect = make_integrity_error()

        with pytest.raises(RegistrationError, match="Failed to register device"):
            await service.pre_register_device(
                DeviceSetupOptions(asset_tag="PB-005", hub_id="hub-1"), make_issued()
            )

        service.db.rollback.assert_awaited_once()
