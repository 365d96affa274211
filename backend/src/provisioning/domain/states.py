from enum import StrEnum


class EquipmentType(StrEnum):
    POEM_BOOTH = "poem_booth"
    PRINTER = "printer"
    OTHER = "other"


class EquipmentStatus(StrEnum):
    """Lifecycle states of an equipment inventory record."""

    PENDING_ACTIVATION = "pending_activation"


class DeviceStatus(StrEnum):
    """Lifecycle states of a registered device."""

    READY_TO_DEPLOY = "ready_to_deploy"


class CAUploadOutcome(StrEnum):
    """Result of publishing the CA as a trust anchor."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
