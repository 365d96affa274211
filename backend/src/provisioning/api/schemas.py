"""Pydantic schemas for provisioning API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, Field

from provisioning.domain.states import CAUploadOutcome, EquipmentType


class ProvisionDeviceRequest(BaseModel):
    """Request body for provisioning a device."""

    asset_tag: str = Field(..., min_length=3, max_length=63)
    hub_id: str = Field(..., min_length=1, max_length=128)
    serial: str | None = Field(None, max_length=255)
    equipment_type: EquipmentType = EquipmentType.POEM_BOOTH
    overwrite: bool = False


class ProvisionDeviceResponse(BaseModel):
    """Response model for a provisioned device."""

    asset_tag: str
    hub_id: str
    device_id: str
    equipment_id: int
    fingerprint: str
    certificate_path: str
    private_key_path: str
    ca_certificate_path: str
    authority_created: bool
    trust_anchor: CAUploadOutcome

    model_config = {"from_attributes": True}


class HubResponse(BaseModel):
    """Response model for a hub."""

    id: str
    name: str
    region_code: str | None = None

    model_config = {"from_attributes": True}


class AuthorityResponse(BaseModel):
    """Response model for the root CA trust anchor."""

    certificate_pem: str
    certificate_path: str
    fingerprint: str
    not_before: datetime
    not_after: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    code: str
    detail: str | None = None
