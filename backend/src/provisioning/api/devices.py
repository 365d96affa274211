"""Device provisioning API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from provisioning.api.auth import require_operator
from provisioning.api.schemas import (
    AuthorityResponse,
    ErrorResponse,
    HubResponse,
    ProvisionDeviceRequest,
    ProvisionDeviceResponse,
)
from provisioning.ca.authority_manager import AuthorityManager
from provisioning.ca.errors import (
    AuthorityNotBootstrappedError,
    InvalidIdentityInputError,
    PrerequisiteMissingError,
    ProvisioningError,
)
from provisioning.ca.issuance_engine import IssuanceEngine
from provisioning.services.provisioning_service import OperationTimeoutError, ProvisioningService
from provisioning.services.registration_service import (
    DeviceSetupOptions,
    RegistrationError,
    RegistrationService,
    UnknownHubError,
)
from shared.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["provisioning"], dependencies=[Depends(require_operator)])

# Core components (initialized on startup)
_authority: AuthorityManager | None = None
_engine: IssuanceEngine | None = None
_timeout_seconds: float = ProvisioningService.DEFAULT_TIMEOUT_SECONDS


def set_provisioning_components(
    authority: AuthorityManager,
    engine: IssuanceEngine,
    timeout_seconds: float = ProvisioningService.DEFAULT_TIMEOUT_SECONDS,
) -> None:
    """Set the authority manager and issuance engine used by the endpoints."""
    global _authority, _engine, _timeout_seconds
    _authority = authority
    _engine = engine
    _timeout_seconds = timeout_seconds


def get_authority() -> AuthorityManager:
    """Get the authority manager instance."""
    if _authority is None:
        raise RuntimeError("AuthorityManager not initialized")
    return _authority


def get_registration_service(db: AsyncSession = Depends(get_db)) -> RegistrationService:
    """Dependency to get RegistrationService instance."""
    return RegistrationService(db, ca_name=get_authority().subject.common_name)


def get_provisioning_service(
    registration: RegistrationService = Depends(get_registration_service),
) -> ProvisioningService:
    """Dependency to get ProvisioningService instance."""
    if _engine is None:
        raise RuntimeError("IssuanceEngine not initialized")
    return ProvisioningService(
        get_authority(),
        _engine,
        registration,
        timeout_seconds=_timeout_seconds,
    )


def _error_status(error: ProvisioningError) -> int:
    if isinstance(error, InvalidIdentityInputError):
        return status.HTTP_422_UNPROCESSABLE_CONTENT
    if isinstance(error, AuthorityNotBootstrappedError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, PrerequisiteMissingError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, OperationTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if error.stage == "check_existing":
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _to_http_error(error: ProvisioningError) -> HTTPException:
    body = ErrorResponse(error=str(error), code=type(error).__name__, detail=error.stage)
    return HTTPException(status_code=_error_status(error), detail=body.model_dump())


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/devices",
    status_code=status.HTTP_201_CREATED,
    response_model=ProvisionDeviceResponse,
)
async def provision_device(
    body: ProvisionDeviceRequest,
    service: ProvisioningService = Depends(get_provisioning_service),
) -> ProvisionDeviceResponse:
    """
    Provision a device: CA bootstrap, equipment record, certificate, registration.

    - Auth: operator API key
    - Returns: 201 Created with device identity and artifact locations
    - Errors: 409 CONFLICT (credentials exist), 422 (invalid identity),
      500 (storage/crypto/registration), 404 (unknown hub), 503 (crypto prerequisites), 504 (timeout)
    """
    options = DeviceSetupOptions(
        asset_tag=body.asset_tag,
        hub_id=body.hub_id,
        serial=body.serial,
        equipment_type=body.equipment_type,
    )
    try:
        result = await service.provision_device(options, overwrite=body.overwrite)
    except ProvisioningError as e:
        raise _to_http_error(e) from None
    except UnknownHubError as e:
        body_error = ErrorResponse(error=str(e), code=type(e).__name__, detail="hub")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=body_error.model_dump(),
        ) from None
    except RegistrationError as e:
        body_error = ErrorResponse(error=str(e), code=type(e).__name__, detail="registration")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=body_error.model_dump(),
        ) from None

    return ProvisionDeviceResponse.model_validate(result)


@router.get("/authority", response_model=AuthorityResponse)
async def get_authority_certificate(
    authority: AuthorityManager = Depends(get_authority),
) -> AuthorityResponse:
    """
    Get the root CA certificate and its trust-anchor metadata.

    - Auth: operator API key
    - Errors: 404 NOT_FOUND if no CA has been bootstrapped
    """
    try:
        info = authority.get_authority_info()
        certificate_pem = authority.read_authority_certificate()
    except ProvisioningError as e:
        raise _to_http_error(e) from None

    return AuthorityResponse(
        certificate_pem=certificate_pem,
        certificate_path=authority.get_authority_certificate_path(),
        fingerprint=info.fingerprint,
        not_before=info.not_before,
        not_after=info.not_after,
    )


@router.get("/hubs", response_model=list[HubResponse])
async def list_hubs(
    registration: RegistrationService = Depends(get_registration_service),
) -> list[HubResponse]:
    """
    List the hubs devices can be provisioned for.

    - Auth: operator API key
    - Returns: hubs ordered by name (empty until a hub has been created)
    """
    hubs = await registration.list_hubs()
    return [HubResponse.model_validate(hub) for hub in hubs]
