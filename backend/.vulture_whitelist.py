from backend.src.main import health_check
from backend.src.provisioning.api.devices import list_hubs
from backend.src.provisioning.api.schemas import (
    AuthorityResponse,
    ErrorResponse,
    HubResponse,
    ProvisionDeviceResponse,
)
from backend.src.provisioning.domain.models import (
    EquipmentInventory,
    Hub,
    RegisteredDevice,
    TrustedDeviceCA,
)
from backend.src.shared.config import Settings

# Pydantic Settings
Settings.model_config
Settings.APP_ENV
Settings.CA_COUNTRY
Settings.CA_STATE
Settings.CA_LOCALITY
Settings.CA_ORGANIZATION
Settings.CA_COMMON_NAME
Settings.OPERATOR_API_KEY_HASH

# Domain Models (Attributes used by SQLAlchemy/Alembic)
EquipmentInventory.created_at
EquipmentInventory.devices
EquipmentInventory.hub
Hub.created_at
Hub.equipment
RegisteredDevice.created_at
RegisteredDevice.equipment
TrustedDeviceCA.is_active
TrustedDeviceCA.created_at

# API response models
ProvisionDeviceResponse.model_config
AuthorityResponse.certificate_path
ErrorResponse.code
HubResponse.model_config

# FastAPI
health_check
list_hubs
