"""Tests for the provisioning HTTP API."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from main import app
from provisioning.api import auth as auth_api
from provisioning.api import devices as devices_api
from provisioning.ca.artifact_store import InMemoryArtifactStore
from provisioning.ca.authority_manager import AuthorityManager
from provisioning.ca.crypto import compute_fingerprint
from provisioning.ca.errors import PrerequisiteMissingError
from provisioning.ca.issuance_engine import IssuanceEngine
from provisioning.domain.states import CAUploadOutcome
from provisioning.services.provisioning_service import ProvisioningService
from provisioning.domain.models import Hub
from provisioning.services.registration_service import RegistrationError, UnknownHubError
from shared.security import generate_api_key, hash_api_key


@pytest.fixture
def components():
    authority = AuthorityManager(InMemoryArtifactStore("ca"), key_size=2048)
    engine = IssuanceEngine(authority, InMemoryArtifactStore("devices"))
    return authority, engine


@pytest.fixture
def registration():
    mock = AsyncMock()
    mock.upload_authority.return_value = CAUploadOutcome.CREATED
    mock.ensure_equipment_exists.return_value = 42
    return mock


@pytest.fixture
def api(components, registration):
    """Client with in-memory CA stores, mocked registration and a known operator key."""
    authority, engine = components
    api_key = generate_api_key()
    previous_hash = auth_api._operator_key_hash

    devices_api.set_provisioning_components(authority, engine)
    auth_api.set_operator_key_hash(hash_api_key(api_key))
    app.dependency_overrides[devices_api.get_provisioning_service] = lambda: ProvisioningService(
        authority, engine, registration
    )
    app.dependency_overrides[devices_api.get_registration_service] = lambda: registration

    client = TestClient(app)
    client.headers["X-API-Key"] = api_key
    yield client

    app.dependency_overrides.clear()
    auth_api._operator_key_hash = previous_hash


class TestAuthentication:
    """Tests for operator key enforcement on the router."""

    def test_missing_key_rejected(self, api):
        """Test requests without X-API-Key are rejected."""
        response = TestClient(app).get("/api/authority")
        assert response.status_code == 401

    def test_wrong_key_rejected(self, api):
        """Test requests with another key are rejected."""
        response = api.post(
            "/api/devices",
            json={"asset_tag": "PB-005", "hub_id": "hub-1"},
            headers={"X-API-Key": generate_api_key()},
        )
        assert response.status_code == 401


class TestProvisionDeviceEndpoint:
    """Tests for POST /api/devices."""

    def test_provision_device(self, api, components, registration):
        """Test a first provisioning run creates the CA and a device certificate."""
        authority, engine = components

        response = api.post("/api/devices", json={"asset_tag": "PB-005", "hub_id": "hub-1"})

        assert response.status_code == 201
        data = response.json()
        assert data["asset_tag"] == "PB-005"
        assert data["equipment_id"] == 42
        assert data["authority_created"] is True
        assert data["trust_anchor"] == "created"
        assert data["certificate_path"] == "devices://PB-005-cert.pem"
        assert data["ca_certificate_path"] == "ca://ca-cert.pem"

        cert_pem = engine.store.read_bytes("PB-005-cert.pem")
        assert data["fingerprint"] == compute_fingerprint(cert_pem)
        registration.pre_register_device.assert_awaited_once()

    def test_second_run_reuses_authority(self, api, components):
        """Test a later run reports the existing CA."""
        authority, _ = components
        authority.ensure_authority()

        response = api.post("/api/devices", json={"asset_tag": "PB-006", "hub_id": "hub-1"})

        assert response.status_code == 201
        assert response.json()["authority_created"] is False

    def test_existing_credentials_conflict(self, api):
        """Test re-provisioning the same asset tag returns 409."""
        assert api.post("/api/devices", json={"asset_tag": "PB-007", "hub_id": "hub-1"}).status_code == 201

        response = api.post("/api/devices", json={"asset_tag": "PB-007", "hub_id": "hub-1"})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "StorageError"
        assert detail["detail"] == "check_existing"

    def test_overwrite_allows_reissue(self, api):
        """Test overwrite=true re-issues credentials for an asset tag."""
        first = api.post("/api/devices", json={"asset_tag": "PB-008", "hub_id": "hub-1"})

        second = api.post(
            "/api/devices",
            json={"asset_tag": "PB-008", "hub_id": "hub-1", "overwrite": True},
        )

        assert second.status_code == 201
        assert second.json()["device_id"] != first.json()["device_id"]

    def test_invalid_asset_tag_returns_422(self, api, components):
        """Test an asset tag that is not a DNS label is rejected."""
        authority, _ = components

        response = api.post("/api/devices", json={"asset_tag": "PB_005", "hub_id": "hub-1"})

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "InvalidIdentityInputError"
        assert not authority.authority_exists()

    def test_short_asset_tag_fails_schema(self, api):
        """Test request validation catches too-short tags."""
        response = api.post("/api/devices", json={"asset_tag": "PB", "hub_id": "hub-1"})
        assert response.status_code == 422

    def test_prerequisite_failure_returns_503(self, api, components):
        """Test a missing crypto prerequisite maps to 503."""
        authority, _ = components
        authority.ensure_authority = MagicMock(
            side_effect=PrerequisiteMissingError("AES-256 unavailable", stage="prerequisites")
        )

        response = api.post("/api/devices", json={"asset_tag": "PB-009", "hub_id": "hub-1"})

        assert response.status_code == 503
        assert response.json()["detail"]["detail"] == "prerequisites"

    def test_registration_failure_returns_500(self, api, registration):
        """Test a database failure is reported as a registration error."""
        registration.pre_register_device.side_effect = RegistrationError("duplicate device")

        response = api.post("/api/devices", json={"asset_tag": "PB-010", "hub_id": "hub-1"})

        assert response.status_code == 500
        assert response.json()["detail"]["detail"] == "registration"

    def test_unknown_hub_returns_404(self, api, components, registration):
        """Test a hub that has not been created is rejected before the CA is touched."""
        authority, _ = components
        registration.require_hub.side_effect = UnknownHubError("Hub 'hub-9' is not registered")

        response = api.post("/api/devices", json={"asset_tag": "PB-011", "hub_id": "hub-9"})

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "UnknownHubError"
        assert response.json()["detail"]["detail"] == "hub"
        assert not authority.authority_exists()
        registration.ensure_equipment_exists.assert_not_called()


class TestHubsEndpoint:
    """Tests for GET /api/hubs."""

    def test_list_hubs(self, api, registration):
        registration.list_hubs.return_value = [
            Hub(id="hub-1", name="Oslo Central", region_code="NO-03"),
            Hub(id="hub-2", name="Trondheim"),
        ]

        response = api.get("/api/hubs")

        assert response.status_code == 200
        assert response.json() == [
            {"id": "hub-1", "name": "Oslo Central", "region_code": "NO-03"},
            {"id": "hub-2", "name": "Trondheim", "region_code": None},
        ]

    def test_list_hubs_requires_key(self, api):
        response = api.get("/api/hubs", headers={"X-API-Key": "wrong"})
        assert response.status_code == 401


class TestAuthorityEndpoint:
    """Tests for GET /api/authority."""

    def test_authority_not_found_before_bootstrap(self, api):
        """Test 404 when no CA exists yet."""
        response = api.get("/api/authority")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "AuthorityNotBootstrappedError"

    def test_get_authority(self, api, components):
        """Test the CA certificate and metadata are returned."""
        authority, _ = components
        result = authority.ensure_authority()

        response = api.get("/api/authority")

        assert response.status_code == 200
        data = response.json()
        assert data["certificate_pem"] == result.certificate_pem
        assert data["certificate_path"] == "ca://ca-cert.pem"
        assert data["fingerprint"] == compute_fingerprint(result.certificate_pem)
