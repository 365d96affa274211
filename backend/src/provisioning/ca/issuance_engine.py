"""X.509 certificate issuance for devices.

Mints one leaf certificate per call, bound to a device identity tuple and
signed by the root CA owned by AuthorityManager.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from opentelemetry import trace

from provisioning.ca.artifact_store import ArtifactStore
from provisioning.ca.authority_manager import AuthorityManager, CAKeyPair
from provisioning.ca.crypto import compute_fingerprint
from provisioning.ca.errors import CryptoOperationError, ProvisioningError, StorageError
from provisioning.ca.identity_claims import (
    DEFAULT_DNS_SUFFIX,
    DeviceIdentity,
    build_subject_alternative_name,
    validate_asset_tag,
    validate_opaque_id,
)
from provisioning.metrics import provisioning_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class IssuedDeviceCertificate:
    """Result of device certificate issuance."""

    device_id: str
    equipment_id: int | str
    fingerprint: str
    certificate_path: str
    private_key_path: str
    certificate_pem: str
    serial_number: str
    not_before: datetime
    not_after: datetime


def device_key_name(asset_tag: str) -> str:
    return f"{asset_tag}-key.pem"


def device_cert_name(asset_tag: str) -> str:
    return f"{asset_tag}-cert.pem"


class IssuanceEngine:
    """Issues device client certificates signed by the CA.

    Certificate attributes:
    - Subject: C/ST/L/O of the CA, CN=<device_id>
    - SAN: urn:device, urn:equipment, urn:hub URIs and <asset_tag>.<dns_suffix>
    - Validity: now() to now() + validity_days
    - Basic Constraints: CA:FALSE
    - Key Usage: Digital Signature, Key Encipherment
    - Extended Key Usage: Client Authentication
    - Key: RSA 2048, stored unencrypted for headless embedding in the device
    """

    DEVICE_KEY_SIZE = 2048
    DEFAULT_VALIDITY_DAYS = 3650

    def __init__(
        self,
        authority: AuthorityManager,
        store: ArtifactStore,
        dns_suffix: str = DEFAULT_DNS_SUFFIX,
        validity_days: int = DEFAULT_VALIDITY_DAYS,
    ) -> None:
        """Initialize engine.

        Args:
            authority: Owner of the CA signing material.
            store: Device-certificates storage root.
            dns_suffix: Domain appended to the asset tag in the DNS claim.
            validity_days: Lifetime of issued certificates.
        """
        self.authority = authority
        self.store = store
        self.dns_suffix = dns_suffix
        self.validity_days = validity_days
        # Serializes CA key use and serial allocation across concurrent callers.
        self._signing_lock = threading.Lock()

    def certificate_path(self, asset_tag: str) -> str:
        return self.store.location(device_cert_name(asset_tag))

    def private_key_path(self, asset_tag: str) -> str:
        return self.store.location(device_key_name(asset_tag))

    def issue_device_certificate(
        self,
        asset_tag: str,
        hub_id: str,
        equipment_id: int | str,
        *,
        overwrite: bool = False,
    ) -> IssuedDeviceCertificate:
        """Generate a key pair and CA-signed certificate for one device.

        Args:
            asset_tag: Operator-assigned label, used verbatim as a DNS label.
            hub_id: Site identifier.
            equipment_id: Inventory identifier resolved by the registration store.
            overwrite: Replace credentials already stored for this asset tag.

        Returns:
            IssuedDeviceCertificate with the new device id and artifact locations.

        Raises:
            InvalidIdentityInputError: If an identifier cannot be encoded in the SAN.
            AuthorityNotBootstrappedError: If no CA exists yet.
            StorageError: If credentials exist for the asset tag or writing fails.
            CryptoOperationError: If the CA key cannot be used or signing fails.
        """
        with tracer.start_as_current_span("IssuanceEngine.issue_device_certificate") as span:
            span.set_attribute("asset_tag", str(asset_tag))
            span.set_attribute("hub_id", str(hub_id))

            start_time = time.time()
            try:
                issued = self._issue(asset_tag, hub_id, equipment_id, overwrite)
            except ProvisioningError as e:
                span.set_attribute("failed_stage", e.stage or "unknown")
                provisioning_metrics.record_issuance_failed(e.stage)
                logger.error(
                    "device_certificate_issuance_failed",
                    extra={"asset_tag": asset_tag, "stage": e.stage, "error": str(e)},
                )
                raise

            duration = time.time() - start_time
            span.set_attribute("device_id", issued.device_id)
            span.set_attribute("serial", issued.serial_number)
            provisioning_metrics.record_certificate_issued(duration)

            logger.info(
                "device_certificate_issued",
                extra={
                    "asset_tag": asset_tag,
                    "device_id": issued.device_id,
                    "equipment_id": str(issued.equipment_id),
                    "serial": issued.serial_number,
                    "fingerprint": issued.fingerprint,
                    "not_after": issued.not_after.isoformat(),
                    "duration_seconds": duration,
                },
            )
            return issued

    def _issue(
        self,
        asset_tag: str,
        hub_id: str,
        equipment_id: int | str,
        overwrite: bool,
    ) -> IssuedDeviceCertificate:
        validate_asset_tag(asset_tag)
        hub_text = validate_opaque_id(hub_id, "hub_id")
        equipment_text = validate_opaque_id(equipment_id, "equipment_id")

        ca = self.authority.load_signing_material()

        key_name = device_key_name(asset_tag)
        cert_name = device_cert_name(asset_tag)
        if not overwrite and (self.store.exists(key_name) or self.store.exists(cert_name)):
            raise StorageError(
                f"Credentials for asset tag {asset_tag} already exist at "
                f"{self.store.location(cert_name)}",
                stage="check_existing",
            )

        identity = DeviceIdentity(
            device_id=str(uuid.uuid4()),
            equipment_id=equipment_text,
            hub_id=hub_text,
            asset_tag=asset_tag,
        )

        try:
            device_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=self.DEVICE_KEY_SIZE,
            )
            csr = self._build_signing_request(identity, device_key)
            certificate = self._sign(csr, ca)

            cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
            key_pem = device_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except ProvisioningError:
            raise
        except Exception as e:
            raise CryptoOperationError(
                f"Failed to sign device certificate: {e}", stage="sign_certificate"
            ) from e

        fingerprint = compute_fingerprint(cert_pem)
        self._persist(key_name, key_pem, cert_name, cert_pem)

        return IssuedDeviceCertificate(
            device_id=identity.device_id,
            equipment_id=equipment_id,
            fingerprint=fingerprint,
            certificate_path=self.store.location(cert_name),
            private_key_path=self.store.location(key_name),
            certificate_pem=cert_pem.decode("utf-8"),
            serial_number=format(certificate.serial_number, "x"),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
        )

    def _build_signing_request(
        self,
        identity: DeviceIdentity,
        device_key: rsa.RSAPrivateKey,
    ) -> x509.CertificateSigningRequest:
        subject = x509.Name(
            self.authority.subject.organization_attributes()
            + [x509.NameAttribute(NameOID.COMMON_NAME, identity.device_id)]
        )

        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(subject)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                build_subject_alternative_name(identity, self.dns_suffix),
                critical=False,
            )
            .sign(device_key, hashes.SHA256())
        )

        if not csr.is_signature_valid:
            raise CryptoOperationError(
                "Device signing request failed its self-signature check", stage="build_request"
            )
        return csr

    def _sign(self, csr: x509.CertificateSigningRequest, ca: CAKeyPair) -> x509.Certificate:
        now = datetime.now(timezone.utc)

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca.certificate.subject)
            .public_key(csr.public_key())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=self.validity_days))
        )
        for extension in csr.extensions:
            builder = builder.add_extension(extension.value, critical=extension.critical)

        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),
            critical=False,
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.certificate.public_key()),
            critical=False,
        )

        with self._signing_lock:
            # Serial is a random positive 159-bit integer
            builder = builder.serial_number(x509.random_serial_number())
            return builder.sign(ca.private_key, hashes.SHA256())

    def _persist(self, key_name: str, key_pem: bytes, cert_name: str, cert_pem: bytes) -> None:
        """Write key then certificate; on failure put the previous pair back."""
        secret_flags = {key_name: True, cert_name: False}
        previous = {
            name: self.store.read_bytes(name) for name in secret_flags if self.store.exists(name)
        }

        written: list[str] = []
        try:
            self.store.write_bytes(key_name, key_pem, secret=True)
            written.append(key_name)
            self.store.write_bytes(cert_name, cert_pem)
            written.append(cert_name)
        except Exception as e:
            self._restore(written, previous, secret_flags)
            if isinstance(e, ProvisioningError):
                raise
            raise StorageError(
                f"Failed to write device credentials: {e}", stage="write_device_credentials"
            ) from e

    def _restore(
        self,
        written: list[str],
        previous: dict[str, bytes],
        secret_flags: dict[str, bool],
    ) -> None:
        # Key and certificate must stay a matching pair: the old one or none at all.
        for name in secret_flags:
            try:
                if name in previous:
                    if name in written or not self.store.exists(name):
                        self.store.write_bytes(name, previous[name], secret=secret_flags[name])
                else:
                    self.store.delete(name)
            except StorageError as e:
                logger.error(
                    "device_credentials_cleanup_failed",
                    extra={"artifact": self.store.location(name), "error": str(e)},
                )

