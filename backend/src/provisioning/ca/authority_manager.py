"""Root CA lifecycle: existence check, one-time bootstrap and metadata.

The CA is created lazily on the first provisioning run and never regenerated
afterwards. Its presence is decided solely by the certificate artifact, which
is written last during bootstrap.

Stored artifacts:
- ca-cert.pem      self-signed certificate (public)
- ca-key.pem       PKCS#8 private key, AES-256 encrypted with the passphrase
- ca-password.txt  passphrase, owner read/write only
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509.oid import NameOID
from opentelemetry import trace

from provisioning.ca.artifact_store import ArtifactStore, FileArtifactStore
from provisioning.ca.crypto import (
    check_prerequisites,
    compute_fingerprint,
    generate_passphrase,
    same_public_key,
)
from provisioning.ca.errors import (
    AuthorityNotBootstrappedError,
    CryptoOperationError,
    ProvisioningError,
    StorageError,
)
from provisioning.metrics import provisioning_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CA_CERT_NAME = "ca-cert.pem"
CA_KEY_NAME = "ca-key.pem"
CA_PASSPHRASE_NAME = "ca-password.txt"


@dataclass(frozen=True)
class AuthoritySubject:
    """Distinguished name attributes of the root CA."""

    country: str = "NL"
    state: str = "Noord-Holland"
    locality: str = "Amsterdam"
    organization: str = "Poem Booth"
    common_name: str = "Poem Booth Root CA"

    def organization_attributes(self) -> list[x509.NameAttribute]:
        """Attributes shared by the CA and the devices it signs."""
        return [
            x509.NameAttribute(NameOID.COUNTRY_NAME, self.country),
            x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, self.state),
            x509.NameAttribute(NameOID.LOCALITY_NAME, self.locality),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
        ]

    def to_name(self) -> x509.Name:
        return x509.Name(
            self.organization_attributes()
            + [x509.NameAttribute(NameOID.COMMON_NAME, self.common_name)]
        )


@dataclass
class CAKeyPair:
    """Holds CA private key and certificate."""

    private_key: PrivateKeyTypes
    certificate: x509.Certificate

    @property
    def certificate_pem(self) -> str:
        """Get CA certificate as PEM string."""
        return self.certificate.public_bytes(serialization.Encoding.PEM).decode("utf-8")


@dataclass(frozen=True)
class AuthorityBootstrapResult:
    """Outcome of ensure_authority()."""

    certificate_pem: str
    is_new: bool


@dataclass(frozen=True)
class AuthorityInfo:
    """Trust-anchor metadata of the stored CA certificate."""

    fingerprint: str
    not_before: datetime
    not_after: datetime


class AuthorityManager:
    """Owns the root CA key and certificate.

    Bootstrap writes the key, then the passphrase, then the certificate, each
    atomically, and validates the written artifacts before returning. A crash
    before the certificate lands leaves no certificate, so the next run
    bootstraps again instead of trusting a half-written CA.
    """

    RSA_KEY_SIZE = 4096
    VALIDITY_DAYS = 3650

    def __init__(
        self,
        store: ArtifactStore,
        subject: AuthoritySubject | None = None,
        key_size: int = RSA_KEY_SIZE,
        validity_days: int = VALIDITY_DAYS,
    ) -> None:
        """Initialize manager over an authority storage root.

        Args:
            store: Where the CA key, certificate and passphrase live.
            subject: Distinguished name of the CA.
            key_size: RSA modulus size of the CA key.
            validity_days: Lifetime of the self-signed certificate.
        """
        self.store = store
        self.subject = subject or AuthoritySubject()
        self.key_size = key_size
        self.validity_days = validity_days
        self._lock = threading.Lock()

    @classmethod
    def from_directory(cls, path: str | Path, **kwargs) -> "AuthorityManager":
        return cls(FileArtifactStore(path), **kwargs)

    def validate_prerequisites(self) -> str:
        """Check crypto support and that the storage root is writable.

        Returns:
            OpenSSL version text.
        """
        version = check_prerequisites()
        self.store.ensure_ready()
        return version

    def authority_exists(self) -> bool:
        return self.store.exists(CA_CERT_NAME)

    def ensure_authority(self) -> AuthorityBootstrapResult:
        """Return the CA certificate, creating the CA on first use.

        Calling this again after a successful bootstrap performs no writes and
        returns the same certificate bytes.

        Raises:
            StorageError: If the storage root is unusable.
            CryptoOperationError: If key or certificate generation fails.
        """
        with tracer.start_as_current_span("AuthorityManager.ensure_authority") as span:
            with self._lock:
                if self.authority_exists():
                    certificate_pem = self.read_authority_certificate()
                    span.set_attribute("is_new", False)
                    logger.info(
                        "authority_found",
                        extra={"cert_path": self.get_authority_certificate_path()},
                    )
                    provisioning_metrics.record_authority_loaded(is_new=False)
                    return AuthorityBootstrapResult(certificate_pem=certificate_pem, is_new=False)

                certificate_pem = self._bootstrap()
                span.set_attribute("is_new", True)
                provisioning_metrics.record_authority_loaded(is_new=True)
                return AuthorityBootstrapResult(certificate_pem=certificate_pem, is_new=True)

    def _bootstrap(self) -> str:
        self.store.ensure_ready()

        logger.info(
            "authority_bootstrap_started",
            extra={"algorithm": f"RSA-{self.key_size}", "validity_days": self.validity_days},
        )

        passphrase = generate_passphrase()
        try:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
            certificate = self._build_certificate(private_key)
            key_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.BestAvailableEncryption(
                    passphrase.encode("utf-8")
                ),
            )
            cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
        except Exception as e:
            logger.error("authority_generation_failed", extra={"error": str(e)})
            raise CryptoOperationError(
                f"Failed to generate CA key pair: {e}", stage="generate_authority"
            ) from e

        written: list[str] = []
        try:
            self.store.write_bytes(CA_KEY_NAME, key_pem, secret=True)
            written.append(CA_KEY_NAME)
            self.store.write_bytes(CA_PASSPHRASE_NAME, passphrase.encode("utf-8"), secret=True)
            written.append(CA_PASSPHRASE_NAME)
            self._validate_stored_key(certificate)
            self.store.write_bytes(CA_CERT_NAME, cert_pem)
            written.append(CA_CERT_NAME)
            if self.store.read_bytes(CA_CERT_NAME) != cert_pem:
                raise StorageError(
                    "CA certificate read back differs from what was written",
                    stage="persist_authority",
                )
        except Exception as e:
            self._discard(written)
            logger.error("authority_persist_failed", extra={"error": str(e)})
            if isinstance(e, ProvisioningError):
                raise
            raise StorageError(f"Failed to persist CA: {e}", stage="persist_authority") from e

        logger.info(
            "authority_bootstrapped",
            extra={
                "cert_path": self.get_authority_certificate_path(),
                "fingerprint": compute_fingerprint(cert_pem),
                "not_after": certificate.not_valid_after_utc.isoformat(),
            },
        )
        return cert_pem.decode("utf-8")

    def _build_certificate(self, private_key: rsa.RSAPrivateKey) -> x509.Certificate:
        now = datetime.now(timezone.utc)
        subject = issuer = self.subject.to_name()

        return (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=0),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                critical=False,
            )
            .sign(private_key, hashes.SHA256())
        )

    def _validate_stored_key(self, certificate: x509.Certificate) -> None:
        """Re-read the key and passphrase just written and check they open."""
        private_key = self._load_private_key(stage="persist_authority")
        if not same_public_key(private_key.public_key(), certificate.public_key()):
            raise CryptoOperationError(
                "Stored CA key does not match the generated certificate",
                stage="persist_authority",
            )

    def _discard(self, names: list[str]) -> None:
        for name in reversed(names):
            try:
                self.store.delete(name)
            except StorageError as e:
                logger.error(
                    "authority_cleanup_failed",
                    extra={"artifact": self.store.location(name), "error": str(e)},
                )

    def _load_private_key(self, stage: str) -> PrivateKeyTypes:
        for name in (CA_KEY_NAME, CA_PASSPHRASE_NAME):
            if not self.store.exists(name):
                raise StorageError(
                    f"CA artifact {self.store.location(name)} is missing", stage=stage
                )

        key_pem = self.store.read_bytes(CA_KEY_NAME)
        passphrase = self.store.read_bytes(CA_PASSPHRASE_NAME).strip()
        try:
            return serialization.load_pem_private_key(key_pem, password=passphrase)
        except (ValueError, TypeError) as e:
            raise CryptoOperationError(
                f"CA passphrase could not decrypt the stored private key: {e}", stage=stage
            ) from e

    def _require_authority(self) -> None:
        if not self.authority_exists():
            raise AuthorityNotBootstrappedError(
                "No CA has been bootstrapped yet; call ensure_authority() first",
                stage="load_authority",
            )

    def load_signing_material(self) -> CAKeyPair:
        """Load the CA certificate and decrypted private key for signing.

        Raises:
            AuthorityNotBootstrappedError: If no CA certificate exists.
            StorageError: If the key or passphrase artifact is missing.
            CryptoOperationError: If decryption fails or the key does not match.
        """
        self._require_authority()

        try:
            certificate = x509.load_pem_x509_certificate(self.store.read_bytes(CA_CERT_NAME))
        except ValueError as e:
            raise CryptoOperationError(
                f"Stored CA certificate is not valid PEM: {e}", stage="load_authority"
            ) from e

        private_key = self._load_private_key(stage="load_authority")
        if not same_public_key(private_key.public_key(), certificate.public_key()):
            raise CryptoOperationError(
                "Stored CA key does not match the CA certificate", stage="load_authority"
            )

        return CAKeyPair(private_key=private_key, certificate=certificate)

    def get_authority_info(self) -> AuthorityInfo:
        """Fingerprint and validity window of the stored CA certificate."""
        self._require_authority()
        cert_bytes = self.store.read_bytes(CA_CERT_NAME)
        try:
            certificate = x509.load_pem_x509_certificate(cert_bytes)
        except ValueError as e:
            raise CryptoOperationError(
                f"Stored CA certificate is not valid PEM: {e}", stage="authority_info"
            ) from e

        return AuthorityInfo(
            fingerprint=compute_fingerprint(cert_bytes),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
        )

    def get_authority_certificate_path(self) -> str:
        return self.store.location(CA_CERT_NAME)

    def read_authority_certificate(self) -> str:
        self._require_authority()
        return self.store.read_bytes(CA_CERT_NAME).decode("utf-8")
