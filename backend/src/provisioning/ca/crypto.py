"""Cryptographic utilities for certificate operations.

Provides fingerprinting, CA passphrase generation and a prerequisite check
for the OpenSSL backend used by the cryptography library.
"""

import hashlib
import logging
import secrets

from cryptography.hazmat.backends.openssl import backend as openssl_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from cryptography.hazmat.primitives.ciphers import algorithms, modes

from provisioning.ca.errors import PrerequisiteMissingError

logger = logging.getLogger(__name__)

PASSPHRASE_BYTES = 32


def compute_fingerprint(cert_pem: str | bytes) -> str:
    """Compute the SHA-256 fingerprint of PEM-encoded certificate bytes.

    The digest covers the PEM text exactly as stored, so the fingerprint
    identifies the artifact handed to devices and registries.

    Args:
        cert_pem: Certificate in PEM format.

    Returns:
        Lowercase hexadecimal SHA-256 digest.
    """
    if isinstance(cert_pem, str):
        cert_pem = cert_pem.encode("utf-8")
    return hashlib.sha256(cert_pem).hexdigest()


def generate_passphrase() -> str:
    """Generate a random CA passphrase as 64 hex characters."""
    return secrets.token_hex(PASSPHRASE_BYTES)


def check_prerequisites() -> str:
    """Verify the OpenSSL backend supports SHA-256 and AES-256.

    Returns:
        The OpenSSL version text reported by the backend.

    Raises:
        PrerequisiteMissingError: If a required primitive is unsupported.
    """
    if not openssl_backend.hash_supported(hashes.SHA256()):
        raise PrerequisiteMissingError(
            "OpenSSL backend does not support SHA-256", stage="prerequisites"
        )

    aes_256 = algorithms.AES(b"\x00" * 32)
    if not openssl_backend.cipher_supported(aes_256, modes.CBC(b"\x00" * 16)):
        raise PrerequisiteMissingError(
            "OpenSSL backend does not support AES-256-CBC", stage="prerequisites"
        )

    version = openssl_backend.openssl_version_text()
    logger.debug("crypto_prerequisites_ok", extra={"openssl_version": version})
    return version


def same_public_key(first: PublicKeyTypes, second: PublicKeyTypes) -> bool:
    """Compare two public keys by their SubjectPublicKeyInfo encoding."""

    def encode(key: PublicKeyTypes) -> bytes:
        return key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    return encode(first) == encode(second)
