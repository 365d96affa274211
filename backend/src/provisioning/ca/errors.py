"""Error kinds raised by the certificate authority components.

Every error records the stage that failed so callers can report a precise
operator-facing message.
"""


class ProvisioningError(Exception):
    """Base class for provisioning failures."""

    def __init__(self, message: str, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class PrerequisiteMissingError(ProvisioningError):
    """Raised when required cryptographic support is unavailable."""

    pass


class StorageError(ProvisioningError):
    """Raised when an artifact cannot be read, written or protected."""

    pass


class AuthorityNotBootstrappedError(ProvisioningError):
    """Raised when the CA is needed but has not been created yet."""

    pass


class CryptoOperationError(ProvisioningError):
    """Raised when key generation, signing or decryption fails."""

    pass


class InvalidIdentityInputError(ProvisioningError):
    """Raised when identity input would produce an invalid certificate."""

    pass
