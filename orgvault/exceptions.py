"""Encryption error taxonomy.

Only ``KmsUnavailableError`` is transient. Every other error is permanent for
the operation that raised it and must reach the caller unchanged.
"""

from typing import Optional


class EncryptionError(Exception):
    """Base class for all encryption-layer failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        org_id: Optional[str] = None,
        data_type: Optional[str] = None,
    ):
        super().__init__(message)
        self.org_id = org_id
        self.data_type = data_type


class KmsUnavailableError(EncryptionError):
    """Transport failure, timeout, 5xx or throttling from the KMS.

    Eligible for retry and for legacy fallback on read.
    """

    retryable = True


class KmsRejectedError(EncryptionError):
    """The KMS refused a malformed request (4xx). Never retried."""


class KeyMismatchError(EncryptionError):
    """Ciphertext does not belong to the supplied org or key context."""


class LegacyDecryptError(EncryptionError):
    """Legacy ciphertext is corrupt or was produced under another secret."""


class MigrationVerifyError(EncryptionError):
    """A re-encrypted record did not round-trip to its original plaintext."""


class MissingCiphertextError(EncryptionError):
    """A record carries no ciphertext usable for its encryption method."""


class OrganizationInactiveError(EncryptionError):
    """Writes are refused for missing, deactivated or deleted organizations."""


class EncryptedDataAccessError(Exception):
    """Generic error surfaced to application callers.

    Deliberately carries no KMS or infrastructure detail.
    """

    def __init__(self, message: str = "Could not access encrypted data"):
        super().__init__(message)
