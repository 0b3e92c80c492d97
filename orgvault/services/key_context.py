"""Org-scoped key context attached to every encrypt/decrypt call."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from orgvault.exceptions import KmsRejectedError

# Organization identifiers as issued by the KMS provider, e.g. org_01H1234567890
ORG_ID_REGEX = re.compile(r"^org_[A-Za-z0-9]{1,64}$")


class DataType(str, Enum):
    """Closed set of data classifications that may be encrypted."""

    MEDICAL_RECORD = "medical_record"
    OAUTH_ACCESS_TOKEN = "oauth_access_token"
    OAUTH_REFRESH_TOKEN = "oauth_refresh_token"


def is_valid_org_id(org_id: Optional[str]) -> bool:
    """Check an org id is non-empty and in the KMS provider's format."""
    return bool(org_id) and ORG_ID_REGEX.match(org_id) is not None


@dataclass(frozen=True)
class KeyContext:
    """
    Classification metadata for one encryption operation.

    ``org_id`` scopes the key; ``data_type`` is bound into the ciphertext so a
    medical record can never be decrypted as an OAuth token. ``subject_id``
    and ``record_id`` exist for the audit trail.
    """

    org_id: str
    subject_id: str
    data_type: DataType
    record_id: Optional[str] = None

    def __post_init__(self):
        if not is_valid_org_id(self.org_id):
            raise KmsRejectedError(f"Invalid organization id: {self.org_id!r}")
        if not self.subject_id:
            raise KmsRejectedError("Key context requires a subject id", org_id=self.org_id)
        try:
            object.__setattr__(self, "data_type", DataType(self.data_type))
        except ValueError:
            raise KmsRejectedError(
                f"Unknown data type: {self.data_type!r}", org_id=self.org_id
            ) from None

    @classmethod
    def build(
        cls,
        org_id: str,
        subject_id: str,
        data_type: Union[DataType, str],
        record_id: Optional[Any] = None,
    ) -> "KeyContext":
        """Build a context, stringifying UUID record ids."""
        return cls(
            org_id=org_id,
            subject_id=str(subject_id),
            data_type=data_type,
            record_id=str(record_id) if record_id is not None else None,
        )

    def to_wire(self, org_id: str) -> Dict[str, str]:
        """KMS ``key_context`` payload; ``org_id`` selects the key."""
        payload = {
            "organization_id": org_id,
            "user_id": self.subject_id,
            "data_type": self.data_type.value,
        }
        if self.record_id:
            payload["record_id"] = self.record_id
        return payload

    def audit_fields(self) -> Dict[str, Optional[str]]:
        return {
            "org_id": self.org_id,
            "subject_id": self.subject_id,
            "data_type": self.data_type.value,
            "record_id": self.record_id,
        }
