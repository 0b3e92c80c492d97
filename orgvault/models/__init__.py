"""SQLAlchemy models for orgvault."""

from orgvault.models.audit_logs import AuditAction, AuditLog, AuditOutcome, AuditSeverity
from orgvault.models.encrypted_records import EncryptedRecord, EncryptionMethod
from orgvault.models.organizations import Organization

__all__ = [
    "AuditAction",
    "AuditLog",
    "AuditOutcome",
    "AuditSeverity",
    "EncryptedRecord",
    "EncryptionMethod",
    "Organization",
]
