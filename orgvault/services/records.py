"""Encrypted record lifecycle: create, read, update, delete, reassign, cleanup.

Application callers only ever see plaintext or ``EncryptedDataAccessError``;
the underlying encryption error is logged and chained, never surfaced.
"""

import hmac
import json
import logging
from typing import Any, Dict, Optional, Union
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orgvault.exceptions import (
    EncryptedDataAccessError,
    EncryptionError,
    OrganizationInactiveError,
)
from orgvault.models.audit_logs import AuditAction, AuditOutcome, AuditSeverity
from orgvault.models.encrypted_records import EncryptedRecord, EncryptionMethod
from orgvault.models.organizations import Organization
from orgvault.services.audit import AuditEvent
from orgvault.services.encryption_gateway import EncryptedPayload, EncryptionGateway
from orgvault.services.key_context import DataType, KeyContext

logger = logging.getLogger(__name__)


def _as_uuid(record_id: Union[str, UUID]) -> Optional[UUID]:
    if isinstance(record_id, UUID):
        return record_id
    try:
        return UUID(str(record_id))
    except ValueError:
        return None


async def ensure_org_accepts_writes(db: AsyncSession, org_id: Optional[str]) -> None:
    """
    Refuse writes for missing, deactivated or deleted organizations.

    Organizations unknown to the local table are accepted; the KMS is the
    authority on whether the org id itself exists.
    """
    if not org_id:
        raise OrganizationInactiveError(
            "Record has no organization; it cannot be encrypted with an org-scoped key"
        )
    org = await db.get(Organization, org_id)
    if org is not None and not org.accepts_writes:
        raise OrganizationInactiveError(
            f"Organization {org_id} is inactive or deleted", org_id=org_id
        )


async def _encrypt_metadata(
    gateway: EncryptionGateway,
    org_id: str,
    metadata: Optional[Dict[str, Any]],
    context: KeyContext,
) -> Optional[EncryptedPayload]:
    if metadata is None:
        return None
    return await gateway.write(org_id, json.dumps(metadata, sort_keys=True), context)


def _apply_metadata(record: EncryptedRecord, payload: Optional[EncryptedPayload]) -> None:
    record.encrypted_metadata = payload.encrypted_content if payload else None
    record.vault_encrypted_metadata = payload.vault_encrypted_content if payload else None


def _metadata_fields(record: EncryptedRecord) -> EncryptedPayload:
    """The metadata columns viewed as a payload under the record's method."""
    return EncryptedPayload(
        org_id=record.org_id,
        data_type=record.data_type,
        encrypted_content=record.encrypted_metadata,
        vault_encrypted_content=record.vault_encrypted_metadata,
        encryption_method=record.encryption_method,
    )


def has_metadata(record: EncryptedRecord) -> bool:
    return record.encrypted_metadata is not None or record.vault_encrypted_metadata is not None


async def get_record(db: AsyncSession, record_id: Union[str, UUID]) -> Optional[EncryptedRecord]:
    record_uuid = _as_uuid(record_id)
    if record_uuid is None:
        return None
    return await db.get(EncryptedRecord, record_uuid)


async def create_record(
    db: AsyncSession,
    gateway: EncryptionGateway,
    org_id: str,
    subject_id: str,
    data_type: Union[DataType, str],
    content: Union[str, bytes],
    metadata: Optional[Dict[str, Any]] = None,
) -> EncryptedRecord:
    """
    Encrypt ``content`` and add a new record for ``org_id``.

    ``metadata``, when given, is serialized to JSON and encrypted with the
    same key context, so it follows the record through every phase of the
    migration.
    """
    await ensure_org_accepts_writes(db, org_id)

    record_id = uuid4()
    context = KeyContext.build(org_id, subject_id, data_type, record_id)
    payload = await gateway.write(org_id, content, context)
    metadata_payload = await _encrypt_metadata(gateway, org_id, metadata, context)

    record = EncryptedRecord(
        id=record_id,
        org_id=org_id,
        subject_id=str(subject_id),
        data_type=context.data_type.value,
        encrypted_content=payload.encrypted_content,
        vault_encrypted_content=payload.vault_encrypted_content,
        encryption_method=payload.encryption_method,
        version=1,
    )
    _apply_metadata(record, metadata_payload)
    db.add(record)
    await db.flush()

    logger.info(
        f"Created encrypted record {record.id} for org {org_id} "
        f"({context.data_type.value}, {payload.encryption_method})"
    )
    return record


async def read_record(
    db: AsyncSession,
    gateway: EncryptionGateway,
    record_id: Union[str, UUID],
    subject_id: str,
) -> Optional[str]:
    """Decrypt a record to text. Returns None if the record does not exist."""
    record = await get_record(db, record_id)
    if record is None:
        return None

    try:
        context = KeyContext.build(record.org_id, subject_id, record.data_type, record.id)
        plaintext = await gateway.read(record, context)
    except EncryptionError as e:
        logger.error(f"Could not decrypt record {record.id}: {type(e).__name__}")
        raise EncryptedDataAccessError() from e
    return plaintext.decode("utf-8")


async def _read_metadata(
    gateway: EncryptionGateway, record: EncryptedRecord, subject_id: str
) -> Optional[Dict[str, Any]]:
    if not has_metadata(record):
        return None
    try:
        context = KeyContext.build(record.org_id, subject_id, record.data_type, record.id)
        plaintext = await gateway.read(_metadata_fields(record), context)
    except EncryptionError as e:
        logger.error(f"Could not decrypt metadata of record {record.id}: {type(e).__name__}")
        raise EncryptedDataAccessError() from e
    return json.loads(plaintext)


async def read_record_metadata(
    db: AsyncSession,
    gateway: EncryptionGateway,
    record_id: Union[str, UUID],
    subject_id: str,
) -> Optional[Dict[str, Any]]:
    """Decrypt a record's metadata. Returns None if there is no record or no metadata."""
    record = await get_record(db, record_id)
    if record is None:
        return None
    return await _read_metadata(gateway, record, subject_id)


async def update_record(
    db: AsyncSession,
    gateway: EncryptionGateway,
    record_id: Union[str, UUID],
    subject_id: str,
    content: Union[str, bytes],
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[EncryptedRecord]:
    """
    Re-encrypt a record's content under its own org and bump its version.

    Without new ``metadata`` the existing metadata is re-encrypted as well,
    so its columns always match the record's encryption method.
    """
    record = await get_record(db, record_id)
    if record is None:
        return None

    await ensure_org_accepts_writes(db, record.org_id)
    if metadata is None:
        metadata = await _read_metadata(gateway, record, subject_id)
    context = KeyContext.build(record.org_id, subject_id, record.data_type, record.id)
    payload = await gateway.write(record.org_id, content, context)
    metadata_payload = await _encrypt_metadata(gateway, record.org_id, metadata, context)

    # Both columns are replaced so no stale ciphertext of old content survives
    record.encrypted_content = payload.encrypted_content
    record.vault_encrypted_content = payload.vault_encrypted_content
    record.encryption_method = payload.encryption_method
    _apply_metadata(record, metadata_payload)
    record.version += 1
    await db.flush()

    logger.info(f"Updated encrypted record {record.id} to version {record.version}")
    return record


async def delete_record(
    db: AsyncSession,
    gateway: EncryptionGateway,
    record_id: Union[str, UUID],
    subject_id: str,
) -> bool:
    """Delete the whole row; records are never partially deleted."""
    record = await get_record(db, record_id)
    if record is None:
        return False

    await db.delete(record)
    await db.flush()

    await gateway.audit_sink.publish(
        AuditEvent(
            action=AuditAction.RECORD_DELETED,
            outcome=AuditOutcome.SUCCESS,
            org_id=record.org_id,
            data_type=record.data_type,
            method=record.encryption_method,
            duration_ms=0.0,
            subject_id=str(subject_id),
            record_id=str(record.id),
        )
    )
    logger.info(f"Deleted encrypted record {record.id} by {subject_id}")
    return True


async def reassign_organization(
    db: AsyncSession,
    gateway: EncryptionGateway,
    record_id: Union[str, UUID],
    new_org_id: str,
    subject_id: str,
) -> Optional[EncryptedRecord]:
    """
    Move a record to another organization.

    ``org_id`` is immutable, so the content is decrypted under the old org,
    encrypted into a new row under the new org's key, and the old row deleted
    in the same transaction.
    """
    record = await get_record(db, record_id)
    if record is None:
        return None
    if record.org_id == new_org_id:
        return record

    plaintext = await read_record(db, gateway, record.id, subject_id)
    metadata = await _read_metadata(gateway, record, subject_id)
    new_record = await create_record(
        db, gateway, new_org_id, record.subject_id, record.data_type, plaintext, metadata
    )
    old_org_id = record.org_id
    await db.delete(record)
    await db.flush()

    await gateway.audit_sink.publish(
        AuditEvent(
            action=AuditAction.RECORD_REASSIGNED,
            outcome=AuditOutcome.SUCCESS,
            org_id=new_org_id,
            data_type=new_record.data_type,
            method=new_record.encryption_method,
            duration_ms=0.0,
            subject_id=str(subject_id),
            record_id=str(new_record.id),
            details={"previous_org_id": old_org_id, "previous_record_id": str(record.id)},
        )
    )
    logger.info(f"Reassigned record {record.id} from {old_org_id} to {new_org_id} as {new_record.id}")
    return new_record


async def cleanup_legacy_ciphertext(
    db: AsyncSession,
    gateway: EncryptionGateway,
    limit: int = 100,
    org_id: Optional[str] = None,
) -> int:
    """
    Explicit cleanup phase: drop legacy ciphertexts of migrated records.

    A legacy column is only cleared after the KMS ciphertext has been
    decrypted and matched against it, and only while the row is unchanged.
    """
    stmt = select(EncryptedRecord).where(
        EncryptedRecord.encryption_method == EncryptionMethod.KMS.value,
        EncryptedRecord.vault_encrypted_content.isnot(None),
        EncryptedRecord.encrypted_content.isnot(None),
    )
    if org_id:
        stmt = stmt.where(EncryptedRecord.org_id == org_id)
    stmt = stmt.order_by(EncryptedRecord.created_at, EncryptedRecord.id).limit(limit)
    records = list((await db.execute(stmt)).scalars().all())

    cleaned = 0
    for record in records:
        context = KeyContext.build(
            record.org_id, "system:legacy-cleanup", record.data_type, record.id
        )
        if record.encrypted_metadata is not None and record.vault_encrypted_metadata is None:
            logger.error(f"Keeping legacy ciphertext of {record.id}: metadata was never migrated")
            continue
        pairs = [(record.vault_encrypted_content, record.encrypted_content)]
        if record.encrypted_metadata is not None:
            pairs.append((record.vault_encrypted_metadata, record.encrypted_metadata))
        try:
            matches = [
                hmac.compare_digest(
                    await gateway.kms_decrypt(record.org_id, vault_ciphertext, context),
                    gateway.legacy_decrypt(legacy_ciphertext),
                )
                for vault_ciphertext, legacy_ciphertext in pairs
            ]
        except EncryptionError as e:
            logger.warning(f"Keeping legacy ciphertext of {record.id}: {type(e).__name__}")
            continue
        if not all(matches):
            logger.error(f"Keeping legacy ciphertext of {record.id}: KMS and legacy content differ")
            continue

        result = await db.execute(
            update(EncryptedRecord)
            .where(
                EncryptedRecord.id == record.id,
                EncryptedRecord.version == record.version,
                EncryptedRecord.encryption_method == EncryptionMethod.KMS.value,
            )
            .values(encrypted_content=None, encrypted_metadata=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            cleaned += 1
            await gateway.audit_sink.publish(
                AuditEvent(
                    action=AuditAction.LEGACY_CLEANUP,
                    outcome=AuditOutcome.SUCCESS,
                    severity=AuditSeverity.INFO,
                    org_id=record.org_id,
                    data_type=record.data_type,
                    method=EncryptionMethod.KMS.value,
                    duration_ms=0.0,
                    subject_id="system:legacy-cleanup",
                    record_id=str(record.id),
                )
            )

    await db.flush()
    logger.info(f"Legacy cleanup cleared {cleaned} of {len(records)} migrated records")
    return cleaned


async def get_migration_status(db: AsyncSession, org_id: Optional[str] = None) -> Dict[str, int]:
    """Count records per encryption method, plus legacy ciphertexts still kept."""
    stmt = select(EncryptedRecord.encryption_method, func.count(EncryptedRecord.id)).group_by(
        EncryptedRecord.encryption_method
    )
    retained_stmt = select(func.count(EncryptedRecord.id)).where(
        EncryptedRecord.encryption_method == EncryptionMethod.KMS.value,
        EncryptedRecord.encrypted_content.isnot(None),
    )
    if org_id:
        stmt = stmt.where(EncryptedRecord.org_id == org_id)
        retained_stmt = retained_stmt.where(EncryptedRecord.org_id == org_id)

    counts = {method.value: 0 for method in EncryptionMethod}
    for method, count in (await db.execute(stmt)).all():
        counts[method] = count
    counts["total"] = sum(counts[method.value] for method in EncryptionMethod)
    counts["kms_with_legacy_copy"] = (await db.execute(retained_stmt)).scalar() or 0
    return counts
