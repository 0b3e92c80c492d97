"""Legacy-to-KMS migration batch processor.

Each selected record walks an explicit state machine:

    legacy -> reencrypting -> verifying -> kms
                  |               |
                  +---> legacy <--+   (any failure)

A record is only flipped to ``kms`` after its new ciphertext round-trips to
the original plaintext, and the flip is a conditional update on
``encryption_method = 'legacy'`` so concurrent runners never double-migrate.
State is re-derived from the database on every run, which makes the job
crash-safe and idempotent.
"""

import asyncio
import hmac
import logging
import random
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgvault.config import Settings
from orgvault.exceptions import KmsUnavailableError, MigrationVerifyError
from orgvault.middleware.metrics import record_migration_outcome
from orgvault.models.audit_logs import AuditAction, AuditOutcome, AuditSeverity
from orgvault.models.encrypted_records import EncryptedRecord, EncryptionMethod
from orgvault.models.organizations import Organization
from orgvault.services.audit import AuditEvent
from orgvault.services.encryption_gateway import EncryptionGateway
from orgvault.services.key_context import KeyContext

logger = logging.getLogger(__name__)


class RecordState(str, Enum):
    """Per-record migration states."""

    LEGACY = "legacy"
    REENCRYPTING = "reencrypting"
    VERIFYING = "verifying"
    KMS = "kms"


ALLOWED_TRANSITIONS = {
    RecordState.LEGACY: {RecordState.REENCRYPTING},
    RecordState.REENCRYPTING: {RecordState.VERIFYING, RecordState.LEGACY},
    RecordState.VERIFYING: {RecordState.KMS, RecordState.LEGACY},
    RecordState.KMS: set(),
}


class RecordOutcome(str, Enum):
    MIGRATED = "migrated"
    FAILED = "failed"
    SKIPPED = "skipped"  # inactive org, or another runner flipped it first
    NOT_STARTED = "not_started"  # batch was stopped before reaching it


@dataclass(frozen=True)
class LegacyRecordSnapshot:
    """Immutable copy of the columns the migration needs from one row."""

    id: uuid.UUID
    org_id: str
    subject_id: str
    data_type: str
    encrypted_content: Optional[str]
    version: int
    encrypted_metadata: Optional[str] = None


@dataclass
class RecordMigration:
    """State machine for a single record within one run."""

    record: LegacyRecordSnapshot
    state: RecordState = RecordState.LEGACY
    outcome: Optional[RecordOutcome] = None
    error: Optional[str] = None
    lost_race: bool = False
    history: List[RecordState] = field(default_factory=lambda: [RecordState.LEGACY])

    def remains_legacy(self, dry_run: bool) -> bool:
        """Whether the row is still in the legacy selection after this run."""
        return dry_run or (self.state == RecordState.LEGACY and not self.lost_race)

    def transition(self, new_state: RecordState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal migration transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: Exception) -> None:
        if self.state != RecordState.LEGACY:
            self.transition(RecordState.LEGACY)
        self.outcome = RecordOutcome.FAILED
        self.error = type(error).__name__


@dataclass
class BatchResult:
    """Summary of one ``run_batch`` (or an aggregated ``run_all``)."""

    offset: int
    limit: int
    dry_run: bool
    total: int = 0
    processed: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    not_started: int = 0  # stopped before the record was reached
    retained: int = 0  # records still at legacy afterwards
    interrupted: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.interrupted

    def add(self, migration: RecordMigration) -> None:
        outcome = migration.outcome
        if outcome == RecordOutcome.NOT_STARTED:
            self.not_started += 1
        elif outcome == RecordOutcome.MIGRATED:
            self.migrated += 1
        elif outcome == RecordOutcome.FAILED:
            self.failed += 1
            self.failures.append(
                {"record_id": str(migration.record.id), "error": migration.error or "unknown"}
            )
        else:
            self.skipped += 1
        if outcome != RecordOutcome.NOT_STARTED:
            self.processed += 1
        if migration.remains_legacy(self.dry_run):
            self.retained += 1

    def merge(self, other: "BatchResult") -> None:
        self.limit += other.limit
        self.total += other.total
        self.processed += other.processed
        self.migrated += other.migrated
        self.failed += other.failed
        self.skipped += other.skipped
        self.not_started += other.not_started
        self.retained += other.retained
        self.interrupted = self.interrupted or other.interrupted
        self.failures.extend(other.failures)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["ok"] = self.ok
        return data


class MigrationProcessor:
    """
    Re-encrypts legacy records through the KMS.

    Records within a batch are processed with bounded concurrency. Transient
    KMS failures are retried with exponential backoff and full jitter; every
    KMS call is bounded by a per-call timeout. A single record's failure is
    counted and the batch carries on.
    """

    def __init__(
        self,
        gateway: EncryptionGateway,
        session_factory: async_sessionmaker[AsyncSession],
        concurrency: int = 5,
        max_retries: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        call_timeout: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._gateway = gateway
        self._session_factory = session_factory
        self._concurrency = concurrency
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._call_timeout = call_timeout
        self._sleep = sleep
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        gateway: EncryptionGateway,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> "MigrationProcessor":
        return cls(
            gateway,
            session_factory,
            concurrency=settings.MIGRATION_CONCURRENCY,
            max_retries=settings.KMS_MAX_RETRIES,
            base_delay=settings.KMS_RETRY_BASE_DELAY,
            max_delay=settings.KMS_RETRY_MAX_DELAY,
            call_timeout=settings.KMS_TIMEOUT_SECONDS,
        )

    def stop(self) -> None:
        """Stop picking up new records; in-flight records finish."""
        if not self._stop.is_set():
            logger.warning("Migration stop requested, finishing in-flight records")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run_batch(
        self,
        offset: int = 0,
        limit: int = 100,
        dry_run: bool = False,
        org_id: Optional[str] = None,
    ) -> BatchResult:
        """Migrate legacy records in ``[offset, offset + limit)`` ordered by creation time."""
        if offset < 0 or limit < 1:
            raise ValueError("offset must be >= 0 and limit >= 1")

        result = BatchResult(offset=offset, limit=limit, dry_run=dry_run)
        records, inactive_orgs = await self._select_batch(offset, limit, org_id)
        result.total = len(records)

        logger.info(
            f"Migration batch offset={offset} limit={limit} dry_run={dry_run}"
            f"{f' org={org_id}' if org_id else ''}: {len(records)} legacy records selected"
        )

        semaphore = asyncio.Semaphore(self._concurrency)

        async def worker(snapshot: LegacyRecordSnapshot) -> RecordMigration:
            async with semaphore:
                migration = RecordMigration(snapshot)
                if self._stop.is_set():
                    migration.outcome = RecordOutcome.NOT_STARTED
                    return migration
                await self._migrate_record(migration, dry_run, inactive_orgs)
                return migration

        migrations = await asyncio.gather(*(worker(snapshot) for snapshot in records))
        for migration in migrations:
            result.add(migration)

        result.interrupted = result.not_started > 0
        result.finished_at = datetime.now(timezone.utc)

        record_migration_outcome(RecordOutcome.MIGRATED.value, 0 if dry_run else result.migrated)
        record_migration_outcome(RecordOutcome.FAILED.value, result.failed)
        record_migration_outcome(RecordOutcome.SKIPPED.value, result.skipped)

        log = logger.warning if result.failed or result.interrupted else logger.info
        log(
            f"Migration batch offset={offset} finished: total={result.total} "
            f"migrated={result.migrated} failed={result.failed} skipped={result.skipped}"
            f" not_started={result.not_started}"
            f"{' (dry run)' if dry_run else ''}{' (interrupted)' if result.interrupted else ''}"
        )
        return result

    async def run_all(
        self,
        batch_size: int = 100,
        dry_run: bool = False,
        org_id: Optional[str] = None,
        offset: int = 0,
    ) -> BatchResult:
        """
        Run batches until the legacy selection is exhausted.

        Migrated rows drop out of the legacy selection, so the offset only
        advances past rows that stayed at legacy (failures, skips, dry runs).
        """
        summary = BatchResult(offset=offset, limit=0, dry_run=dry_run)
        while not self._stop.is_set():
            result = await self.run_batch(offset, batch_size, dry_run, org_id)
            summary.merge(result)
            if result.total < batch_size or result.interrupted:
                break
            offset += result.retained
        summary.finished_at = datetime.now(timezone.utc)
        return summary

    async def _select_batch(
        self,
        offset: int,
        limit: int,
        org_id: Optional[str],
    ) -> tuple[List[LegacyRecordSnapshot], Set[str]]:
        stmt = select(
            EncryptedRecord.id,
            EncryptedRecord.org_id,
            EncryptedRecord.subject_id,
            EncryptedRecord.data_type,
            EncryptedRecord.encrypted_content,
            EncryptedRecord.version,
            EncryptedRecord.encrypted_metadata,
        ).where(EncryptedRecord.encryption_method == EncryptionMethod.LEGACY.value)
        if org_id:
            stmt = stmt.where(EncryptedRecord.org_id == org_id)
        stmt = stmt.order_by(EncryptedRecord.created_at, EncryptedRecord.id).offset(offset).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
            records = [LegacyRecordSnapshot(*row) for row in rows]

            inactive: Set[str] = set()
            org_ids = {record.org_id for record in records}
            if org_ids:
                org_stmt = select(Organization.id).where(
                    Organization.id.in_(org_ids),
                    or_(Organization.is_active.is_(False), Organization.deleted_at.isnot(None)),
                )
                inactive = set((await session.execute(org_stmt)).scalars().all())

        return records, inactive

    async def _migrate_record(
        self,
        migration: RecordMigration,
        dry_run: bool,
        inactive_orgs: Set[str],
    ) -> None:
        record = migration.record
        start = time.perf_counter()

        if record.org_id in inactive_orgs:
            migration.outcome = RecordOutcome.SKIPPED
            logger.info(f"Skipping record {record.id}: organization {record.org_id} is inactive")
            await self._audit(migration, AuditOutcome.SKIPPED, start, dry_run)
            return

        try:
            context = KeyContext.build(
                org_id=record.org_id,
                subject_id=record.subject_id,
                data_type=record.data_type,
                record_id=record.id,
            )
            plaintexts = [self._gateway.legacy_decrypt(record.encrypted_content)]
            if record.encrypted_metadata is not None:
                plaintexts.append(self._gateway.legacy_decrypt(record.encrypted_metadata))

            migration.transition(RecordState.REENCRYPTING)
            vault_ciphertexts = [
                await self._call_kms(self._gateway.kms_encrypt, record.org_id, plaintext, context)
                for plaintext in plaintexts
            ]

            migration.transition(RecordState.VERIFYING)
            for plaintext, vault_ciphertext in zip(plaintexts, vault_ciphertexts):
                round_trip = await self._call_kms(
                    self._gateway.kms_decrypt, record.org_id, vault_ciphertext, context
                )
                if not hmac.compare_digest(round_trip, plaintext):
                    raise MigrationVerifyError(
                        "Re-encrypted record did not round-trip to the original plaintext",
                        org_id=record.org_id,
                        data_type=record.data_type,
                    )

            if dry_run:
                migration.outcome = RecordOutcome.MIGRATED
                await self._audit(migration, AuditOutcome.DRY_RUN, start, dry_run)
                return

            vault_metadata = vault_ciphertexts[1] if len(vault_ciphertexts) > 1 else None
            if not await self._persist(record, vault_ciphertexts[0], vault_metadata):
                migration.transition(RecordState.LEGACY)
                migration.outcome = RecordOutcome.SKIPPED
                migration.lost_race = True
                logger.info(f"Record {record.id} changed or was migrated concurrently, skipping")
                await self._audit(migration, AuditOutcome.SKIPPED, start, dry_run)
                return

            migration.transition(RecordState.KMS)
            migration.outcome = RecordOutcome.MIGRATED
            await self._audit(migration, AuditOutcome.SUCCESS, start, dry_run)

        except Exception as e:
            failed_in = migration.state
            migration.fail(e)
            logger.error(
                f"Migration of record {record.id} (org {record.org_id}) failed "
                f"while {failed_in.value}: {type(e).__name__}: {e}"
            )
            await self._audit(
                migration,
                AuditOutcome.FAILURE,
                start,
                dry_run,
                severity=AuditSeverity.ERROR,
                details={"failed_state": failed_in.value},
            )

    async def _call_kms(self, func, *args):
        """Call the KMS with a per-call timeout, retrying transient failures."""
        attempt = 0
        while True:
            try:
                try:
                    return await asyncio.wait_for(func(*args), timeout=self._call_timeout)
                except asyncio.TimeoutError as e:
                    raise KmsUnavailableError(
                        f"KMS call exceeded {self._call_timeout}s timeout"
                    ) from e
            except KmsUnavailableError:
                attempt += 1
                if attempt > self._max_retries or self._stop.is_set():
                    raise
                delay = random.uniform(
                    0, min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
                )
                logger.warning(
                    f"KMS unavailable (attempt {attempt}/{self._max_retries}), "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

    async def _persist(
        self,
        record: LegacyRecordSnapshot,
        vault_ciphertext: str,
        vault_metadata: Optional[str] = None,
    ) -> bool:
        """Flip a record to kms only if it is still the legacy row we read."""
        stmt = (
            update(EncryptedRecord)
            .where(
                EncryptedRecord.id == record.id,
                EncryptedRecord.encryption_method == EncryptionMethod.LEGACY.value,
                EncryptedRecord.version == record.version,
            )
            .values(
                vault_encrypted_content=vault_ciphertext,
                vault_encrypted_metadata=vault_metadata,
                encryption_method=EncryptionMethod.KMS.value,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def _audit(
        self,
        migration: RecordMigration,
        outcome: AuditOutcome,
        start: float,
        dry_run: bool,
        severity: AuditSeverity = AuditSeverity.INFO,
        details: Optional[dict] = None,
    ) -> None:
        record = migration.record
        await self._gateway.audit_sink.publish(
            AuditEvent(
                action=AuditAction.MIGRATE,
                outcome=outcome,
                severity=severity,
                org_id=record.org_id,
                data_type=record.data_type,
                subject_id=record.subject_id,
                record_id=str(record.id),
                method=EncryptionMethod.KMS.value,
                duration_ms=(time.perf_counter() - start) * 1000,
                details={
                    "dry_run": dry_run,
                    "states": [state.value for state in migration.history],
                    **(details or {}),
                },
            )
        )
