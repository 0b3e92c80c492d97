"""Unified encryption gateway used by all application code.

Chooses between the org-scoped KMS and the legacy single-secret cipher based
on a startup toggle, dual-writes during the migration window, and falls back
to the legacy ciphertext on transient KMS failures only.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from orgvault.config import Settings
from orgvault.exceptions import (
    EncryptionError,
    KeyMismatchError,
    KmsUnavailableError,
    MissingCiphertextError,
)
from orgvault.middleware.metrics import record_encryption_operation, record_fallback_read
from orgvault.models.audit_logs import AuditAction, AuditOutcome, AuditSeverity
from orgvault.models.encrypted_records import EncryptionMethod
from orgvault.services.audit import AuditEvent, AuditSink
from orgvault.services.key_context import KeyContext
from orgvault.services.kms_client import KmsClient
from orgvault.services.legacy_cipher import LegacyCipher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayConfig:
    """Deployment-time encryption mode. Changing it requires a restart."""

    kms_enabled: bool = False
    dual_write: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            kms_enabled=settings.KMS_MODE_ENABLED,
            dual_write=settings.KMS_DUAL_WRITE,
        )


class EncryptedFields(Protocol):
    """Anything carrying the encrypted record columns."""

    org_id: str
    data_type: str
    encrypted_content: Optional[str]
    vault_encrypted_content: Optional[str]
    encryption_method: str


@dataclass(frozen=True)
class EncryptedPayload:
    """Column values produced by ``EncryptionGateway.write``."""

    org_id: str
    data_type: str
    encrypted_content: Optional[str]
    vault_encrypted_content: Optional[str]
    encryption_method: str


def _as_bytes(plaintext: Union[bytes, str]) -> bytes:
    if plaintext is None:
        raise TypeError("plaintext must not be None")
    if isinstance(plaintext, str):
        return plaintext.encode("utf-8")
    return bytes(plaintext)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class EncryptionGateway:
    """
    Encrypt and decrypt sensitive records.

    Holds no mutable state: the legacy key is fixed at construction and the KMS
    client is stateless, so instances are safe to share across concurrent
    requests.
    """

    def __init__(
        self,
        kms_client: KmsClient,
        legacy_cipher: LegacyCipher,
        audit_sink: AuditSink,
        config: GatewayConfig,
    ):
        self._kms = kms_client
        self._legacy = legacy_cipher
        self._audit_sink = audit_sink
        self._config = config

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def audit_sink(self) -> AuditSink:
        return self._audit_sink

    @property
    def kms_client(self) -> KmsClient:
        return self._kms

    # --- Primitives shared with the migration processor (not audited) ---

    async def kms_encrypt(self, org_id: str, plaintext: bytes, context: KeyContext) -> str:
        return await self._kms.encrypt(org_id, plaintext, context)

    async def kms_decrypt(self, org_id: str, ciphertext: str, context: KeyContext) -> bytes:
        return await self._kms.decrypt(org_id, ciphertext, context)

    def legacy_encrypt(self, plaintext: bytes) -> str:
        return self._legacy.encrypt(plaintext)

    def legacy_decrypt(self, ciphertext: str) -> bytes:
        return self._legacy.decrypt(ciphertext)

    # --- Application operations ---

    async def write(
        self,
        org_id: str,
        plaintext: Union[bytes, str],
        context: KeyContext,
    ) -> EncryptedPayload:
        """
        Encrypt ``plaintext`` for ``org_id``.

        KMS mode: KMS ciphertext, plus the legacy ciphertext while dual-write is
        on. Otherwise legacy only. Errors propagate; there is no write fallback.
        """
        data = _as_bytes(plaintext)
        start = time.perf_counter()
        method = EncryptionMethod.KMS if self._config.kms_enabled else EncryptionMethod.LEGACY

        try:
            if context.org_id != org_id:
                raise KeyMismatchError(
                    "Key context belongs to a different organization",
                    org_id=org_id,
                    data_type=context.data_type.value,
                )
            vault_ciphertext = None
            legacy_ciphertext = None
            if method == EncryptionMethod.KMS:
                vault_ciphertext = await self._kms.encrypt(org_id, data, context)
                if self._config.dual_write:
                    legacy_ciphertext = self._legacy.encrypt(data)
            else:
                legacy_ciphertext = self._legacy.encrypt(data)
        except EncryptionError as e:
            await self._audit_failure(AuditAction.ENCRYPT, context, method, start, e)
            raise

        await self._audit(
            AuditAction.ENCRYPT,
            context,
            method,
            AuditOutcome.SUCCESS,
            start,
            details={"dual_write": bool(vault_ciphertext and legacy_ciphertext)},
        )
        return EncryptedPayload(
            org_id=org_id,
            data_type=context.data_type.value,
            encrypted_content=legacy_ciphertext,
            vault_encrypted_content=vault_ciphertext,
            encryption_method=method.value,
        )

    async def read(self, record: EncryptedFields, context: KeyContext) -> bytes:
        """
        Decrypt the authoritative ciphertext of ``record``.

        KMS records fall back to the legacy ciphertext only on
        KmsUnavailableError (or a blanked KMS column). Key mismatches and
        rejections always propagate.
        """
        start = time.perf_counter()
        try:
            method = EncryptionMethod(record.encryption_method)
        except ValueError:
            error = EncryptionError(
                f"Unknown encryption method: {record.encryption_method!r}",
                org_id=record.org_id,
            )
            await self._audit_failure(AuditAction.DECRYPT, context, None, start, error)
            raise error from None

        if context.org_id != record.org_id:
            error = KeyMismatchError(
                "Record belongs to a different organization than the key context",
                org_id=context.org_id,
                data_type=context.data_type.value,
            )
            await self._audit_failure(AuditAction.DECRYPT, context, method, start, error)
            raise error

        # data_type binding holds on every path, including legacy and fallback reads
        if record.data_type != context.data_type.value:
            error = KeyMismatchError(
                f"Record holds {record.data_type}, not {context.data_type.value}",
                org_id=context.org_id,
                data_type=context.data_type.value,
            )
            await self._audit_failure(AuditAction.DECRYPT, context, method, start, error)
            raise error

        if method == EncryptionMethod.LEGACY:
            return await self._read_legacy(record, context, start)

        fallback_reason = None
        if record.vault_encrypted_content:
            try:
                plaintext = await self._kms.decrypt(
                    record.org_id, record.vault_encrypted_content, context
                )
            except KmsUnavailableError as e:
                if not record.encrypted_content:
                    await self._audit_failure(AuditAction.DECRYPT, context, method, start, e)
                    raise
                fallback_reason = str(e)
            except EncryptionError as e:
                await self._audit_failure(AuditAction.DECRYPT, context, method, start, e)
                raise
            else:
                await self._audit(
                    AuditAction.DECRYPT, context, method, AuditOutcome.SUCCESS, start
                )
                return plaintext
        elif record.encrypted_content:
            fallback_reason = "KMS ciphertext missing"
        else:
            error = MissingCiphertextError(
                "Record has no ciphertext",
                org_id=record.org_id,
                data_type=context.data_type.value,
            )
            await self._audit_failure(AuditAction.DECRYPT, context, method, start, error)
            raise error

        logger.warning(
            f"KMS decrypt fell back to legacy for org {record.org_id} "
            f"({context.data_type.value}, record {context.record_id}): {fallback_reason}"
        )
        try:
            plaintext = self._legacy.decrypt(record.encrypted_content)
        except EncryptionError as e:
            await self._audit_failure(
                AuditAction.DECRYPT, context, EncryptionMethod.LEGACY, start, e
            )
            raise
        record_fallback_read()
        await self._audit(
            AuditAction.DECRYPT,
            context,
            EncryptionMethod.LEGACY,
            AuditOutcome.FALLBACK,
            start,
            severity=AuditSeverity.WARNING,
            details={"fallback_reason": fallback_reason},
        )
        return plaintext

    async def _read_legacy(
        self, record: EncryptedFields, context: KeyContext, start: float
    ) -> bytes:
        try:
            if not record.encrypted_content:
                raise MissingCiphertextError(
                    "Legacy record has no legacy ciphertext",
                    org_id=record.org_id,
                    data_type=context.data_type.value,
                )
            plaintext = self._legacy.decrypt(record.encrypted_content)
        except EncryptionError as e:
            await self._audit_failure(
                AuditAction.DECRYPT, context, EncryptionMethod.LEGACY, start, e
            )
            raise
        await self._audit(
            AuditAction.DECRYPT, context, EncryptionMethod.LEGACY, AuditOutcome.SUCCESS, start
        )
        return plaintext

    # --- Audit helpers ---

    async def _audit_failure(
        self,
        action: AuditAction,
        context: KeyContext,
        method: Optional[EncryptionMethod],
        start: float,
        error: Exception,
    ) -> None:
        if isinstance(error, KeyMismatchError):
            logger.error(
                f"Key mismatch on {action.value} for org {context.org_id} "
                f"({context.data_type.value}, record {context.record_id})"
            )
            outcome, severity = AuditOutcome.KEY_MISMATCH, AuditSeverity.ERROR
        else:
            outcome, severity = AuditOutcome.FAILURE, AuditSeverity.WARNING
        await self._audit(
            action,
            context,
            method,
            outcome,
            start,
            severity=severity,
            details={"error": type(error).__name__},
        )

    async def _audit(
        self,
        action: AuditAction,
        context: KeyContext,
        method: Optional[EncryptionMethod],
        outcome: AuditOutcome,
        start: float,
        severity: AuditSeverity = AuditSeverity.INFO,
        details: Optional[dict] = None,
    ) -> None:
        duration_ms = _elapsed_ms(start)
        method_value = method.value if method else None
        record_encryption_operation(
            action.value, method_value or "unknown", outcome.value, duration_ms
        )
        await self._audit_sink.publish(
            AuditEvent(
                action=action,
                outcome=outcome,
                severity=severity,
                method=method_value,
                duration_ms=duration_ms,
                details=details or {},
                **context.audit_fields(),
            )
        )
