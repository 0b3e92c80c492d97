"""Tests for the encryption gateway: modes, dual-write and fallback reads."""

import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from orgvault.config import Settings
from orgvault.exceptions import (
    EncryptionError,
    KeyMismatchError,
    KmsRejectedError,
    KmsUnavailableError,
    LegacyDecryptError,
    MissingCiphertextError,
)
from orgvault.middleware.metrics import REGISTRY
from orgvault.models.audit_logs import AuditAction, AuditOutcome, AuditSeverity
from orgvault.services.encryption_gateway import EncryptedPayload, GatewayConfig
from orgvault.services.key_context import DataType, KeyContext

from conftest import ORG_A, ORG_B, TEST_ENCRYPTION_KEY


@dataclass
class Row:
    """Minimal stand-in for an encrypted record row."""

    org_id: str
    encrypted_content: Optional[str]
    vault_encrypted_content: Optional[str]
    encryption_method: str
    data_type: str = DataType.MEDICAL_RECORD.value

    @classmethod
    def from_payload(cls, payload: EncryptedPayload) -> "Row":
        return cls(
            org_id=payload.org_id,
            encrypted_content=payload.encrypted_content,
            vault_encrypted_content=payload.vault_encrypted_content,
            encryption_method=payload.encryption_method,
            data_type=payload.data_type,
        )


def test_config_from_settings():
    settings = Settings(
        ENCRYPTION_KEY=TEST_ENCRYPTION_KEY, KMS_MODE_ENABLED=True, KMS_DUAL_WRITE=False
    )
    assert GatewayConfig.from_settings(settings) == GatewayConfig(
        kms_enabled=True, dual_write=False
    )


# --- Write ---


@pytest.mark.asyncio
async def test_write_legacy_mode(make_gateway, fake_kms, context):
    gateway = make_gateway(kms_enabled=False)

    payload = await gateway.write(ORG_A, "note text", context)

    assert payload.encryption_method == "legacy"
    assert payload.encrypted_content
    assert payload.vault_encrypted_content is None
    assert fake_kms.encrypt_calls == 0


@pytest.mark.asyncio
async def test_fresh_write_kms_mode_reads_back(make_gateway, context):
    gateway = make_gateway(kms_enabled=True, dual_write=False)

    payload = await gateway.write(ORG_A, "note text", context)

    assert payload.encryption_method == "kms"
    assert payload.vault_encrypted_content
    assert payload.encrypted_content is None
    assert await gateway.read(Row.from_payload(payload), context) == b"note text"


@pytest.mark.asyncio
async def test_dual_write_populates_both(gateway, legacy_cipher, context):
    payload = await gateway.write(ORG_A, "note text", context)

    assert payload.encryption_method == "kms"
    assert payload.vault_encrypted_content
    assert legacy_cipher.decrypt(payload.encrypted_content) == b"note text"


@pytest.mark.asyncio
async def test_dual_write_blanked_kms_column_falls_back(gateway, audit_sink, context):
    payload = await gateway.write(ORG_A, "note text", context)
    row = Row.from_payload(payload)
    row.vault_encrypted_content = None

    assert await gateway.read(row, context) == b"note text"
    assert audit_sink.events[-1].outcome == AuditOutcome.FALLBACK


@pytest.mark.asyncio
async def test_write_errors_propagate_without_fallback(gateway, fake_kms, context):
    fake_kms.fail_encrypt_with = KmsUnavailableError("down", org_id=ORG_A)

    with pytest.raises(KmsUnavailableError):
        await gateway.write(ORG_A, "note text", context)


@pytest.mark.asyncio
async def test_write_rejects_context_for_other_org(gateway, fake_kms, audit_sink):
    other = KeyContext.build(ORG_B, "user_1", DataType.MEDICAL_RECORD)

    with pytest.raises(KeyMismatchError):
        await gateway.write(ORG_A, "note text", other)

    assert fake_kms.encrypt_calls == 0
    assert audit_sink.events[-1].outcome == AuditOutcome.KEY_MISMATCH
    assert audit_sink.events[-1].severity == AuditSeverity.ERROR


# --- Read ---


@pytest.mark.asyncio
async def test_round_trip_property(gateway):
    for data_type in DataType:
        for plaintext in [b"", b"x", "unicode é中".encode(), bytes(range(256)) * 4]:
            context = KeyContext.build(ORG_A, "user_1", data_type)
            payload = await gateway.write(ORG_A, plaintext, context)
            assert await gateway.read(Row.from_payload(payload), context) == plaintext


@pytest.mark.asyncio
async def test_legacy_record_reads_with_legacy_only(make_gateway, fake_kms, context):
    gateway = make_gateway(kms_enabled=True)
    row = Row(ORG_A, gateway.legacy_encrypt(b"old note"), None, "legacy")

    assert await gateway.read(row, context) == b"old note"
    assert fake_kms.decrypt_calls == 0


@pytest.mark.asyncio
async def test_fallback_on_kms_unavailable(gateway, fake_kms, audit_sink, context):
    payload = await gateway.write(ORG_A, "note text", context)
    fake_kms.fail_decrypt_with = KmsUnavailableError("down", org_id=ORG_A)
    before = REGISTRY.get_sample_value("orgvault_fallback_reads_total")

    assert await gateway.read(Row.from_payload(payload), context) == b"note text"

    event = audit_sink.events[-1]
    assert event.action == AuditAction.DECRYPT
    assert event.outcome == AuditOutcome.FALLBACK
    assert event.method == "legacy"
    assert REGISTRY.get_sample_value("orgvault_fallback_reads_total") == before + 1


@pytest.mark.asyncio
async def test_fallback_logs_warning(gateway, fake_kms, context, caplog):
    payload = await gateway.write(ORG_A, "note text", context)
    fake_kms.fail_decrypt_with = KmsUnavailableError("down", org_id=ORG_A)

    with caplog.at_level("WARNING", logger="orgvault.services.encryption_gateway"):
        await gateway.read(Row.from_payload(payload), context)

    assert any("fell back to legacy" in r.message for r in caplog.records)
    assert not any("note text" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_key_mismatch_never_falls_back(gateway, fake_kms, audit_sink, context):
    payload = await gateway.write(ORG_A, "note text", context)
    fake_kms.fail_decrypt_with = KeyMismatchError("mismatch", org_id=ORG_A)

    with pytest.raises(KeyMismatchError):
        await gateway.read(Row.from_payload(payload), context)

    event = audit_sink.events[-1]
    assert event.outcome == AuditOutcome.KEY_MISMATCH
    assert event.severity == AuditSeverity.ERROR


@pytest.mark.asyncio
async def test_rejected_never_falls_back(gateway, fake_kms, context):
    payload = await gateway.write(ORG_A, "note text", context)
    fake_kms.fail_decrypt_with = KmsRejectedError("bad request", org_id=ORG_A)

    with pytest.raises(KmsRejectedError):
        await gateway.read(Row.from_payload(payload), context)


@pytest.mark.asyncio
async def test_unavailable_without_legacy_copy_propagates(make_gateway, fake_kms, context):
    gateway = make_gateway(kms_enabled=True, dual_write=False)
    payload = await gateway.write(ORG_A, "note text", context)
    fake_kms.fail_decrypt_with = KmsUnavailableError("down", org_id=ORG_A)

    with pytest.raises(KmsUnavailableError):
        await gateway.read(Row.from_payload(payload), context)


@pytest.mark.asyncio
async def test_context_binding_within_org(gateway):
    medical = KeyContext.build(ORG_A, "user_1", DataType.MEDICAL_RECORD)
    token = KeyContext.build(ORG_A, "user_1", DataType.OAUTH_ACCESS_TOKEN)
    payload = await gateway.write(ORG_A, "note text", medical)

    with pytest.raises(KeyMismatchError):
        await gateway.read(Row.from_payload(payload), token)


@pytest.mark.asyncio
async def test_context_binding_on_legacy_records(make_gateway, audit_sink):
    gateway = make_gateway(kms_enabled=False)
    medical = KeyContext.build(ORG_A, "user_1", DataType.MEDICAL_RECORD)
    token = KeyContext.build(ORG_A, "user_1", DataType.OAUTH_ACCESS_TOKEN)
    payload = await gateway.write(ORG_A, "note text", medical)

    with pytest.raises(KeyMismatchError):
        await gateway.read(Row.from_payload(payload), token)

    event = audit_sink.events[-1]
    assert event.outcome == AuditOutcome.KEY_MISMATCH
    assert event.severity == AuditSeverity.ERROR


@pytest.mark.asyncio
async def test_context_binding_survives_kms_outage(gateway, fake_kms, audit_sink):
    medical = KeyContext.build(ORG_A, "user_1", DataType.MEDICAL_RECORD)
    token = KeyContext.build(ORG_A, "user_1", DataType.OAUTH_ACCESS_TOKEN)
    payload = await gateway.write(ORG_A, "note text", medical)
    fake_kms.fail_decrypt_with = KmsUnavailableError("down", org_id=ORG_A)
    before = REGISTRY.get_sample_value("orgvault_fallback_reads_total")

    with pytest.raises(KeyMismatchError):
        await gateway.read(Row.from_payload(payload), token)

    assert audit_sink.events[-1].outcome == AuditOutcome.KEY_MISMATCH
    assert REGISTRY.get_sample_value("orgvault_fallback_reads_total") == before


@pytest.mark.asyncio
async def test_payload_carries_data_type(gateway):
    token = KeyContext.build(ORG_A, "user_1", DataType.OAUTH_REFRESH_TOKEN)
    payload = await gateway.write(ORG_A, "refresh", token)
    assert payload.data_type == "oauth_refresh_token"


@pytest.mark.asyncio
async def test_key_isolation_between_orgs(gateway, fake_kms, context):
    payload = await gateway.write(ORG_A, "org a note", context)
    other = KeyContext.build(ORG_B, "user_1", DataType.MEDICAL_RECORD)

    with pytest.raises(KeyMismatchError):
        await fake_kms.decrypt(ORG_B, payload.vault_encrypted_content, other)


@pytest.mark.asyncio
async def test_read_rejects_context_for_other_org(gateway, fake_kms, context):
    payload = await gateway.write(ORG_A, "org a note", context)
    other = KeyContext.build(ORG_B, "user_1", DataType.MEDICAL_RECORD)
    calls_before = fake_kms.decrypt_calls

    with pytest.raises(KeyMismatchError):
        await gateway.read(Row.from_payload(payload), other)
    assert fake_kms.decrypt_calls == calls_before


@pytest.mark.asyncio
async def test_corrupt_legacy_ciphertext(make_gateway, context):
    gateway = make_gateway(kms_enabled=False)
    row = Row(ORG_A, "bm90IGEgcmVhbCBjaXBoZXJ0ZXh0IGF0IGFsbA==", None, "legacy")

    with pytest.raises(LegacyDecryptError):
        await gateway.read(row, context)


@pytest.mark.asyncio
async def test_record_without_ciphertext(gateway, context):
    with pytest.raises(MissingCiphertextError):
        await gateway.read(Row(ORG_A, None, None, "kms"), context)
    with pytest.raises(MissingCiphertextError):
        await gateway.read(Row(ORG_A, None, None, "legacy"), context)


@pytest.mark.asyncio
async def test_unknown_method(gateway, context):
    with pytest.raises(EncryptionError):
        await gateway.read(Row(ORG_A, "x", "y", "rot13"), context)


# --- Audit ---


@pytest.mark.asyncio
async def test_exactly_one_audit_event_per_operation(gateway, fake_kms, audit_sink, context):
    payload = await gateway.write(ORG_A, "note text", context)
    assert len(audit_sink.events) == 1

    await gateway.read(Row.from_payload(payload), context)
    assert len(audit_sink.events) == 2

    fake_kms.fail_decrypt_with = KmsUnavailableError("down", org_id=ORG_A)
    await gateway.read(Row.from_payload(payload), context)
    assert len(audit_sink.events) == 3

    fake_kms.fail_decrypt_with = KeyMismatchError("mismatch", org_id=ORG_A)
    with pytest.raises(KeyMismatchError):
        await gateway.read(Row.from_payload(payload), context)
    assert len(audit_sink.events) == 4


@pytest.mark.asyncio
async def test_audit_event_fields(gateway, audit_sink, context):
    await gateway.write(ORG_A, "note text", context)

    event = audit_sink.events[0]
    assert event.action == AuditAction.ENCRYPT
    assert event.outcome == AuditOutcome.SUCCESS
    assert event.org_id == ORG_A
    assert event.data_type == "medical_record"
    assert event.method == "kms"
    assert event.record_id == "rec-1"
    assert event.duration_ms >= 0
    assert "note text" not in str(event.as_dict())


@pytest.mark.asyncio
async def test_failing_audit_sink_does_not_fail_operation(make_gateway, audit_sink, context):
    async def broken(event):
        raise RuntimeError("audit store down")

    audit_sink.emit = broken
    gateway = make_gateway(kms_enabled=True)

    payload = await gateway.write(ORG_A, "note text", context)
    assert await gateway.read(Row.from_payload(payload), context) == b"note text"


@pytest.mark.asyncio
async def test_concurrent_operations(gateway):
    contexts = [KeyContext.build(ORG_A, f"user_{i}", DataType.MEDICAL_RECORD) for i in range(20)]
    payloads = await asyncio.gather(
        *(gateway.write(ORG_A, f"note {i}", ctx) for i, ctx in enumerate(contexts))
    )
    plaintexts = await asyncio.gather(
        *(gateway.read(Row.from_payload(p), ctx) for p, ctx in zip(payloads, contexts))
    )
    assert plaintexts == [f"note {i}".encode() for i in range(20)]
