"""
@module conftest
@description Pytest fixtures for orgvault tests.
"""

import asyncio
import base64
import json
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Awaitable, Callable, List, Optional, Set

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment
TEST_ENCRYPTION_KEY = "test-legacy-secret-key-for-testing-only-32chars!"
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'orgvault_test_app.db')}"
)
os.environ["KMS_MODE_ENABLED"] = "false"
os.environ["KMS_API_URL"] = "https://kms.test"
os.environ["AUDIT_TO_DATABASE"] = "false"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"

from orgvault.config import get_settings

# Clear settings cache to ensure test environment variables take effect
get_settings.cache_clear()

from orgvault.database import Base
from orgvault.exceptions import KeyMismatchError, KmsRejectedError, KmsUnavailableError
from orgvault.models.encrypted_records import EncryptedRecord, EncryptionMethod
from orgvault.models.organizations import Organization
from orgvault.services.audit import AuditEvent, AuditSink
from orgvault.services.encryption_gateway import EncryptionGateway, GatewayConfig
from orgvault.services.key_context import DataType, KeyContext
from orgvault.services.kms_client import KmsClient
from orgvault.services.legacy_cipher import LegacyCipher

ORG_A = "org_01HAAAAAAAAAAAAAAAAAAAAAAA"
ORG_B = "org_01HBBBBBBBBBBBBBBBBBBBBBBB"


class FakeKmsClient(KmsClient):
    """
    Deterministic in-process KMS.

    Ciphertexts encode the org and data type they were sealed under, so
    decrypting under another org or data type raises KeyMismatchError just
    like the real service.
    """

    PREFIX = "fakekms:v1:"

    def __init__(self):
        self.encrypt_calls = 0
        self.decrypt_calls = 0
        self.fail_encrypt_with: Optional[Exception] = None
        self.fail_decrypt_with: Optional[Exception] = None
        self.transient_encrypt_failures = 0
        self.transient_decrypt_failures = 0
        # Plaintexts whose decrypt returns altered bytes (verification failure)
        self.corrupt_plaintexts: Set[bytes] = set()
        self.on_encrypt: Optional[Callable[[], Awaitable[None]]] = None
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def encrypt(self, org_id: str, plaintext: bytes, context: KeyContext) -> str:
        self.encrypt_calls += 1
        try:
            await self._enter()
            if self.fail_encrypt_with is not None:
                raise self.fail_encrypt_with
            if self.transient_encrypt_failures > 0:
                self.transient_encrypt_failures -= 1
                raise KmsUnavailableError("fake KMS unavailable", org_id=org_id)
            if self.on_encrypt is not None:
                await self.on_encrypt()
            sealed = json.dumps(
                {
                    "org": org_id,
                    "type": context.data_type.value,
                    "pt": base64.b64encode(plaintext).decode("ascii"),
                }
            )
            return self.PREFIX + base64.b64encode(sealed.encode("utf-8")).decode("ascii")
        finally:
            self.in_flight -= 1

    async def decrypt(self, org_id: str, ciphertext: str, context: KeyContext) -> bytes:
        self.decrypt_calls += 1
        try:
            await self._enter()
            if self.fail_decrypt_with is not None:
                raise self.fail_decrypt_with
            if self.transient_decrypt_failures > 0:
                self.transient_decrypt_failures -= 1
                raise KmsUnavailableError("fake KMS unavailable", org_id=org_id)
            if not ciphertext.startswith(self.PREFIX):
                raise KmsRejectedError("not a KMS ciphertext", org_id=org_id)
            sealed = json.loads(base64.b64decode(ciphertext[len(self.PREFIX):]))
            if sealed["org"] != org_id or sealed["type"] != context.data_type.value:
                raise KeyMismatchError("context mismatch", org_id=org_id)
            plaintext = base64.b64decode(sealed["pt"])
            if plaintext in self.corrupt_plaintexts:
                return plaintext + b"\x00"
            return plaintext
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True

    async def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.delay:
            await asyncio.sleep(self.delay)


class RecordingAuditSink(AuditSink):
    """Keeps every emitted event in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)


@pytest.fixture(scope="function", autouse=True)
def clear_settings_cache():
    """Clear settings cache before each test to ensure env vars take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def legacy_cipher() -> LegacyCipher:
    return LegacyCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def fake_kms() -> FakeKmsClient:
    return FakeKmsClient()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def make_gateway(fake_kms, legacy_cipher, audit_sink):
    """Build a gateway around the shared fakes with a given mode."""

    def _make(kms_enabled: bool = False, dual_write: bool = True) -> EncryptionGateway:
        return EncryptionGateway(
            kms_client=fake_kms,
            legacy_cipher=legacy_cipher,
            audit_sink=audit_sink,
            config=GatewayConfig(kms_enabled=kms_enabled, dual_write=dual_write),
        )

    return _make


@pytest.fixture
def gateway(make_gateway) -> EncryptionGateway:
    """Gateway in KMS mode with dual-write on."""
    return make_gateway(kms_enabled=True, dual_write=True)


@pytest.fixture
def context() -> KeyContext:
    return KeyContext.build(ORG_A, "user_1", DataType.MEDICAL_RECORD, "rec-1")


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh file-backed SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orgvault.db'}",
        poolclass=NullPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def seed_legacy(session_factory, legacy_cipher):
    """Insert legacy-encrypted records with increasing creation times."""
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    async def _seed(
        contents,
        org_id: str = ORG_A,
        data_type: DataType = DataType.MEDICAL_RECORD,
        subject_id: str = "user_1",
        metadata: Optional[dict] = None,
    ) -> List[uuid.UUID]:
        ids = []
        async with session_factory() as session:
            for content in contents:
                counter["n"] += 1
                record = EncryptedRecord(
                    id=uuid.uuid4(),
                    org_id=org_id,
                    subject_id=subject_id,
                    data_type=data_type.value,
                    encrypted_content=legacy_cipher.encrypt(content),
                    vault_encrypted_content=None,
                    encrypted_metadata=(
                        legacy_cipher.encrypt(json.dumps(metadata, sort_keys=True))
                        if metadata is not None
                        else None
                    ),
                    encryption_method=EncryptionMethod.LEGACY.value,
                    version=1,
                    created_at=base_time + timedelta(seconds=counter["n"]),
                    updated_at=base_time + timedelta(seconds=counter["n"]),
                )
                session.add(record)
                ids.append(record.id)
            await session.commit()
        return ids

    return _seed


@pytest.fixture
def add_organization(session_factory):
    async def _add(org_id: str, is_active: bool = True, deleted: bool = False) -> None:
        async with session_factory() as session:
            session.add(
                Organization(
                    id=org_id,
                    name=f"Org {org_id}",
                    is_active=is_active,
                    deleted_at=datetime.now(timezone.utc) if deleted else None,
                )
            )
            await session.commit()

    return _add


@pytest.fixture
def load_record(session_factory):
    async def _load(record_id: uuid.UUID) -> Optional[EncryptedRecord]:
        async with session_factory() as session:
            return await session.get(EncryptedRecord, record_id)

    return _load
