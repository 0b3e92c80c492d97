"""Dependency providers: gateway construction and FastAPI injection aliases."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgvault.config import Settings, get_settings
from orgvault.database import async_session_factory, get_db
from orgvault.exceptions import KmsUnavailableError
from orgvault.services.audit import (
    AuditSink,
    CompositeAuditSink,
    DatabaseAuditSink,
    LoggingAuditSink,
)
from orgvault.services.circuit_breaker import CircuitBreaker
from orgvault.services.encryption_gateway import EncryptionGateway, GatewayConfig
from orgvault.services.kms_client import HttpKmsClient, KmsClient
from orgvault.services.legacy_cipher import LegacyCipher


def build_kms_client(settings: Settings) -> KmsClient:
    return HttpKmsClient(
        base_url=settings.KMS_API_URL,
        api_key=settings.KMS_API_KEY,
        timeout=settings.KMS_TIMEOUT_SECONDS,
        circuit_breaker=CircuitBreaker(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
            half_open_max_calls=settings.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
            is_failure=lambda exc: isinstance(exc, KmsUnavailableError),
        ),
    )


def build_audit_sink(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AuditSink:
    if settings.AUDIT_TO_DATABASE:
        return CompositeAuditSink(LoggingAuditSink(), DatabaseAuditSink(session_factory))
    return LoggingAuditSink()


def build_gateway(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    kms_client: KmsClient = None,
) -> EncryptionGateway:
    """Wire the gateway from settings. The legacy key is derived here, once."""
    return EncryptionGateway(
        kms_client=kms_client or build_kms_client(settings),
        legacy_cipher=LegacyCipher(settings.ENCRYPTION_KEY),
        audit_sink=build_audit_sink(settings, session_factory),
        config=GatewayConfig.from_settings(settings),
    )


@lru_cache()
def get_gateway() -> EncryptionGateway:
    """Process-wide gateway, built on first use."""
    return build_gateway(get_settings())


# Type aliases for dependency injection
SettingsDep = Annotated[Settings, Depends(get_settings)]
DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
GatewayDep = Annotated[EncryptionGateway, Depends(get_gateway)]
