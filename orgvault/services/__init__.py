"""Encryption services for orgvault."""

from orgvault.services.encryption_gateway import EncryptionGateway, GatewayConfig
from orgvault.services.key_context import DataType, KeyContext
from orgvault.services.migration import BatchResult, MigrationProcessor

__all__ = [
    "EncryptionGateway",
    "GatewayConfig",
    "DataType",
    "KeyContext",
    "BatchResult",
    "MigrationProcessor",
]
