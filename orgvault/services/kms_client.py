"""Client for the external org-scoped key-management service.

No key material is handled locally: plaintext goes to the KMS and an opaque
ciphertext string comes back, bound to the organization and key context.
"""

import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from orgvault.exceptions import (
    KeyMismatchError,
    KmsRejectedError,
    KmsUnavailableError,
)
from orgvault.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from orgvault.services.key_context import DataType, KeyContext, is_valid_org_id

logger = logging.getLogger(__name__)

# Error codes the KMS returns when a ciphertext is presented under the wrong
# org or with a different key context than it was sealed with
KEY_MISMATCH_CODES = frozenset({"key_mismatch", "context_mismatch", "organization_mismatch"})

CONNECTION_PROBE = b"orgvault connection test"


class KmsClient(ABC):
    """Encrypt/decrypt contract of the external KMS."""

    @abstractmethod
    async def encrypt(self, org_id: str, plaintext: bytes, context: KeyContext) -> str:
        """Seal ``plaintext`` under ``org_id``'s key, bound to ``context``."""

    @abstractmethod
    async def decrypt(self, org_id: str, ciphertext: str, context: KeyContext) -> bytes:
        """Open a ciphertext; raises KeyMismatchError if it is not ``org_id``'s."""

    async def check_connection(self, org_id: str) -> bool:
        """Round-trip a probe value through the KMS for health checks."""
        context = KeyContext.build(
            org_id=org_id,
            subject_id="system:healthcheck",
            data_type=DataType.MEDICAL_RECORD,
        )
        try:
            ciphertext = await self.encrypt(org_id, CONNECTION_PROBE, context)
            return await self.decrypt(org_id, ciphertext, context) == CONNECTION_PROBE
        except Exception as e:
            logger.warning(f"KMS connection test failed for {org_id}: {type(e).__name__}")
            return False

    async def close(self) -> None:
        return None


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    code = body.get("code") or body.get("error")
    return str(code).lower() if code else None


class HttpKmsClient(KmsClient):
    """
    KMS client over HTTPS.

    Error mapping:
    - timeouts, transport errors, 429 and 5xx -> KmsUnavailableError
    - 403/409 carrying a key mismatch code -> KeyMismatchError
    - any other 4xx -> KmsRejectedError

    A circuit breaker opened by repeated transient failures fails fast with
    KmsUnavailableError instead of waiting on a struggling service.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
        )
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            is_failure=lambda exc: isinstance(exc, KmsUnavailableError),
        )

    async def encrypt(self, org_id: str, plaintext: bytes, context: KeyContext) -> str:
        if not is_valid_org_id(org_id):
            raise KmsRejectedError(f"Invalid organization id: {org_id!r}")
        if plaintext is None:
            raise KmsRejectedError("Plaintext must not be None", org_id=org_id)

        body = await self._post(
            "/v1/encrypt",
            {
                "plaintext": base64.b64encode(plaintext).decode("ascii"),
                "key_context": context.to_wire(org_id),
            },
            org_id=org_id,
            data_type=context.data_type.value,
        )
        ciphertext = body.get("ciphertext")
        if not isinstance(ciphertext, str) or not ciphertext:
            raise KmsUnavailableError(
                "KMS encrypt response missing ciphertext",
                org_id=org_id,
                data_type=context.data_type.value,
            )
        return ciphertext

    async def decrypt(self, org_id: str, ciphertext: str, context: KeyContext) -> bytes:
        if not is_valid_org_id(org_id):
            raise KmsRejectedError(f"Invalid organization id: {org_id!r}")
        if not ciphertext:
            raise KmsRejectedError("Ciphertext must not be empty", org_id=org_id)

        body = await self._post(
            "/v1/decrypt",
            {"ciphertext": ciphertext, "key_context": context.to_wire(org_id)},
            org_id=org_id,
            data_type=context.data_type.value,
        )
        try:
            return base64.b64decode(body["plaintext"], validate=True)
        except (KeyError, TypeError, binascii.Error, ValueError) as e:
            raise KmsUnavailableError(
                "KMS decrypt response missing plaintext",
                org_id=org_id,
                data_type=context.data_type.value,
            ) from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        org_id: str,
        data_type: str,
    ) -> Dict[str, Any]:
        try:
            return await self._circuit_breaker.call(
                self._send, path, payload, org_id, data_type
            )
        except CircuitBreakerOpenError as e:
            raise KmsUnavailableError(str(e), org_id=org_id, data_type=data_type) from e

    async def _send(
        self,
        path: str,
        payload: Dict[str, Any],
        org_id: str,
        data_type: str,
    ) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as e:
            raise KmsUnavailableError(
                "KMS request timed out", org_id=org_id, data_type=data_type
            ) from e
        except httpx.TransportError as e:
            raise KmsUnavailableError(
                f"KMS connection error: {type(e).__name__}",
                org_id=org_id,
                data_type=data_type,
            ) from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"KMS {path} for {org_id} -> {response.status_code} in {elapsed_ms:.1f}ms")

        status = response.status_code
        if status == 429 or status >= 500:
            raise KmsUnavailableError(
                f"KMS returned {status}", org_id=org_id, data_type=data_type
            )
        if status >= 400:
            code = _error_code(response)
            if status in (403, 409) and code in KEY_MISMATCH_CODES:
                raise KeyMismatchError(
                    "Ciphertext does not belong to the supplied organization or context",
                    org_id=org_id,
                    data_type=data_type,
                )
            raise KmsRejectedError(
                f"KMS rejected request with {status} ({code or 'no code'})",
                org_id=org_id,
                data_type=data_type,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise KmsUnavailableError(
                "KMS returned a non-JSON body", org_id=org_id, data_type=data_type
            ) from e
        if not isinstance(body, dict):
            raise KmsUnavailableError(
                "KMS returned an unexpected body", org_id=org_id, data_type=data_type
            )
        return body
