"""Legacy single-secret encryption retained for the KMS migration window."""

import base64
import binascii
import logging
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from orgvault.exceptions import LegacyDecryptError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # 96-bit nonce for GCM
TAG_SIZE = 16


def derive_legacy_key(secret: str) -> bytes:
    """
    Derive a 256-bit AES key from the process-wide ENCRYPTION_KEY using HKDF.

    The derived key is separate from the raw secret so the secret itself is
    never used directly as key material.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"orgvault-legacy-v1",
        info=b"legacy-record-encryption-key",
    )
    return hkdf.derive(secret.encode("utf-8"))


class LegacyCipher:
    """
    AES-256-GCM with one global key and no org scoping.

    Ciphertexts are ``base64(nonce || ciphertext || tag)``. The key is derived
    once at construction and held for the lifetime of the instance.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Legacy encryption secret must not be empty")
        self._aesgcm = AESGCM(derive_legacy_key(secret))

    def encrypt(self, plaintext: Union[bytes, str]) -> str:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext, None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> bytes:
        if not ciphertext:
            raise LegacyDecryptError("Legacy ciphertext is empty")
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise LegacyDecryptError("Legacy ciphertext is not valid base64") from e

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise LegacyDecryptError("Legacy ciphertext is truncated")

        try:
            return self._aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise LegacyDecryptError(
                "Legacy ciphertext failed authentication (corrupt or wrong secret)"
            ) from e
