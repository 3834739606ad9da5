from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from backend.curator.config import AppSettings

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class SecretDecryptionError(ValueError):
    pass


class SecretCipher:
    """
    AES-256-GCM for secrets at rest, keyed by PBKDF2-SHA256 over a server secret.

    Every value gets its own random salt and nonce. The stored form is
    `salt:nonce:tag:ciphertext`, each part base64 encoded.
    """

    def __init__(self, secret: str, *, iterations: int = PBKDF2_ITERATIONS) -> None:
        if not secret:
            raise ValueError("encryption secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._iterations = iterations

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(_b64encode(part) for part in (salt, nonce, tag, ciphertext))

    def decrypt(self, token: str) -> str:
        parts = token.split(":")
        if len(parts) != 4:
            raise SecretDecryptionError("Invalid encrypted value format")
        try:
            salt, nonce, tag, ciphertext = (base64.b64decode(part, validate=True) for part in parts)
        except ValueError as exc:
            raise SecretDecryptionError("Invalid encrypted value encoding") from exc
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise SecretDecryptionError("Failed to decrypt value") from exc
        return plaintext.decode("utf-8")

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret)


def is_encrypted(value: str) -> bool:
    return value.count(":") == 3


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def cipher_from_settings(settings: AppSettings) -> SecretCipher | None:
    if settings.encryption_secret is None:
        return None
    secret = settings.encryption_secret.get_secret_value()
    return SecretCipher(secret) if secret else None
