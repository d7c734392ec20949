"""At-rest encryption of the Drive access token.

The key is derived from the device secret with PBKDF2-HMAC-SHA256 and a
fresh random salt; the token is sealed with AES-256-GCM under a fresh
12-byte IV. Every field is stored base64-encoded.
"""
from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.errors import TokenUnreadableError
from core.settings import DRIVE_SYNC
from models.sync import EncryptedToken


SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class TokenVault:
    def __init__(self, iterations: int = DRIVE_SYNC.kdf_iterations):
        if iterations < 1:
            raise ValueError("iterations must be positive")
        self.iterations = iterations

    def _derive_key(self, device_secret: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=SHA256(),
            length=KEY_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(device_secret.encode("utf-8"))

    def encrypt(self, plaintext: str, device_secret: str) -> EncryptedToken:
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        key = self._derive_key(device_secret, salt)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedToken(ciphertext=_b64(ciphertext), salt=_b64(salt), iv=_b64(iv))

    def decrypt(self, token: EncryptedToken, device_secret: str) -> str:
        try:
            salt = _unb64(token.salt)
            iv = _unb64(token.iv)
            ciphertext = _unb64(token.ciphertext)
        except (binascii.Error, ValueError, AttributeError) as exc:
            raise TokenUnreadableError("stored token is corrupt") from exc
        if len(iv) != IV_BYTES or not salt:
            raise TokenUnreadableError("stored token has an invalid salt or IV")
        key = self._derive_key(device_secret, salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            raise TokenUnreadableError("stored token failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:  # pragma: no cover - tag already verified
            raise TokenUnreadableError("stored token is not text") from exc


__all__ = ["TokenVault"]
