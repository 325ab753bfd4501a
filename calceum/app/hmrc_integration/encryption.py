"""
Field Encryption Module

Encrypts OAuth tokens and tax identifiers (NINO, UTR) for storage using
AES-256-GCM with a key derived from the HMRC_ENCRYPTION_KEY password via
PBKDF2-HMAC-SHA256.

Ciphertext layout is base64(iv || ciphertext || tag), with a 12-byte IV.
"""

import base64
import binascii
import hashlib
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from calceum.app.errors import ConfigurationError, ValidationError


IV_LENGTH = 12
SALT_LENGTH = 32
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000

# Prefix written by the old development fallback instead of ciphertext
UNENCRYPTED_PREFIX = "UNENCRYPTED:"

SENSITIVE_FIELDS = ("nino", "utr")
TOKEN_FIELDS = ("access_token", "refresh_token")


class TokenEncryption:
    """
    Encrypt and decrypt sensitive HMRC values for database storage.

    The salt is derived from the password itself so that every process
    configured with the same password derives the same key.
    """

    def __init__(self, password: str):
        """
        Derive the AES key from the configured password.

        Args:
            password: Value of HMRC_ENCRYPTION_KEY

        Raises:
            ConfigurationError: If no password is configured
        """
        if not password:
            raise ConfigurationError("HMRC_ENCRYPTION_KEY not configured")

        salt = hashlib.sha256(f"{password}_salt".encode()).digest()[:SALT_LENGTH]
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        self.cipher = AESGCM(kdf.derive(password.encode()))

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Encrypt a value for database storage.

        Empty values are returned unchanged.

        Example:
            >>> enc = TokenEncryption("secret")
            >>> stored = enc.encrypt("AB123456C")
        """
        if not value:
            return value

        iv = os.urandom(IV_LENGTH)
        encrypted = self.cipher.encrypt(iv, value.encode(), None)
        return base64.b64encode(iv + encrypted).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a value read from the database.

        Raises:
            ValidationError: If the value is not valid ciphertext for this key
        """
        if not value:
            return value

        if value.startswith(UNENCRYPTED_PREFIX):
            return value[len(UNENCRYPTED_PREFIX):]

        try:
            combined = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Stored value is not valid ciphertext") from e

        if len(combined) <= IV_LENGTH:
            raise ValidationError("Stored value is not valid ciphertext")

        iv, encrypted = combined[:IV_LENGTH], combined[IV_LENGTH:]
        try:
            return self.cipher.decrypt(iv, encrypted, None).decode()
        except InvalidTag as e:
            raise ValidationError("Stored value could not be decrypted") from e

    def encrypt_tokens(self, tokens: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return self._map_fields(tokens, TOKEN_FIELDS, self.encrypt)

    def decrypt_tokens(self, tokens: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return self._map_fields(tokens, TOKEN_FIELDS, self.decrypt)

    def encrypt_sensitive_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._map_fields(data, SENSITIVE_FIELDS, self.encrypt)

    def decrypt_sensitive_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._map_fields(data, SENSITIVE_FIELDS, self.decrypt)

    @staticmethod
    def _map_fields(data, fields, transform):
        if not data:
            return data

        result = dict(data)
        for field in fields:
            if result.get(field):
                result[field] = transform(result[field])
        return result

    def is_encrypted(self, value: str) -> bool:
        """
        Check if a value appears to be encrypted.

        Heuristic only (base64 that is long enough to hold IV + tag).
        Useful for migrations and debugging.
        """
        if not value or value.startswith(UNENCRYPTED_PREFIX):
            return False

        try:
            decoded = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return False
        return len(decoded) > IV_LENGTH + 16
