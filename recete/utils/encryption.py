"""
PII encryption utilities
Phone numbers are stored encrypted (AES-256-GCM, random IV) as "iv:authTag:ciphertext" hex
"""
import os
import logging
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from recete.config import settings

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16


class PhoneEncryptor:
    """Encrypts and decrypts phone numbers with a 32-byte hex key"""

    def __init__(self, key_hex: Optional[str] = None):
        key_hex = key_hex or settings.ENCRYPTION_KEY
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise RuntimeError("ENCRYPTION_KEY must be 64 hex characters")
        if len(key) != 32:
            raise RuntimeError("ENCRYPTION_KEY must be 64 hex characters")
        self._aesgcm = AESGCM(key)

    def encrypt(self, phone: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, phone.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted_phone: str) -> str:
        """
        Decrypt a stored phone value

        Raises:
            ValueError: If the value is malformed or fails authentication
        """
        parts = encrypted_phone.split(":")
        if len(parts) != 3:
            raise ValueError("Invalid encrypted phone format")

        iv_hex, tag_hex, ciphertext_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            sealed = bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)
            return self._aesgcm.decrypt(iv, sealed, None).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            raise ValueError(f"Phone decryption failed: {e}")

    def matches(self, encrypted_phone: Optional[str], phone: str) -> bool:
        """Decrypt-and-compare; undecryptable rows never match"""
        if not encrypted_phone:
            return False
        try:
            return self.decrypt(encrypted_phone) == phone
        except ValueError as e:
            logger.warning(f"⚠️ Skipping undecryptable phone value: {e}")
            return False
