"""
Encryption service for protecting secrets at rest.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256) from the
cryptography library for order private keys and the API token.
"""

import base64
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KDF_SALT = b"certbind-agent-encryption-salt-v1"
KDF_ITERATIONS = 480000


class EncryptionService:
    """
    Symmetric encryption for secrets stored by the agent.

    The Fernet key is derived from a passphrase via PBKDF2. Without a
    passphrase, a random key is generated once and kept in an owner-only
    key file, so secrets are never written in plaintext.
    """

    def __init__(self, passphrase: Optional[str] = None, key_file: Optional[Path] = None):
        if passphrase:
            self._fernet = Fernet(self._derive_key(passphrase))
            logger.info("Encryption service initialized with PBKDF2-derived key")
        elif key_file is not None:
            self._fernet = Fernet(self._load_or_create_key(Path(key_file)))
        else:
            raise ValueError("Either a passphrase or a key file is required")

    @staticmethod
    def _derive_key(passphrase: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))

    @staticmethod
    def _load_or_create_key(key_file: Path) -> bytes:
        if key_file.exists():
            return key_file.read_bytes().strip()

        key_file.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        logger.info(f"Generated new encryption key file at {key_file}")
        return key

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt a string, returning base64-encoded ciphertext string."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt_string(self, data: str) -> str:
        """
        Decrypt a string produced by encrypt_string.

        Raises:
            ValueError: if the data was encrypted with a different key or is corrupt
        """
        if not data:
            return ""
        try:
            return self._fernet.decrypt(data.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise ValueError(
                "Failed to decrypt data. The encryption key may have changed. "
                "Ensure PRIVATE_KEY_ENCRYPTION_KEY matches the key used during encryption."
            )

