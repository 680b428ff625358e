"""
LiveRelay Database - Credential Encryption
Chiffrement du credential applicatif avec Fernet (cryptography)

The key file holds one Fernet key per line, newest first. Values are always
encrypted with the newest key and decrypted with any of them, so a key can
be rotated without losing the stored credential.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import List

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

LOGGER = logging.getLogger(__name__)


class TokenEncryptor:
    """Encrypts the app credential before it reaches SQLite."""

    def __init__(self, key_file: str = ".liverelay.key"):
        self.key_file = Path(key_file)
        self.keys: List[bytes] = self._read_keys()
        if not self.keys:
            self.keys = [Fernet.generate_key()]
            self._write_keys()
            LOGGER.info(f"🔑 New encryption key generated and saved to {self.key_file}")
        else:
            LOGGER.info(f"🔑 {len(self.keys)} encryption key(s) loaded from {self.key_file}")
        self._cipher = self._build_cipher()

    def _read_keys(self) -> List[bytes]:
        if not self.key_file.exists():
            return []
        return [line.strip() for line in self.key_file.read_bytes().splitlines() if line.strip()]

    def _write_keys(self) -> None:
        try:
            self.key_file.write_bytes(b"\n".join(self.keys) + b"\n")
            os.chmod(self.key_file, 0o600)
        except OSError as e:
            LOGGER.error(f"❌ Failed to save encryption key: {e}")
            raise

    def _build_cipher(self) -> MultiFernet:
        try:
            return MultiFernet([Fernet(key) for key in self.keys])
        except ValueError as e:
            LOGGER.error(f"❌ Invalid key in {self.key_file}: {e}")
            raise

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a value produced by encrypt() with any known key.

        Raises:
            InvalidToken: no key matches or the value was tampered with
        """
        try:
            return self._cipher.decrypt(encrypted.encode("ascii")).decode("utf-8")
        except InvalidToken:
            LOGGER.error("❌ Decryption failed: invalid token or unknown key")
            raise

    def add_key(self) -> None:
        """Prepend a fresh key; new values are encrypted with it."""
        self.keys.insert(0, Fernet.generate_key())
        self._write_keys()
        self._cipher = self._build_cipher()
        LOGGER.info(f"🔑 New primary key added ({self.get_key_fingerprint()})")

    def reencrypt(self, encrypted: str) -> str:
        """Re-encrypt a stored value under the newest key."""
        return self._cipher.rotate(encrypted.encode("ascii")).decode("ascii")

    def drop_old_keys(self) -> int:
        """Keep only the newest key. Returns the number of keys removed."""
        removed = len(self.keys) - 1
        if removed:
            self.keys = self.keys[:1]
            self._write_keys()
            self._cipher = self._build_cipher()
        return removed

    def get_key_fingerprint(self) -> str:
        """First 16 hex chars of the newest key's SHA256 (for the status CLI)."""
        return hashlib.sha256(self.keys[0]).hexdigest()[:16]
