"""
Encryption of secrets stored in the configuration file.

Values written as ``fernet:<token>`` are decrypted at startup with a Fernet
key derived from BACKUP_SECRET_KEY, so the env file never holds AWS or
database passwords in plaintext.
"""

import base64
from typing import Dict, Mapping, Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SECRET_PREFIX = 'fernet:'


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(SECRET_PREFIX)


class SecretBox:
    """
    Encrypts and decrypts configuration values with a key derived from a passphrase.
    """

    def __init__(self, secret_key: str):
        """
        Initialize with the passphrase from BACKUP_SECRET_KEY.

        Args:
            secret_key: Passphrase the Fernet key is derived from
        """
        if not secret_key:
            raise ValueError("Secret key must not be empty")

        # Fixed salt: the passphrase itself is the secret
        fixed_salt = b'wp_backup_secret_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a value for the configuration file.

        Returns:
            ``fernet:``-prefixed token
        """
        token = self._fernet.encrypt(plaintext.encode())
        return SECRET_PREFIX + token.decode()

    def decrypt(self, value: str) -> str:
        """
        Decrypt a ``fernet:``-prefixed value.

        Raises:
            ValueError: If the value is not prefixed
            cryptography.fernet.InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        if not is_encrypted(value):
            raise ValueError("Value is not an encrypted secret")
        token = value[len(SECRET_PREFIX):]
        return self._fernet.decrypt(token.encode()).decode()

    def decrypt_values(self, values: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
        """Return a copy of ``values`` with every encrypted value decrypted."""
        return {
            name: self.decrypt(value) if is_encrypted(value) else value
            for name, value in values.items()
        }
