"""
Encryption of secrets kept in the environment (DR site password).

DR_PASSWORD_ENCRYPTED holds a Fernet token whose key is derived with PBKDF2
from DRBACKUP_MASTER_PASSWORD and DRBACKUP_MASTER_SALT.
"""

import os
import base64
from typing import Optional, Tuple

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


KDF_ITERATIONS = 480000
SALT_BYTES = 16


class SecretCipher:
    """Fernet cipher keyed by a master password and salt."""

    def __init__(self, master_password: str, salt: Optional[bytes] = None):
        """
        Derive the cipher key.

        Args:
            master_password: Master password
            salt: PBKDF2 salt (a new random one is generated if None)
        """
        self.salt = salt if salt is not None else os.urandom(SALT_BYTES)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.salt,
            iterations=KDF_ITERATIONS,
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(master_password.encode())))

    @classmethod
    def from_salt_b64(cls, master_password: str, salt_b64: Optional[str]) -> 'SecretCipher':
        return cls(master_password, base64.b64decode(salt_b64) if salt_b64 else None)

    @property
    def salt_b64(self) -> str:
        """Salt in the form stored in DRBACKUP_MASTER_SALT."""
        return base64.b64encode(self.salt).decode()

    def encrypt(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(token).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Raises:
            cryptography.fernet.InvalidToken: If password or salt is wrong
        """
        token = base64.urlsafe_b64decode(encrypted.encode())
        return self._fernet.decrypt(token).decode()


def encrypt_secret(master_password: str, plaintext: str, salt_b64: Optional[str] = None) -> Tuple[str, str]:
    """
    Encrypt a secret for storage in the environment.

    Args:
        master_password: Master password
        plaintext: Secret to encrypt
        salt_b64: Existing base64 salt to reuse (new one generated if None)

    Returns:
        Tuple of (encrypted secret, base64 salt)
    """
    cipher = SecretCipher.from_salt_b64(master_password, salt_b64)
    return cipher.encrypt(plaintext), cipher.salt_b64


def decrypt_secret(master_password: str, salt_b64: str, encrypted: str) -> str:
    """
    Decrypt a secret produced by encrypt_secret().

    Raises:
        cryptography.fernet.InvalidToken: If password or salt is wrong
    """
    return SecretCipher.from_salt_b64(master_password, salt_b64).decrypt(encrypted)
