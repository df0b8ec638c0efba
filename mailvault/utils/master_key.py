"""
Master key encryption utilities.

Uses Flask SECRET_KEY to encrypt task encryption passphrases for storage in
the database.
"""

import base64
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class MasterKeyManager:
    """
    Handles encryption/decryption of stored secrets using SECRET_KEY.
    """

    def __init__(self, secret_key: str):
        # Fixed salt: SECRET_KEY itself is the secret
        fixed_salt = b'mailvault_master_key_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt_secret(self, plaintext: str) -> str:
        """
        Encrypt a secret for persistent storage.

        Returns:
            Base64-encoded ciphertext
        """
        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt_secret(self, encrypted: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            cryptography.fernet.InvalidToken: If SECRET_KEY changed or data is corrupted
        """
        encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
        return self._fernet.decrypt(encrypted_bytes).decode()


def get_master_key_manager(app) -> MasterKeyManager:
    """
    Create a MasterKeyManager from Flask app config.

    Raises:
        RuntimeError: If SECRET_KEY not configured
    """
    secret_key = app.config.get('SECRET_KEY')

    if not secret_key:
        raise RuntimeError("SECRET_KEY not configured - cannot initialize MasterKeyManager")

    return MasterKeyManager(secret_key)
