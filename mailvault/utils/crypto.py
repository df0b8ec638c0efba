"""
Encryption of backup artifacts.

Artifacts are encrypted with Fernet using a key derived from the task's
passphrase. Files are processed in chunks so large archives never have to
fit in memory.

File layout:
    16-byte PBKDF2 salt, then repeated [4-byte big-endian token length][Fernet token]
"""

import os
import base64
import struct

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

ENCRYPTION_ALGORITHM = 'Fernet (AES-128-CBC, HMAC-SHA256)'
SALT_SIZE = 16
CHUNK_SIZE = 4 * 1024 * 1024
KDF_ITERATIONS = 480000  # OWASP recommended iterations for 2023+


class EncryptionError(Exception):
    """Raised when an artifact cannot be encrypted or decrypted."""
    pass


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a passphrase with PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class ArchiveCipher:
    """Encrypts and decrypts artifact files with a passphrase."""

    def __init__(self, passphrase: str):
        if not passphrase:
            raise EncryptionError("Encryption passphrase is empty")
        self._passphrase = passphrase

    def encrypt_file(self, path: str, remove_original: bool = True) -> str:
        """
        Encrypt a file to {path}.enc.

        Returns:
            Path of the encrypted file
        """
        salt = os.urandom(SALT_SIZE)
        fernet = Fernet(derive_key(self._passphrase, salt))
        enc_path = f"{path}.enc"

        try:
            with open(path, 'rb') as src, open(enc_path, 'wb') as dst:
                dst.write(salt)
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                    token = fernet.encrypt(chunk)
                    dst.write(struct.pack('>I', len(token)))
                    dst.write(token)
        except OSError as e:
            if os.path.exists(enc_path):
                os.remove(enc_path)
            raise EncryptionError(f"Failed to encrypt {path}: {e}")

        if remove_original:
            os.remove(path)
        return enc_path

    def decrypt_file(self, enc_path: str, output_path: str = None) -> str:
        """
        Decrypt a file written by encrypt_file.

        Returns:
            Path of the decrypted file (enc_path without .enc by default)

        Raises:
            EncryptionError: If the passphrase is wrong or the file is damaged
        """
        if output_path is None:
            if not enc_path.endswith('.enc'):
                raise EncryptionError(f"Not an encrypted file name: {enc_path}")
            output_path = enc_path[:-4]

        try:
            with open(enc_path, 'rb') as src, open(output_path, 'wb') as dst:
                salt = src.read(SALT_SIZE)
                if len(salt) != SALT_SIZE:
                    raise EncryptionError(f"Encrypted file is truncated: {enc_path}")
                fernet = Fernet(derive_key(self._passphrase, salt))

                while True:
                    header = src.read(4)
                    if not header:
                        break
                    if len(header) != 4:
                        raise EncryptionError(f"Encrypted file is truncated: {enc_path}")
                    (length,) = struct.unpack('>I', header)
                    token = src.read(length)
                    if len(token) != length:
                        raise EncryptionError(f"Encrypted file is truncated: {enc_path}")
                    dst.write(fernet.decrypt(token))
        except InvalidToken:
            os.remove(output_path)
            raise EncryptionError("Decryption failed: wrong passphrase or corrupted artifact")
        except EncryptionError:
            os.remove(output_path)
            raise
        except OSError as e:
            raise EncryptionError(f"Failed to decrypt {enc_path}: {e}")

        return output_path
