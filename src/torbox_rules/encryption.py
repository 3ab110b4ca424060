"""
Credential encryption for stored TorBox API keys

AES-256-GCM with a server-wide key that lives in the database and a fresh
96-bit nonce per encryption. Tenants are identified by the SHA-256 hex digest
of their raw API key.
"""

import hashlib
import secrets
import threading
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from torbox_rules.errors import DecryptionError, EncryptionKeyError

KEY_LENGTH = 32  # 256 bits
NONCE_LENGTH = 12  # 96 bits (recommended for GCM)


def generate_key() -> bytes:
    """Generate a new random server key"""
    return secrets.token_bytes(KEY_LENGTH)


def hash_credential(raw: str) -> str:
    """
    Stable one-way tenant identifier for a raw API key

    Examples:
        >>> hash_credential('abc') == hash_credential('abc')
        True
        >>> len(hash_credential('abc'))
        64
    """
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


class EncryptionService:
    """Holds the server key and encrypts/decrypts tenant credentials"""

    def __init__(self):
        self._aesgcm: Optional[AESGCM] = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._aesgcm is not None

    def initialize(self, key: bytes):
        """
        Load the server key for the lifetime of the service

        Raises:
            EncryptionKeyError: Key is not exactly 32 bytes
        """
        if not isinstance(key, (bytes, bytearray)):
            raise EncryptionKeyError(f"Key must be bytes, got {type(key).__name__}")
        if len(key) != KEY_LENGTH:
            raise EncryptionKeyError(f"Key has invalid length: {len(key)} (expected {KEY_LENGTH})")

        with self._lock:
            self._aesgcm = AESGCM(bytes(key))

    def _cipher(self) -> AESGCM:
        if self._aesgcm is None:
            raise EncryptionKeyError("Encryption key not initialized")
        return self._aesgcm

    hash_credential = staticmethod(hash_credential)

    def encrypt_credential(self, raw: str) -> Tuple[bytes, bytes]:
        """
        Encrypt a raw API key

        Returns:
            (ciphertext, nonce)
        """
        nonce = secrets.token_bytes(NONCE_LENGTH)
        ciphertext = self._cipher().encrypt(nonce, raw.encode('utf-8'), None)
        return ciphertext, nonce

    def decrypt_credential(self, ciphertext: bytes, nonce: bytes) -> str:
        """
        Decrypt a stored API key

        Raises:
            DecryptionError: Tag mismatch, wrong key/nonce, or non UTF-8 plaintext
        """
        cipher = self._cipher()
        try:
            plaintext = cipher.decrypt(bytes(nonce), bytes(ciphertext), None)
        except InvalidTag:
            raise DecryptionError("Authentication tag verification failed")
        except ValueError as e:
            raise DecryptionError(str(e))

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Invalid UTF-8: {e}")
