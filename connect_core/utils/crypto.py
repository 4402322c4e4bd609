"""
Encryption helpers for secrets held in the authorization state store.

PKCE code verifiers are the one secret the server keeps between the start of
an authorization attempt and its validation. When a CryptoService is wired
into the state service, verifiers are stored as Fernet tokens so a dump of
the store does not reveal them.

Security features:
- Fernet encryption (AES 128 in CBC mode with HMAC-SHA256 authentication)
- Key rotation via MultiFernet (newest key encrypts, every key decrypts)
- Verifiers are never logged in clear text
"""

from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class CryptoServiceError(Exception):
    """Base exception for CryptoService operations."""

    pass


class DecryptionError(CryptoServiceError):
    """Raised when decryption fails (invalid ciphertext, wrong key, etc.)."""

    pass


class CryptoService:
    """
    Encrypts and decrypts short secrets with automatic key rotation support.

    The first key is used for encryption; all keys are tried for decryption,
    so values written before a rotation remain readable until they expire.

    Usage:
        crypto = CryptoService(settings.fernet_key)
        stored = crypto.encrypt_value(verifier)
        verifier = crypto.decrypt_value(stored)
    """

    def __init__(
        self, primary_key_b64: str, previous_keys_b64: Optional[Iterable[str]] = None
    ):
        """
        Args:
            primary_key_b64: Base64-encoded Fernet key used for encryption
            previous_keys_b64: Older keys still accepted for decryption
        """
        if not primary_key_b64:
            raise CryptoServiceError("A Fernet key is required")

        keys: List[Fernet] = [self._load_key(primary_key_b64, "primary")]
        for key_b64 in previous_keys_b64 or ():
            key_b64 = key_b64.strip()
            if key_b64:
                keys.append(self._load_key(key_b64, "previous"))

        self._multi_fernet = MultiFernet(keys)
        self._key_count = len(keys)

    @staticmethod
    def _load_key(key_b64: str, label: str) -> Fernet:
        try:
            return Fernet(key_b64.encode())
        except (ValueError, TypeError) as e:
            raise CryptoServiceError(f"Invalid {label} Fernet key: {e}") from e

    def encrypt_value(self, plaintext: str) -> str:
        """
        Encrypt a secret with the newest key.

        Args:
            plaintext: Secret to encrypt (never logged)

        Returns:
            URL-safe Fernet token as text

        Raises:
            CryptoServiceError: If the value is empty
        """
        if not plaintext:
            raise CryptoServiceError("Cannot encrypt empty value")

        return self._multi_fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt_value(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by encrypt_value.

        Raises:
            DecryptionError: If no available key can decrypt the value
        """
        if not ciphertext:
            raise DecryptionError("Cannot decrypt empty ciphertext")

        try:
            return self._multi_fernet.decrypt(ciphertext.encode("ascii")).decode(
                "utf-8"
            )
        except (InvalidToken, UnicodeError) as e:
            raise DecryptionError(
                f"Failed to decrypt value with any of the {self._key_count} available keys"
            ) from e

    def get_key_count(self) -> int:
        """Get the number of available keys (for diagnostics)."""
        return self._key_count


def generate_fernet_key() -> str:
    """Generate a new base64-encoded Fernet key suitable for FERNET_KEY."""
    return Fernet.generate_key().decode()

