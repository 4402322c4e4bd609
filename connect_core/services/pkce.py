"""
PKCE (RFC 7636) and state token generation.

State tokens and code verifiers are 32 bytes from the ``secrets`` CSPRNG,
base64url encoded without padding (43 characters). The S256 challenge is the
unpadded base64url SHA-256 digest of the ASCII verifier.
"""

import base64
import hashlib
import secrets

TOKEN_BYTES = 32
CODE_CHALLENGE_METHOD = "S256"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class PKCEGenerator:
    """Generates state tokens, code verifiers and S256 code challenges."""

    method = CODE_CHALLENGE_METHOD

    def __init__(self, num_bytes: int = TOKEN_BYTES):
        # RFC 7636 verifiers must be 43-128 characters
        if not 32 <= num_bytes <= 96:
            raise ValueError("num_bytes must be between 32 and 96")
        self.num_bytes = num_bytes

    def new_state(self) -> str:
        """Return a fresh unguessable state token."""
        return _b64url(secrets.token_bytes(self.num_bytes))

    def new_code_verifier(self) -> str:
        """Return a fresh PKCE code verifier."""
        return _b64url(secrets.token_bytes(self.num_bytes))

    @staticmethod
    def challenge_for(verifier: str) -> str:
        """Derive the S256 code challenge for a verifier."""
        return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
