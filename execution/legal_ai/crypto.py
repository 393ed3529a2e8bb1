"""
Secret encryption for BYOK API keys

Provider keys are stored encrypted with an XSalsa20-Poly1305 secret box
(PyNaCl). The master key is a base64-encoded 32-byte value read from
LEGAL_AI_ENCRYPTION_KEY. Ciphertext is stored as base64(nonce || box).

Plaintext keys and ciphertext are never logged; use mask_api_key() when a
key has to appear in a log line or a response.
"""

import os
import base64
import logging
from typing import Optional

import nacl.exceptions
import nacl.utils
from nacl.secret import SecretBox

from .providers import get_capabilities

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "LEGAL_AI_ENCRYPTION_KEY"
MASTER_KEY_SIZE = SecretBox.KEY_SIZE


class CryptoError(Exception):
    """Raised when encryption or decryption fails."""


class SecretCipher:
    """Encrypts and decrypts short secrets with a single master key."""

    def __init__(self, master_key: bytes):
        if len(master_key) != MASTER_KEY_SIZE:
            raise CryptoError(
                f"Master key must be {MASTER_KEY_SIZE} bytes, got {len(master_key)} bytes"
            )
        self._box = SecretBox(master_key)

    @classmethod
    def from_env(cls, env_var: str = MASTER_KEY_ENV) -> "SecretCipher":
        """
        Build a cipher from the base64 master key in the environment.

        Raises:
            CryptoError: If the variable is missing, not base64, or the wrong size
        """
        key_b64 = os.getenv(env_var, "")
        if not key_b64:
            raise CryptoError(f"{env_var} environment variable is not set")
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (ValueError, TypeError) as e:
            raise CryptoError(f"{env_var} is not valid base64: {e}") from e
        return cls(key)

    @staticmethod
    def generate_key() -> str:
        """Generate a new base64 master key suitable for LEGAL_AI_ENCRYPTION_KEY."""
        return base64.b64encode(nacl.utils.random(MASTER_KEY_SIZE)).decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        if not plaintext or not plaintext.strip():
            raise CryptoError("Cannot encrypt empty text")
        try:
            encrypted = self._box.encrypt(plaintext.encode("utf-8"))
        except nacl.exceptions.CryptoError as e:
            raise CryptoError(f"Encryption failed: {type(e).__name__}") from e
        return base64.b64encode(bytes(encrypted)).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token or not token.strip():
            raise CryptoError("Cannot decrypt empty text")
        try:
            raw = base64.b64decode(token, validate=True)
        except (ValueError, TypeError) as e:
            raise CryptoError("Ciphertext is not valid base64") from e
        try:
            return self._box.decrypt(raw).decode("utf-8")
        except (nacl.exceptions.CryptoError, UnicodeDecodeError) as e:
            # Wrong key or tampered ciphertext
            raise CryptoError(f"Decryption failed: {type(e).__name__}") from e


def validate_api_key_format(api_key: Optional[str], provider) -> bool:
    """
    Basic shape check of a provider API key.

    Checks the provider's key prefix and minimum length. Providers that do
    not need a key (local Ollama) accept anything, including empty.
    """
    caps = get_capabilities(provider)
    if not caps.requires_key:
        return True
    if not api_key or not api_key.strip():
        return False
    trimmed = api_key.strip()
    return trimmed.startswith(caps.key_prefix) and len(trimmed) >= caps.min_key_length


def mask_api_key(api_key: Optional[str]) -> str:
    """Mask a key for display: first 8 and last 4 characters."""
    if not api_key or len(api_key) < 12:
        return "***"
    return f"{api_key[:8]}...{api_key[-4:]}"
