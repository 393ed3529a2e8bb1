"""
Credential Vault

Stores at most one BYOK provider credential per firm, encrypted at rest.
The plaintext key exists only in memory while a call is being prepared: it
is never logged and never returned to a client (describe() masks it).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .billing import utcnow
from .crypto import CryptoError, SecretCipher, mask_api_key, validate_api_key_format
from .providers import Provider, get_capabilities, parse_provider

logger = logging.getLogger(__name__)

# Stored in place of a key for providers that do not need one
KEYLESS_PLACEHOLDER = "keyless"


class CredentialUnavailable(Exception):
    """Raised when a stored credential cannot be read or decrypted, or cannot be encrypted."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.tenant_id = tenant_id


class InvalidCredentialError(ValueError):
    """Raised when a submitted provider/model/key combination is rejected."""


@dataclass
class CredentialRecord:
    """Stored (encrypted) provider credential for a firm."""
    tenant_id: str
    provider: Provider
    model: str
    encrypted_secret: str = field(repr=False)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: dict) -> "CredentialRecord":
        return cls(
            tenant_id=str(row["tenant_id"]),
            provider=parse_provider(row["provider"]),
            model=row["model"],
            encrypted_secret=row["api_key_encrypted"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )


@dataclass(frozen=True)
class ResolvedCredential:
    """Decrypted credential, forwarded to a workflow only when BYOK applies."""
    tenant_id: str
    provider: Provider
    model: str
    secret: str = field(repr=False)

    @property
    def masked_secret(self) -> str:
        return mask_api_key(self.secret)

    def to_llm_config(self) -> dict:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "api_key": self.secret,
        }


class CredentialVault:
    """
    Reads and writes firm credentials through a store.

    Usage:
        vault = CredentialVault(store)
        vault.upsert(tenant_id, "openai", "gpt-4o-mini", "sk-...")
        credential = vault.get(tenant_id)   # ResolvedCredential or None
        vault.delete(tenant_id)
    """

    def __init__(self, store, cipher: Optional[SecretCipher] = None):
        self.store = store
        self._cipher = cipher

    @property
    def cipher(self) -> SecretCipher:
        if self._cipher is None:
            try:
                self._cipher = SecretCipher.from_env()
            except CryptoError as e:
                raise CredentialUnavailable(f"Encryption is not configured: {e}") from e
        return self._cipher

    def get(self, tenant_id: str) -> Optional[ResolvedCredential]:
        """
        Load and decrypt the tenant's credential.

        Returns:
            ResolvedCredential, or None if the tenant has no record

        Raises:
            CredentialUnavailable: If the lookup or decryption fails
        """
        try:
            record = self.store.get_credential(tenant_id)
        except Exception as e:
            raise CredentialUnavailable(f"Credential lookup failed: {e}", tenant_id) from e

        if record is None:
            return None

        try:
            secret = self.cipher.decrypt(record.encrypted_secret)
        except CryptoError as e:
            logger.warning(f"Credential for tenant {tenant_id} could not be decrypted: {e}")
            raise CredentialUnavailable("Stored credential could not be decrypted", tenant_id) from e

        return ResolvedCredential(
            tenant_id=record.tenant_id,
            provider=record.provider,
            model=record.model,
            secret=secret,
        )

    def describe(self, tenant_id: str) -> Optional[dict]:
        """Client-safe view of the credential: provider, model, timestamps and a masked key."""
        record = self.store.get_credential(tenant_id)
        if record is None:
            return None

        masked = None
        try:
            masked = mask_api_key(self.cipher.decrypt(record.encrypted_secret))
        except (CryptoError, CredentialUnavailable) as e:
            logger.warning(f"Cannot mask credential for tenant {tenant_id}: {e}")

        return {
            "provider": record.provider.value,
            "model": record.model,
            "masked_key": masked,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    def upsert(self, tenant_id: str, provider, model: str, plaintext_secret: Optional[str]) -> None:
        """
        Create or replace the tenant's credential and mark the firm as BYOK.

        Raises:
            InvalidCredentialError: Unknown provider, empty model, or malformed key
            CredentialUnavailable: If encryption fails
        """
        try:
            provider = parse_provider(provider)
        except ValueError as e:
            raise InvalidCredentialError(str(e)) from None

        model = (model or "").strip()
        if not model:
            raise InvalidCredentialError("model is required")

        secret = (plaintext_secret or "").strip()
        if not validate_api_key_format(secret, provider):
            raise InvalidCredentialError(f"Invalid API key format for provider: {provider.value}")
        if not secret and not get_capabilities(provider).requires_key:
            secret = KEYLESS_PLACEHOLDER

        try:
            encrypted = self.cipher.encrypt(secret)
        except CryptoError as e:
            raise CredentialUnavailable(f"Credential could not be encrypted: {e}", tenant_id) from e

        now = utcnow()
        self.store.upsert_credential(CredentialRecord(
            tenant_id=tenant_id,
            provider=provider,
            model=model,
            encrypted_secret=encrypted,
            created_at=now,
            updated_at=now,
        ))
        logger.info(f"Saved AI credential for tenant {tenant_id} (provider: {provider.value}, model: {model})")

    def delete(self, tenant_id: str) -> None:
        """Remove the tenant's credential and clear the BYOK flag."""
        removed = self.store.delete_credential(tenant_id)
        if removed:
            logger.info(f"Deleted AI credential for tenant {tenant_id}")
        else:
            logger.info(f"No AI credential to delete for tenant {tenant_id}")
