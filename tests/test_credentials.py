"""
Tests for execution/legal_ai/credentials.py

Covers: CredentialVault upsert/get/describe/delete, has_byok bookkeeping,
validation errors, encryption at rest, and secret masking.
"""

from unittest.mock import MagicMock

import pytest

from tests.conftest import OPENAI_KEY, TENANT_A, TENANT_B


class TestUpsert:

    def test_upsert_sets_byok_flag(self, vault, memory_store, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        assert memory_store.get_billing(free_tenant).has_byok is True

    def test_secret_encrypted_at_rest(self, vault, memory_store, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        record = memory_store.get_credential(free_tenant)
        assert OPENAI_KEY not in record.encrypted_secret
        assert OPENAI_KEY not in repr(record)

    def test_upsert_replaces_existing(self, vault, free_tenant):
        from execution.legal_ai.providers import Provider
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        vault.upsert(free_tenant, "openrouter", "openai/gpt-4o", "sk-or-v1-0123456789abcdefghijklmnopqrstuv")
        credential = vault.get(free_tenant)
        assert credential.provider == Provider.OPENROUTER
        assert credential.model == "openai/gpt-4o"

    def test_upsert_keeps_created_at(self, vault, memory_store, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        created = memory_store.get_credential(free_tenant).created_at
        vault.upsert(free_tenant, "openai", "gpt-4o", OPENAI_KEY)
        assert memory_store.get_credential(free_tenant).created_at == created

    @pytest.mark.parametrize("provider,key", [
        ("openai", "pk-0123456789abcdefghijklmnop"),
        ("openai", "sk-short"),
        ("openrouter", "sk-0123456789abcdefghijklmnopqrstuvwxyz"),
        ("deepseek", ""),
    ])
    def test_malformed_key_rejected(self, vault, memory_store, free_tenant, provider, key):
        from execution.legal_ai.credentials import InvalidCredentialError
        with pytest.raises(InvalidCredentialError):
            vault.upsert(free_tenant, provider, "some-model", key)
        assert memory_store.get_billing(free_tenant).has_byok is False

    def test_unknown_provider_rejected(self, vault, free_tenant):
        from execution.legal_ai.credentials import InvalidCredentialError
        with pytest.raises(InvalidCredentialError):
            vault.upsert(free_tenant, "mistral-cloud", "large", OPENAI_KEY)

    def test_empty_model_rejected(self, vault, free_tenant):
        from execution.legal_ai.credentials import InvalidCredentialError
        with pytest.raises(InvalidCredentialError):
            vault.upsert(free_tenant, "openai", "  ", OPENAI_KEY)

    def test_ollama_without_key(self, vault, free_tenant):
        from execution.legal_ai.credentials import KEYLESS_PLACEHOLDER
        vault.upsert(free_tenant, "ollama", "llama3", None)
        assert vault.get(free_tenant).secret == KEYLESS_PLACEHOLDER

    def test_missing_master_key(self, memory_store, free_tenant, monkeypatch):
        from execution.legal_ai.credentials import CredentialUnavailable, CredentialVault
        monkeypatch.delenv("LEGAL_AI_ENCRYPTION_KEY", raising=False)
        vault = CredentialVault(memory_store)
        with pytest.raises(CredentialUnavailable):
            vault.upsert(free_tenant, "openai", "gpt-4o", OPENAI_KEY)


class TestGet:

    def test_round_trip(self, vault, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        credential = vault.get(free_tenant)
        assert credential.secret == OPENAI_KEY
        assert credential.tenant_id == free_tenant

    def test_missing_returns_none(self, vault, free_tenant):
        assert vault.get(free_tenant) is None

    def test_store_failure_unavailable(self, cipher):
        from execution.legal_ai.credentials import CredentialUnavailable, CredentialVault
        store = MagicMock()
        store.get_credential.side_effect = RuntimeError("connection refused")
        with pytest.raises(CredentialUnavailable):
            CredentialVault(store, cipher=cipher).get(TENANT_A)

    def test_tampered_ciphertext_unavailable(self, vault, memory_store, free_tenant):
        from execution.legal_ai.credentials import CredentialUnavailable
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        memory_store._credentials[free_tenant].encrypted_secret = "bm90LWEtcmVhbC1ib3g="
        with pytest.raises(CredentialUnavailable):
            vault.get(free_tenant)

    def test_tenants_isolated(self, vault, memory_store, free_tenant):
        from tests.conftest import make_billing
        memory_store.create_billing(make_billing(TENANT_B))
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        assert vault.get(TENANT_B) is None


class TestResolvedCredential:

    def test_llm_config(self, vault, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        assert vault.get(free_tenant).to_llm_config() == {
            "provider": "openai",
            "model": "gpt-4o-mini",
            "api_key": OPENAI_KEY,
        }

    def test_repr_hides_secret(self, vault, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        credential = vault.get(free_tenant)
        assert OPENAI_KEY not in repr(credential)
        assert credential.masked_secret == f"{OPENAI_KEY[:8]}...{OPENAI_KEY[-4:]}"


class TestDescribeAndDelete:

    def test_describe_masks_key(self, vault, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        described = vault.describe(free_tenant)
        assert described["provider"] == "openai"
        assert described["model"] == "gpt-4o-mini"
        assert described["masked_key"] == "sk-test-...mnop"
        assert OPENAI_KEY not in str(described)

    def test_describe_missing(self, vault, free_tenant):
        assert vault.describe(free_tenant) is None

    def test_delete_clears_flag(self, vault, memory_store, free_tenant):
        vault.upsert(free_tenant, "openai", "gpt-4o-mini", OPENAI_KEY)
        vault.delete(free_tenant)
        assert vault.get(free_tenant) is None
        assert memory_store.get_billing(free_tenant).has_byok is False

    def test_delete_without_record(self, vault, memory_store, free_tenant):
        vault.delete(free_tenant)
        assert memory_store.get_billing(free_tenant).has_byok is False
