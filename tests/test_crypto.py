"""
Tests for execution/legal_ai/crypto.py and execution/legal_ai/providers.py
"""

import base64

import pytest


# ---------------------------------------------------------------------------
# SecretCipher
# ---------------------------------------------------------------------------

class TestSecretCipher:

    def test_encrypt_decrypt(self, cipher):
        token = cipher.encrypt("sk-secret-value-1234567890")
        assert token != "sk-secret-value-1234567890"
        assert cipher.decrypt(token) == "sk-secret-value-1234567890"

    def test_nonce_differs_per_call(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_wrong_key_fails(self, cipher):
        import nacl.utils
        from nacl.secret import SecretBox
        from execution.legal_ai.crypto import CryptoError, SecretCipher
        token = cipher.encrypt("value")
        other = SecretCipher(nacl.utils.random(SecretBox.KEY_SIZE))
        with pytest.raises(CryptoError):
            other.decrypt(token)

    def test_tampered_token_fails(self, cipher):
        from execution.legal_ai.crypto import CryptoError
        raw = bytearray(base64.b64decode(cipher.encrypt("value")))
        raw[-1] ^= 0x01
        with pytest.raises(CryptoError):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    @pytest.mark.parametrize("token", ["", "   ", "not base64!!"])
    def test_garbage_token_fails(self, cipher, token):
        from execution.legal_ai.crypto import CryptoError
        with pytest.raises(CryptoError):
            cipher.decrypt(token)

    def test_empty_plaintext_rejected(self, cipher):
        from execution.legal_ai.crypto import CryptoError
        with pytest.raises(CryptoError):
            cipher.encrypt("")

    def test_wrong_key_size(self):
        from execution.legal_ai.crypto import CryptoError, SecretCipher
        with pytest.raises(CryptoError):
            SecretCipher(b"too-short")


class TestFromEnv:

    def test_from_env(self, monkeypatch):
        from execution.legal_ai.crypto import SecretCipher
        monkeypatch.setenv("LEGAL_AI_ENCRYPTION_KEY", SecretCipher.generate_key())
        cipher = SecretCipher.from_env()
        assert cipher.decrypt(cipher.encrypt("x" * 30)) == "x" * 30

    def test_missing_env(self, monkeypatch):
        from execution.legal_ai.crypto import CryptoError, SecretCipher
        monkeypatch.delenv("LEGAL_AI_ENCRYPTION_KEY", raising=False)
        with pytest.raises(CryptoError):
            SecretCipher.from_env()

    def test_invalid_base64_env(self, monkeypatch):
        from execution.legal_ai.crypto import CryptoError, SecretCipher
        monkeypatch.setenv("LEGAL_AI_ENCRYPTION_KEY", "%%%")
        with pytest.raises(CryptoError):
            SecretCipher.from_env()


# ---------------------------------------------------------------------------
# Key format and masking
# ---------------------------------------------------------------------------

class TestValidateApiKeyFormat:

    @pytest.mark.parametrize("provider,key,valid", [
        ("openai", "sk-" + "a" * 18, True),
        ("openai", "sk-" + "a" * 17, False),
        ("openai", "xx-" + "a" * 30, False),
        ("openrouter", "sk-or-" + "a" * 25, True),
        ("openrouter", "sk-or-" + "a" * 24, False),
        ("deepseek", "d" * 21, True),
        ("deepseek", "d" * 20, False),
        ("ollama", "", True),
        ("ollama", None, True),
        ("openai", None, False),
    ])
    def test_formats(self, provider, key, valid):
        from execution.legal_ai.crypto import validate_api_key_format
        assert validate_api_key_format(key, provider) is valid


class TestMaskApiKey:

    def test_mask(self):
        from execution.legal_ai.crypto import mask_api_key
        assert mask_api_key("sk-abcdefghijklmnopqrstuvwxyz") == "sk-abcde...wxyz"

    @pytest.mark.parametrize("key", [None, "", "short"])
    def test_short_keys_fully_masked(self, key):
        from execution.legal_ai.crypto import mask_api_key
        assert mask_api_key(key) == "***"


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TestProviders:

    def test_every_provider_has_capabilities(self):
        from execution.legal_ai.providers import PROVIDER_CAPABILITIES, Provider
        assert set(PROVIDER_CAPABILITIES) == set(Provider)

    @pytest.mark.parametrize("raw", ["openai", " OpenAI ", "OPENAI"])
    def test_parse_provider(self, raw):
        from execution.legal_ai.providers import Provider, parse_provider
        assert parse_provider(raw) == Provider.OPENAI

    def test_parse_unknown(self):
        from execution.legal_ai.providers import parse_provider
        with pytest.raises(ValueError, match="supported"):
            parse_provider("anthropic")

    def test_supported_models(self):
        from execution.legal_ai.providers import get_supported_models
        assert "deepseek-chat" in get_supported_models("deepseek")

    def test_only_ollama_is_keyless(self):
        from execution.legal_ai.providers import PROVIDER_CAPABILITIES, Provider
        keyless = {p for p, caps in PROVIDER_CAPABILITIES.items() if not caps.requires_key}
        assert keyless == {Provider.OLLAMA}
