"""Tests for config secret encryption."""

import json

import pytest

from agentfleet.worker.models import DecryptionError
from agentfleet.worker.services.crypto import ConfigCipher, is_encrypted, is_sensitive_key


class TestSensitiveKeys:
    """Test the secret-naming convention."""

    @pytest.mark.parametrize(
        "key",
        ["OPENAI_API_KEY", "openai_api_key", "GATEWAY_TOKEN", "token", "client_secret", "DB_PASSWORD"],
    )
    def test_sensitive(self, key: str) -> None:
        assert is_sensitive_key(key)

    @pytest.mark.parametrize("key", ["model", "keyboard", "tokens", "name", "auth"])
    def test_not_sensitive(self, key: str) -> None:
        assert not is_sensitive_key(key)


class TestConfigCipher:
    """Test encrypt/decrypt of values and config trees."""

    def test_encrypt_format(self, cipher: ConfigCipher) -> None:
        encrypted = cipher.encrypt("sk-secret")

        iv_hex, body_hex = encrypted.split(":")
        assert len(iv_hex) == 32
        assert is_encrypted(encrypted)
        assert cipher.decrypt(encrypted) == "sk-secret"

    def test_random_iv(self, cipher: ConfigCipher) -> None:
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_decrypt_passthrough_plain_text(self, cipher: ConfigCipher) -> None:
        assert cipher.decrypt("plain-value") == "plain-value"
        assert cipher.decrypt("") == ""

    def test_decrypt_malformed_returns_input(self, cipher: ConfigCipher) -> None:
        assert cipher.decrypt("zz:not-hex") == "zz:not-hex"

    def test_decrypt_wrong_key_returns_input(self, cipher: ConfigCipher) -> None:
        encrypted = ConfigCipher("another-key").encrypt("value")
        assert cipher.decrypt(encrypted) != "value"

    def test_decrypt_strict_raises(self, cipher: ConfigCipher) -> None:
        with pytest.raises(DecryptionError):
            cipher.decrypt_strict("abc:xyz")

    def test_nested_round_trip(self, cipher: ConfigCipher) -> None:
        """Secret-named leaves survive encrypt then decrypt at every depth."""
        original = {
            "OPENAI_API_KEY": "sk-123",
            "model": "gpt-4o",
            "gateway": {"auth": {"token": "gw-token"}, "port": 18789},
            "channels": [{"BOT_TOKEN": "bot-1", "enabled": True}],
        }

        encrypted = cipher.encrypt_config(original)

        assert encrypted["OPENAI_API_KEY"] != "sk-123"
        assert encrypted["gateway"]["auth"]["token"] != "gw-token"
        assert encrypted["channels"][0]["BOT_TOKEN"] != "bot-1"
        assert encrypted["model"] == "gpt-4o"
        assert cipher.decrypt_config(encrypted) == original

    def test_non_secret_document_unchanged(self, cipher: ConfigCipher) -> None:
        document = {"name": "eliza", "bio": ["a", "b"], "settings": {"voice": "x:y"}}
        assert cipher.decrypt_config(document) == document

    def test_encrypt_config_skips_already_encrypted(self, cipher: ConfigCipher) -> None:
        once = cipher.encrypt_config({"API_KEY": "secret"})
        twice = cipher.encrypt_config(once)
        assert twice == once

    def test_encrypt_mode_all(self) -> None:
        cipher = ConfigCipher("k", "all")
        encrypted = cipher.encrypt_config({"model": "gpt"})
        assert is_encrypted(encrypted["model"])

    def test_encrypt_mode_none(self) -> None:
        cipher = ConfigCipher("k", "none")
        assert cipher.encrypt_config({"API_KEY": "secret"}) == {"API_KEY": "secret"}

    def test_decrypt_json_string_root(self, cipher: ConfigCipher) -> None:
        raw = json.dumps({"API_KEY": cipher.encrypt("secret")})
        assert cipher.decrypt_config(raw) == {"API_KEY": "secret"}

    def test_decrypt_scalar_string_root(self, cipher: ConfigCipher) -> None:
        assert cipher.decrypt_config(cipher.encrypt("scalar")) == "scalar"

    def test_falsy_config_returned_as_is(self, cipher: ConfigCipher) -> None:
        assert cipher.decrypt_config({}) == {}
        assert cipher.decrypt_config(None) is None
