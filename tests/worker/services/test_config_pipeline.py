"""Tests for the config pipeline transforms."""

from agentfleet.worker.services.config_pipeline import (
    config_hash,
    mask_token,
    prepare_config,
    rename_key,
    sanitize_config,
)
from agentfleet.worker.services.crypto import ConfigCipher


def venice_config() -> dict:
    return {
        "auth": {
            "profiles": {
                "default": {"provider": "venice", "mode": "api_key", "token": "leaked"},
                "backup": {"provider": "openai", "token": "also-leaked"},
            }
        },
        "models": {
            "providers": {
                "venice": {"models": [{"id": "venice/venice/llama-3.3-70b", "api": "openai-responses"}]}
            }
        },
        "agents": {"defaults": {"model": {"primary": "venice/venice/venice/llama-3.3-70b"}}},
    }


class TestSanitizeConfig:
    """Test provider repairs."""

    def test_venice_model_repaired(self) -> None:
        clean = sanitize_config(venice_config())

        model = clean["models"]["providers"]["venice"]["models"][0]
        assert model["id"] == "llama-3.3-70b"
        assert model["api"] == "openai-completions"
        assert clean["agents"]["defaults"]["model"]["primary"] == "venice/llama-3.3-70b"

    def test_auth_profile_tokens_stripped(self) -> None:
        clean = sanitize_config(venice_config())

        for profile in clean["auth"]["profiles"].values():
            assert "token" not in profile
        assert clean["auth"]["profiles"]["default"]["mode"] == "api_key"

    def test_idempotent(self) -> None:
        once = sanitize_config(venice_config())
        assert sanitize_config(once) == once

    def test_input_not_mutated(self) -> None:
        config = venice_config()
        sanitize_config(config)
        assert config == venice_config()

    def test_other_provider_untouched(self) -> None:
        config = {
            "auth": {"profiles": {"default": {"provider": "openai"}}},
            "models": {"providers": {"venice": {"models": [{"id": "venice/x"}]}}},
        }
        assert sanitize_config(config) == config

    def test_non_dict_passthrough(self) -> None:
        assert sanitize_config([1, 2]) == [1, 2]
        assert sanitize_config(None) is None


class TestRenameKey:
    def test_renames_at_every_depth(self) -> None:
        value = {"lore": ["a"], "nested": [{"lore": "b", "other": {"lore": 1}}]}

        renamed = rename_key(value, "lore", "knowledge")

        assert renamed == {
            "knowledge": ["a"],
            "nested": [{"knowledge": "b", "other": {"knowledge": 1}}],
        }

    def test_values_untouched(self) -> None:
        assert rename_key({"k": "lore"}, "lore", "knowledge") == {"k": "lore"}


def test_prepare_config_decrypts_then_sanitizes(cipher: ConfigCipher) -> None:
    stored = cipher.encrypt_config({"auth": {"profiles": {"default": {"token": "x"}}}, "API_KEY": "sk"})

    prepared = prepare_config(stored, cipher)

    assert prepared == {"auth": {"profiles": {"default": {}}}, "API_KEY": "sk"}


def test_config_hash_ignores_key_order() -> None:
    assert config_hash({"a": 1, "b": {"c": 2}}) == config_hash({"b": {"c": 2}, "a": 1})
    assert config_hash({"a": 1}) != config_hash({"a": 2})


def test_mask_token() -> None:
    assert mask_token("abcdefghijkl") == "abcd...ijkl"
    assert mask_token(None) == "null"
