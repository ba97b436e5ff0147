"""
Configuration pipeline applied before an agent container starts.

Every function here is a pure tree transform over JSON-like values
(dicts, lists and scalars): inputs are never mutated.
"""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any

from .crypto import ConfigCipher

VENICE_PROVIDER = "venice"
VENICE_MODEL_API = "openai-completions"


def sanitize_config(config: Any) -> Any:
    """
    Repair known provider and schema mismatches in an agent config.

    Idempotent: ``sanitize_config(sanitize_config(c)) == sanitize_config(c)``.

    Args:
        config: Decrypted config tree

    Returns:
        Repaired deep copy of the config
    """
    if not config or not isinstance(config, dict):
        return config
    clean = copy.deepcopy(config)

    profiles = _get_path(clean, "auth", "profiles")
    default_profile = profiles.get("default") if isinstance(profiles, dict) else None

    if isinstance(default_profile, dict) and default_profile.get("provider") == VENICE_PROVIDER:
        models = _get_path(clean, "models", "providers", VENICE_PROVIDER, "models")
        if isinstance(models, list) and models and isinstance(models[0], dict):
            model = models[0]
            model_id = model.get("id")
            if isinstance(model_id, str):
                prefix = f"{VENICE_PROVIDER}/"
                while model_id.startswith(prefix):
                    model_id = model_id[len(prefix):]
                model["id"] = model_id

            if model.get("api") != VENICE_MODEL_API:
                model["api"] = VENICE_MODEL_API

            primary_holder = _get_path(clean, "agents", "defaults", "model")
            if isinstance(primary_holder, dict):
                primary_holder["primary"] = f"{VENICE_PROVIDER}/{model.get('id')}"

    # Gateway validation rejects a literal token inside auth profiles.
    if isinstance(profiles, dict):
        for profile in profiles.values():
            if isinstance(profile, dict):
                profile.pop("token", None)

    return clean


def rename_key(value: Any, old_key: str, new_key: str) -> Any:
    """Recursively rename ``old_key`` to ``new_key`` in every nested object."""
    if isinstance(value, list):
        return [rename_key(item, old_key, new_key) for item in value]
    if isinstance(value, dict):
        return {
            (new_key if key == old_key else key): rename_key(item, old_key, new_key)
            for key, item in value.items()
        }
    return value


def prepare_config(config: Any, cipher: ConfigCipher) -> Any:
    """Decrypt then sanitize a stored config."""
    return sanitize_config(cipher.decrypt_config(config))


def config_hash(config: Any) -> str:
    """Stable content hash of a desired config."""
    canonical = json.dumps(config, sort_keys=True, default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def mask_token(token: str | None) -> str:
    """Mask a secret for logging."""
    if not token:
        return "null"
    return f"{token[:4]}...{token[-4:]}"


def _get_path(tree: Any, *keys: str) -> Any:
    node = tree
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node
