"""
Tests for configuration layering: defaults, JSON file, environment.
"""

import json

import pytest

from codegrounds_config import BASELINE_MODEL, HIGH_CAPACITY_MODEL, default_config, load_config, load_credentials


def test_credentials_from_numbered_slots():
    keys = load_credentials({"GEMINI_API_KEY_1": "a", "GEMINI_API_KEY_3": " c ", "GEMINI_API_KEY_7": "ignored"})
    assert keys == {1: "a", 3: "c"}


def test_legacy_key_fills_empty_slot_one():
    assert load_credentials({"GEMINI_API_KEY": "legacy", "GEMINI_API_KEY_2": "b"}) == {1: "legacy", 2: "b"}
    assert load_credentials({"GEMINI_API_KEY": "legacy", "GEMINI_API_KEY_1": "new"}) == {1: "new"}


def test_defaults():
    config = default_config()

    assert config.default_model == HIGH_CAPACITY_MODEL
    assert config.max_retries == 3
    assert config.chunk_size == 3
    assert config.command_timeout == 300
    assert not config.has_credentials()
    assert config.get_role("engineer").model == BASELINE_MODEL
    with pytest.raises(ValueError):
        config.get_role("janitor")


def test_env_overrides():
    config = load_config(env={
        "GEMINI_API_KEY_2": "k2",
        "DEFAULT_MODEL": "gemini-2.0-pro",
        "MODEL_ENGINEER": "gemini-2.0-flash",
        "DEBUG": "true",
    })
    descriptors = config.descriptors()

    assert config.api_keys == {2: "k2"}
    assert config.debug is True
    assert descriptors["architect"].model_id == "gemini-2.0-pro"
    assert descriptors["engineer"].model_id == "gemini-2.0-flash"
    assert descriptors["tester"].model_id == "gemini-2.0-flash"


def test_json_file_overrides(tmp_path):
    path = tmp_path / "codegrounds.json"
    path.write_text(json.dumps({
        "chunk_size": 2,
        "projects_dir": "out",
        "agents": {"debugger": {"max_steps": 80, "key_index": 2}, "unknown": {"model": "x"}},
    }))

    config = load_config(path, env={})

    assert config.chunk_size == 2
    assert config.projects_dir == "out"
    assert config.get_role("debugger").max_steps == 80
    assert config.descriptors()["debugger"].credential_index == 2


def test_missing_config_file_uses_defaults(tmp_path):
    config = load_config(tmp_path / "absent.json", env={})
    assert config.chunk_size == 3
