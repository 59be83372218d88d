import json
import math

import pytest

from novelscope.config import (
    DEFAULT_MODEL, SETTINGS_VERSION, Settings, load_saved_settings, load_settings, mask_api_key, save_settings,
    update_setting, validate_settings,
)
from novelscope.errors import ValidationError


def test_defaults_without_file(tmp_path):
    settings = load_settings(tmp_path / "settings.json")

    assert settings == Settings()
    assert settings.base_url == "https://api.openai.com/v1"
    assert settings.model == DEFAULT_MODEL
    assert settings.temperature == 0.7
    assert settings.max_tokens == 4000


def test_save_then_load(tmp_path):
    path = tmp_path / "settings.json"
    save_settings(Settings(api_key="sk-1", model="qwen-plus", temperature=0.2, group_size=10), path)

    raw = json.loads(path.read_text(encoding="utf-8"))
    loaded = load_settings(path)

    assert raw["version"] == SETTINGS_VERSION
    assert "last_modified" in raw
    assert loaded.model == "qwen-plus"
    assert loaded.temperature == 0.2
    assert loaded.group_size == 10


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    save_settings(Settings(api_key="sk-file", model="qwen-plus"), path)
    monkeypatch.setenv("NOVELSCOPE_API_KEY", "sk-env")
    monkeypatch.setenv("NOVELSCOPE_MAX_TOKENS", "2000")

    settings = load_settings(path)

    assert settings.api_key == "sk-env"
    assert settings.max_tokens == 2000
    assert settings.model == "qwen-plus"
    assert load_saved_settings(path).api_key == "sk-file"


def test_empty_env_value_is_ignored(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    save_settings(Settings(api_key="sk-file"), path)
    monkeypatch.setenv("NOVELSCOPE_API_KEY", "")

    assert load_settings(path).api_key == "sk-file"


def test_invalid_env_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("NOVELSCOPE_BASE_URL", "not-a-url")

    with pytest.raises(ValidationError):
        load_settings(tmp_path / "settings.json")


@pytest.mark.parametrize("saved", [
    {"temperature": 5},
    {"max_tokens": 50},
    {"base_url": "ftp://example.com"},
    {"api_key": "k" * 201},
])
def test_invalid_saved_settings_reset_to_defaults(tmp_path, saved):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps(dict(saved, model="kept-if-valid")), encoding="utf-8")

    assert load_settings(path) == Settings()


def test_unreadable_settings_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{broken", encoding="utf-8")

    assert load_settings(path) == Settings()


def test_save_rejects_invalid(tmp_path):
    with pytest.raises(ValidationError):
        save_settings(Settings.model_construct(temperature=1.5), tmp_path / "settings.json")


@pytest.mark.parametrize("values,bad", [
    ({"temperature": 0, "max_tokens": 32000}, set()),
    ({"temperature": 1, "base_url": "http://localhost:11434/v1"}, set()),
    ({"temperature": -0.1}, {"temperature"}),
    ({"temperature": math.nan}, {"temperature"}),
    ({"max_tokens": 32001}, {"max_tokens"}),
    ({"base_url": "nope", "model": "", "temperature": 3}, {"base_url", "model", "temperature"}),
])
def test_validate_settings(values, bad):
    assert set(validate_settings(values)) == bad


def test_update_setting_coerces_strings():
    settings = update_setting(Settings(), "max_tokens", "8000")
    settings = update_setting(settings, "temperature", "0.3")

    assert settings.max_tokens == 8000
    assert settings.temperature == 0.3


@pytest.mark.parametrize("key,raw", [
    ("max_tokens", "lots"),
    ("max_tokens", "99"),
    ("temperature", "nan"),
    ("temperature", "inf"),
    ("colour", "blue"),
])
def test_update_setting_rejects(key, raw):
    with pytest.raises(ValidationError):
        update_setting(Settings(), key, raw)


def test_non_finite_temperature_never_reaches_the_file(tmp_path):
    path = tmp_path / "settings.json"
    save_settings(Settings(), path)

    with pytest.raises(ValidationError):
        save_settings(update_setting(load_saved_settings(path), "temperature", "nan"), path)

    assert json.loads(path.read_text(encoding="utf-8"))["temperature"] == 0.7


def test_merged_skips_none_and_validates():
    base = Settings(model="a")

    assert base.merged(model=None, max_tokens=500).model == "a"
    assert base.merged(max_tokens=500).max_tokens == 500
    assert base.model == "a"
    with pytest.raises(ValidationError):
        base.merged(temperature=2.0)


@pytest.mark.parametrize("key,masked", [
    ("", "not set"),
    ("short", "***"),
    ("sk-1234567890abcdef", "sk-123...cdef"),
])
def test_mask_api_key(key, masked):
    assert mask_api_key(key) == masked
