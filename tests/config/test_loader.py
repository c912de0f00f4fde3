"""Tests for settings loading helpers."""

from pathlib import Path

from mcphub.config.loader import get_settings_dir, inject_env, load_settings, snake_to_camel


def test_inject_env_resolves_placeholders(monkeypatch):
    monkeypatch.setenv("MCPHUB_TEST_TOKEN", "secret")

    env = inject_env({"TOKEN": "${env:MCPHUB_TEST_TOKEN}", "PLAIN": "value"})

    assert env == {"TOKEN": "secret", "PLAIN": "value"}


def test_inject_env_missing_variable(monkeypatch):
    monkeypatch.delenv("MCPHUB_TEST_MISSING", raising=False)

    env = inject_env({"TOKEN": "Bearer ${env:MCPHUB_TEST_MISSING}"})

    assert env == {"TOKEN": "Bearer "}


def test_inject_env_custom_not_found_value(monkeypatch):
    monkeypatch.delenv("MCPHUB_TEST_MISSING", raising=False)

    env = inject_env({"TOKEN": "${env:MCPHUB_TEST_MISSING}"}, not_found_value="unset")

    assert env == {"TOKEN": "unset"}


def test_snake_to_camel():
    assert snake_to_camel("always_allow") == "alwaysAllow"
    assert snake_to_camel("session_id") == "sessionId"
    assert snake_to_camel("url") == "url"


def test_default_settings_dir():
    assert get_settings_dir() == Path.home() / ".mcphub"


def test_load_settings_defaults(monkeypatch):
    monkeypatch.delenv("MCPHUB_DEFAULT_TIMEOUT", raising=False)

    settings = load_settings()

    assert settings.default_timeout == 60
    assert settings.watch_files is True
    assert settings.global_settings_file == "mcp_settings.json"


def test_load_settings_env_and_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("MCPHUB_DEFAULT_TIMEOUT", "30")
    monkeypatch.setenv("MCPHUB_WATCH_FILES", "false")

    settings = load_settings(project_root=tmp_path, watch_files=None)

    assert settings.default_timeout == 30
    assert settings.watch_files is False
    assert settings.project_root == tmp_path

    settings = load_settings(default_timeout=10)
    assert settings.default_timeout == 10
