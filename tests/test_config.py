"""Tests for settings loading."""

from __future__ import annotations

from calsync.config import Settings


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("ENABLE_WEBHOOKS", "false")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "30")

    settings = Settings(_env_file=None)

    assert settings.enable_webhooks is False
    assert settings.rate_limit_per_minute == 30


def test_settings_read_env_file(tmp_path, monkeypatch):
    monkeypatch.delenv("PUBLIC_URL", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("PUBLIC_URL=https://sync.example.com\nUNRELATED_KEY=1\n")

    settings = Settings(_env_file=env_file)

    assert Settings.model_config["env_file"] == ".env"
    assert settings.public_url == "https://sync.example.com"
