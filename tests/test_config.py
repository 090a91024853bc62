"""Tests for settings loading, env overrides, secret scrubbing and the janitor pass."""

import json

from janitor import run_janitor_pass
from main import apply_env_overrides, load_settings, save_settings
from secrets_policy import scrub_secrets_for_persist
from security import parse_limit_value
from server_init import build_store
from storage import MemoryStore


def test_load_settings_layers_file_over_defaults(tmp_path):
    path = tmp_path / "tonkotsu_config.json"
    path.write_text(json.dumps({"port": 6001, "guest_cooldown_seconds": 9}), encoding="utf-8")
    settings = load_settings(path)
    assert settings["port"] == 6001
    assert settings["guest_cooldown_seconds"] == 9
    assert settings["account_cooldown_seconds"] == 3


def test_load_settings_backs_up_broken_json(tmp_path):
    path = tmp_path / "tonkotsu_config.json"
    path.write_text("{not json", encoding="utf-8")
    settings = load_settings(path)
    assert settings["storage_backend"] == "memory"
    assert not path.exists()
    assert list(tmp_path.glob("tonkotsu_config.json.bad-*"))


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TONKOTSU_PORT", "7000")
    monkeypatch.setenv("TONKOTSU_STORAGE_BACKEND", "Postgres")
    monkeypatch.setenv("TONKOTSU_BOT_SECRET", "from-env")
    monkeypatch.setenv("TONKOTSU_TRUST_FORWARDED_FOR", "yes")
    settings = {}
    apply_env_overrides(settings)
    assert settings["port"] == 7000
    assert settings["storage_backend"] == "postgres"
    assert settings["bot_shared_secret"] == "from-env"
    assert settings["trust_forwarded_for"] is True


def test_secrets_are_scrubbed_when_persistence_is_off(monkeypatch, tmp_path):
    monkeypatch.setenv("TONKOTSU_PERSIST_SECRETS", "0")
    settings = {"port": 5000, "bot_shared_secret": "s3cret", "jwt_secret": "j"}
    scrubbed = scrub_secrets_for_persist(settings)
    assert "bot_shared_secret" not in scrubbed and "jwt_secret" not in scrubbed
    assert scrubbed["port"] == 5000

    path = tmp_path / "cfg.json"
    save_settings(path, settings)
    assert "s3cret" not in path.read_text(encoding="utf-8")


def test_build_store_memory():
    assert isinstance(build_store({"storage_backend": "memory"}), MemoryStore)


def test_janitor_pass_reports_counts(service, clock, make_guest, capsys):
    make_guest(connect=False)
    clock.advance(120)
    counts = run_janitor_pass(service)
    assert counts["guests"] == 1
    assert "[JANITOR] removed 1 disconnected guests" in capsys.readouterr().out


def test_parse_limit_value_accepts_limiter_strings():
    assert parse_limit_value("10 per minute", 1, 1) == (10, 60)
    assert parse_limit_value("5/hour", 1, 1) == (5, 3600)
    assert parse_limit_value("30@10", 1, 1) == (30, 10)
    assert parse_limit_value(7, 1, 1) == (7, 60)
    assert parse_limit_value("whenever", 10, 60) == (10, 60)
    assert parse_limit_value(None, 10, 60) == (10, 60)
