from __future__ import annotations

import json

from config import apply_env_overrides, get_default_settings, load_settings, save_settings
from secrets_policy import scrub_secrets_for_persist


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(tmp_path / "server_config.json")

    assert settings["port"] == 3030
    assert settings["presence_backend"] == "auto"


def test_file_values_override_defaults(tmp_path):
    path = tmp_path / "server_config.json"
    path.write_text(json.dumps({"port": 4000, "turn_domain": "turn.example.com"}), encoding="utf-8")

    settings = load_settings(path)

    assert settings["port"] == 4000
    assert settings["turn_domain"] == "turn.example.com"
    assert settings["call_signal_ttl_seconds"] == 60


def test_corrupt_file_is_backed_up(tmp_path):
    path = tmp_path / "server_config.json"
    path.write_text("{not json", encoding="utf-8")

    settings = load_settings(path)

    assert settings == get_default_settings()
    assert not path.exists()
    assert len(list(tmp_path.glob("server_config.json.bad-*"))) == 1


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("TURN_SECRET", "from-env")
    monkeypatch.setenv("PULSE_INSTANCE_ID", "node-7")
    monkeypatch.setenv("PORT", "8080")
    settings = get_default_settings()

    apply_env_overrides(settings)

    assert settings["redis_url"] == "redis://cache:6379/0"
    assert settings["turn_secret"] == "from-env"
    assert settings["instance_id"] == "node-7"
    assert settings["port"] == 8080


def test_bad_port_env_is_ignored(monkeypatch):
    monkeypatch.setenv("PORT", "eighty")
    settings = get_default_settings()

    apply_env_overrides(settings)

    assert settings["port"] == 3030


def test_secrets_are_scrubbed_when_persistence_disabled(monkeypatch, tmp_path):
    monkeypatch.setenv("PULSE_PERSIST_SECRETS", "0")
    settings = get_default_settings()
    settings.update(jwt_secret="j", turn_secret="t", port=4000)

    scrubbed = scrub_secrets_for_persist(settings)
    assert "jwt_secret" not in scrubbed
    assert "turn_secret" not in scrubbed
    assert scrubbed["port"] == 4000

    path = tmp_path / "server_config.json"
    save_settings(path, settings)
    assert "turn_secret" not in json.loads(path.read_text(encoding="utf-8"))


def test_secrets_kept_by_default(monkeypatch):
    monkeypatch.delenv("PULSE_PERSIST_SECRETS", raising=False)

    assert scrub_secrets_for_persist({"jwt_secret": "j"}) == {"jwt_secret": "j"}
