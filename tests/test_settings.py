import pytest
from pydantic import ValidationError

from lotwatch.settings import Settings, load_settings


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    s = load_settings(tmp_path / "missing.toml")
    assert s.polling.default_interval_ms == 37000
    assert s.polling.fast_interval_ms == 7000
    assert s.notify.update_interval_sec == 60
    assert s.notify.active is False


def test_toml_sections_override_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    cfg = tmp_path / "lotwatch.toml"
    cfg.write_text(
        "[polling]\nfast_interval_ms = 5000\n\n"
        '[notify]\nenabled = true\nwebhook_url = "https://discord.test/hook"\n'
    )
    s = load_settings(cfg)
    assert s.polling.fast_interval_ms == 5000
    assert s.polling.default_interval_ms == 37000
    assert s.notify.active is True


def test_webhook_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.test/env")
    s = load_settings(tmp_path / "missing.toml")
    assert s.notify.webhook_url == "https://discord.test/env"


def test_configured_webhook_wins_over_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.test/env")
    cfg = tmp_path / "lotwatch.toml"
    cfg.write_text('[notify]\nwebhook_url = "https://discord.test/file"\n')
    assert load_settings(cfg).notify.webhook_url == "https://discord.test/file"


def test_edit_interval_has_a_floor():
    with pytest.raises(ValidationError):
        Settings.model_validate({"notify": {"update_interval_sec": 5}})


def test_headers_and_proxy(tmp_path):
    s = Settings()
    assert "User-Agent" in s.random_headers()
    assert s.random_proxy() is None

    proxies = tmp_path / "proxies.txt"
    proxies.write_text("http://10.0.0.1:8080\n")
    s = Settings.model_validate({"network": {"use_proxies": True, "proxy_file": str(proxies)}})
    assert s.random_proxy() == "http://10.0.0.1:8080"
