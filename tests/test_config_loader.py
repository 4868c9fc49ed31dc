"""Tests for settings loading from config.ini and TMR_ environment variables."""

import pytest

from tenant_mail_relay.config_loader import core_kwargs, load_settings, parse_domain_list

ENV_KEYS = [
    "TMR_CONFIG",
    "TMR_LOG_LEVEL",
    "TMR_DB_PATH",
    "TMR_HOST",
    "TMR_PORT",
    "TMR_API_TOKEN",
    "TMR_SMTP_HOST",
    "TMR_SMTP_PORT",
    "TMR_SMTP_USER",
    "TMR_SMTP_PASS",
    "TMR_SMTP_TIMEOUT",
    "TMR_QUEUE_POLL_SECONDS",
    "TMR_BATCH_SIZE",
    "TMR_ARCHIVE_MAX_ROWS",
    "TMR_ARCHIVE_CULL_INTERVAL_SECONDS",
    "TMR_DOMAINS",
    "TMR_LOG_DELIVERY_ACTIVITY",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_parse_domain_list():
    assert parse_domain_list("a.com, b.org ,,") == ["a.com", "b.org"]
    assert parse_domain_list("") == []
    assert parse_domain_list(None) == []


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")
    assert settings["db_path"] == "relay.db"
    assert settings["http_port"] == 8080
    assert settings["smtp_host"] == "localhost"
    assert settings["smtp_port"] == 1025
    assert settings["smtp_timeout"] == 60.0
    assert settings["queue_poll_seconds"] == 5.0
    assert settings["archive_max_rows"] == 100_000
    assert settings["archive_cull_interval_seconds"] == 600.0
    assert settings["seed_domains"] == []
    assert settings["api_token"] is None
    assert settings["log_delivery_activity"] is False


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("TMR_SMTP_HOST", "relay.internal")
    monkeypatch.setenv("TMR_SMTP_PORT", "2525")
    monkeypatch.setenv("TMR_SMTP_USER", "u")
    monkeypatch.setenv("TMR_SMTP_PASS", "p")
    monkeypatch.setenv("TMR_DOMAINS", "example.com, other.org")
    monkeypatch.setenv("TMR_API_TOKEN", "  ")
    monkeypatch.setenv("TMR_LOG_DELIVERY_ACTIVITY", "yes")

    settings = load_settings(tmp_path / "missing.ini")
    assert settings["smtp_host"] == "relay.internal"
    assert settings["smtp_port"] == 2525
    assert settings["smtp_user"] == "u"
    assert settings["smtp_password"] == "p"
    assert settings["seed_domains"] == ["example.com", "other.org"]
    assert settings["api_token"] is None
    assert settings["log_delivery_activity"] is True


def test_config_file_wins_over_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /data/relay.db

[server]
port = 9000
api_token = admin

[smtp]
host = smtp.example.com
timeout = 15

[delivery]
batch_size = 50

[archive]
max_rows = 10

[domains]
seed = example.com
""")
    monkeypatch.setenv("TMR_SMTP_HOST", "ignored")
    monkeypatch.setenv("TMR_CONFIG", str(config_file))

    settings = load_settings()
    assert settings["db_path"] == "/data/relay.db"
    assert settings["http_port"] == 9000
    assert settings["api_token"] == "admin"
    assert settings["smtp_host"] == "smtp.example.com"
    assert settings["smtp_timeout"] == 15.0
    assert settings["batch_size"] == 50
    assert settings["archive_max_rows"] == 10
    assert settings["seed_domains"] == ["example.com"]


def test_core_kwargs_filters_settings(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")
    kwargs = core_kwargs(settings)
    assert "http_port" not in kwargs
    assert "api_token" not in kwargs
    assert kwargs["smtp_port"] == 1025
    assert kwargs["seed_domains"] == []
