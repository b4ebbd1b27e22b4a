from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy.engine import make_url

from Database import MaintenanceAgent
from Database import base
from Database.DatabaseConfig import (
    DatabaseConfig,
    RetryConfig,
    SupervisorConfig,
    TriggerConfig,
    get_config,
    load_config,
    mask_sensitive_data,
)


def test_load_config_defaults(monkeypatch):
    for name in ["RETRY_DEFERRED", "MAX_RETRY_ATTEMPTS", "LOOKBACK_HOURS", "AGENT_BASE_URL", "CRON_SECRET",
                 "MIN_ITEMS_DB_SOURCER", "ALERT_WEBHOOK_URL"]:
        monkeypatch.delenv(name, raising=False)

    config = load_config()

    assert config.retry.max_retry_attempts == 2
    assert config.retry.deferred is True
    assert config.retry.fatal_category_veto is False
    assert config.supervisor.lookback == timedelta(hours=6)
    assert config.supervisor.agent_timeout == timedelta(minutes=120)
    assert config.supervisor.min_items_for(MaintenanceAgent.DB_COMPLETER) == 10
    assert config.supervisor.min_items_for(MaintenanceAgent.DB_CLEANER) == 0
    assert config.trigger.base_url == "http://localhost:3003"
    assert config.notifications.webhook_url is None


def test_load_config_from_env(monkeypatch):
    monkeypatch.setenv("RETRY_DEFERRED", "false")
    monkeypatch.setenv("RETRY_FATAL_VETO", "TRUE")
    monkeypatch.setenv("MAX_RETRY_ATTEMPTS", "4")
    monkeypatch.setenv("MIN_ITEMS_DB_SOURCER", "25")
    monkeypatch.setenv("AGENT_BASE_URL", "https://agents.example.com/")
    monkeypatch.setenv("CRON_SECRET", "hunter2")
    monkeypatch.setenv("LOOKBACK_HOURS", "12")

    config = load_config()

    assert config.retry.deferred is False
    assert config.retry.fatal_category_veto is True
    assert config.retry.max_retry_attempts == 4
    assert config.supervisor.min_items_for("DB_SOURCER") == 25
    assert config.supervisor.lookback_hours == 12
    assert config.trigger.base_url == "https://agents.example.com"
    assert config.trigger.cron_secret.get_secret_value() == "hunter2"


def test_invalid_env_value_fails_loudly(monkeypatch):
    monkeypatch.setenv("RETRY_JITTER_FACTOR", "1.5")
    with pytest.raises(ValidationError):
        load_config()


def test_database_url_scheme():
    assert DatabaseConfig(url="sqlite:///tmp/x.db").url == "sqlite:///tmp/x.db"
    with pytest.raises(ValidationError):
        DatabaseConfig(url="mysql://user@host/db")


def test_engine_follows_database_config(tmp_path):
    engine = base.engine_from_config(DatabaseConfig(url=f"sqlite:///{tmp_path / 'x.db'}", echo=True))

    assert engine.echo is True
    assert engine.url.database == str(tmp_path / "x.db")
    engine.dispose()


def test_shared_engine_uses_validated_config():
    assert base.engine.url.database == make_url(get_config().database.url).database


def test_backoff_bases_must_fit_under_ceiling():
    with pytest.raises(ValidationError):
        RetryConfig(rate_limit_base_ms=60 * 60 * 1000)


def test_negative_minimum_is_rejected():
    with pytest.raises(ValidationError):
        SupervisorConfig(min_expected_items={"DB_SOURCER": -1})


def test_trigger_url_must_be_http():
    with pytest.raises(ValidationError):
        TriggerConfig(base_url="ftp://agents")


def test_mask_sensitive_data():
    masked = mask_sensitive_data({
        "agent": "DB_SOURCER",
        "api_key": "sk-123",
        "details": {"Authorization": "Bearer x", "items": 3},
    })

    assert masked == {
        "agent": "DB_SOURCER",
        "api_key": "***REDACTED***",
        "details": {"Authorization": "***REDACTED***", "items": 3},
    }


def test_secrets_never_print(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "hunter2")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.test/T0KEN")

    config = load_config()

    assert "hunter2" not in repr(config)
    assert "T0KEN" not in config.model_dump_json()
    assert config.notifications.webhook_url.get_secret_value() == "https://hooks.test/T0KEN"
