import builtins
import os
import logging

import pytest
from pydantic import ValidationError

import llm_humorizer.config as config
from llm_humorizer.config import Settings


from tests._helpers import make_fake_open


def test_key_quarantine_hours_zero_raises():
    with pytest.raises(ValidationError):
        Settings(key_quarantine_hours=0)


def test_key_quarantine_hours_string_is_int():
    s = Settings(key_quarantine_hours="12")
    assert isinstance(s.key_quarantine_hours, int)
    assert s.key_quarantine_hours == 12


def test_key_quarantine_hours_above_week_raises():
    with pytest.raises(ValidationError):
        Settings(key_quarantine_hours=169)


def test_key_quarantine_hours_defaults_to_one_day():
    assert Settings().key_quarantine_hours == 24


def test_max_code_generation_attempts_bounds():
    with pytest.raises(ValidationError):
        Settings(max_code_generation_attempts=0)
    with pytest.raises(ValidationError):
        Settings(max_code_generation_attempts=21)
    assert Settings(max_code_generation_attempts="3").max_code_generation_attempts == 3


def test_max_code_generation_attempts_non_numeric_raises():
    with pytest.raises(ValidationError):
        Settings(max_code_generation_attempts="abc")


def test_max_upload_bytes_too_small_raises():
    with pytest.raises(ValidationError):
        Settings(max_upload_bytes=10)


def test_jwt_expiry_days_bounds():
    with pytest.raises(ValidationError):
        Settings(jwt_expiry_days=0)
    with pytest.raises(ValidationError):
        Settings(jwt_expiry_days=5000)


def test_api_keys_are_trimmed_deduplicated_and_ordered(monkeypatch):
    monkeypatch.setattr(os.path, "isfile", lambda p: False)
    s = Settings(google_genai_api_keys=" k1, k2 ,,k1,\nk3 ")
    assert s.api_keys() == ["k1", "k2", "k3"]


def test_api_keys_empty_when_unset(monkeypatch):
    monkeypatch.setattr(os.path, "isfile", lambda p: False)
    assert Settings().api_keys() == []


def test_api_keys_read_from_env(monkeypatch):
    monkeypatch.setattr(os.path, "isfile", lambda p: False)
    monkeypatch.setenv("GOOGLE_GENAI_API_KEYS", "a,b")
    assert Settings().api_keys() == ["a", "b"]


def test_webdav_secrets_prefer_secret_over_env(monkeypatch):
    secret_path = "/run/secrets/webdav_password"
    monkeypatch.setattr(os.path, "isfile", lambda p: os.path.normpath(p) == os.path.normpath(secret_path))
    monkeypatch.setattr(builtins, "open", make_fake_open(secret_path, "super-secret\n"))

    s = Settings(webdav_password="env-pass")
    assert s.webdav_password == "super-secret"


def test_load_settings_exits_on_validation_error(monkeypatch, caplog):
    monkeypatch.setenv('KEY_QUARANTINE_HOURS', '0')

    caplog.set_level(logging.ERROR)
    with pytest.raises(SystemExit):
        config.load_settings()
    assert any('Configuration error' in r.message for r in caplog.records)


def test_oidc_enabled_with_missing_fields_warns(caplog):
    caplog.set_level(logging.WARNING, logger="llm_humorizer.config")
    Settings(oidc_enabled=True, oidc_client_id="id")
    assert any("OIDC enabled but missing settings" in r.getMessage() for r in caplog.records)


def test_local_iso_formatter_uses_timezone():
    fmt = config.LocalISOFormatter(tz_name='UTC')
    record = logging.LogRecord(name="test", level=logging.INFO, pathname=__file__, lineno=1, msg="x", args=(), exc_info=None)
    record.created = 0.0
    s = fmt.formatTime(record)
    assert s.startswith('1970-01-01T00:00:00.')
    assert s.endswith('+00:00')
