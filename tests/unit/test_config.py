"""Tests for EngineConfig and EngineConfig.from_env()."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from careflow.core.config import DEFAULT_APPOINTMENT_CATEGORIES, EngineConfig
from careflow.core.exceptions import ConfigurationError

_ENV_VARS = [
    "CAREFLOW_DATABASE",
    "CAREFLOW_POLL_INTERVAL",
    "CAREFLOW_LOG_LEVEL",
    "CAREFLOW_LOG_JSON",
    "CAREFLOW_FROM_EMAIL",
    "CAREFLOW_BUSINESS_NAME",
    "CAREFLOW_BUSINESS_PHONE",
    "CAREFLOW_BOOKING_LINK",
    "CAREFLOW_REVIEW_LINK",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "SENDGRID_API_KEY",
    "SENDGRID_FROM_EMAIL",
    "RESEND_API_KEY",
    "RESEND_FROM_EMAIL",
    "MAILCHIMP_API_KEY",
    "MAILCHIMP_FROM_EMAIL",
]


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults() -> None:
    config = EngineConfig()
    assert config.database == ":memory:"
    assert config.poll_interval_seconds == 60.0
    assert config.sendgrid.priority < config.resend.priority < config.mailchimp.priority
    assert config.appointment_categories == DEFAULT_APPOINTMENT_CATEGORIES
    assert config.appointment_categories is not DEFAULT_APPOINTMENT_CATEGORIES


def test_poll_interval_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        EngineConfig(poll_interval_seconds=0)


def test_from_env_defaults_when_not_set(clean_env: pytest.MonkeyPatch) -> None:
    config = EngineConfig.from_env()
    assert config.database == ":memory:"
    assert config.log_level == "INFO"
    assert config.log_json is True
    assert config.default_variables == {}
    assert config.twilio.account_sid is None
    assert config.sendgrid.api_key is None


def test_from_env_reads_engine_settings(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("CAREFLOW_DATABASE", "/tmp/careflow.db")
    clean_env.setenv("CAREFLOW_POLL_INTERVAL", "15")
    clean_env.setenv("CAREFLOW_LOG_LEVEL", "debug")
    clean_env.setenv("CAREFLOW_LOG_JSON", "false")
    clean_env.setenv("CAREFLOW_FROM_EMAIL", "hello@clinic.example")

    config = EngineConfig.from_env()

    assert config.database == "/tmp/careflow.db"
    assert config.poll_interval_seconds == 15.0
    assert config.log_level == "DEBUG"
    assert config.log_json is False
    assert config.default_from_email == "hello@clinic.example"


def test_from_env_reads_merge_variables(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("CAREFLOW_BUSINESS_NAME", "Glow Clinic")
    clean_env.setenv("CAREFLOW_BOOKING_LINK", "https://book.example")

    config = EngineConfig.from_env()

    assert config.default_variables == {
        "business_name": "Glow Clinic",
        "booking_link": "https://book.example",
    }


def test_from_env_reads_provider_credentials(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("TWILIO_ACCOUNT_SID", "AC1")
    clean_env.setenv("TWILIO_AUTH_TOKEN", "tok")
    clean_env.setenv("TWILIO_FROM_NUMBER", "+1555")
    clean_env.setenv("SENDGRID_API_KEY", "SG.x")
    clean_env.setenv("RESEND_FROM_EMAIL", "r@example.com")
    clean_env.setenv("MAILCHIMP_API_KEY", "")

    config = EngineConfig.from_env()

    assert config.twilio.account_sid == "AC1"
    assert config.twilio.from_number == "+1555"
    assert config.sendgrid.api_key == "SG.x"
    assert config.resend.from_email == "r@example.com"
    assert config.mailchimp.api_key is None


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CAREFLOW_POLL_INTERVAL", "soon"),
        ("CAREFLOW_POLL_INTERVAL", "-5"),
        ("CAREFLOW_LOG_LEVEL", "verbose"),
    ],
)
def test_from_env_rejects_unusable_values(
    clean_env: pytest.MonkeyPatch, name: str, value: str
) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ConfigurationError) as exc_info:
        EngineConfig.from_env()
    assert exc_info.value.code == "INVALID_CONFIG"
