from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from careflow.core.exceptions import ConfigurationError


class TwilioSettings(BaseModel):
    account_sid: str | None = None
    auth_token: str | None = None
    from_number: str | None = None
    max_message_length: int = 1600


class SendGridSettings(BaseModel):
    api_key: str | None = None
    from_email: str | None = None
    priority: int = 1


class ResendSettings(BaseModel):
    api_key: str | None = None
    from_email: str | None = None
    priority: int = 2


class MailchimpSettings(BaseModel):
    api_key: str | None = None
    from_email: str | None = None
    priority: int = 3


DEFAULT_APPOINTMENT_CATEGORIES: dict[str, list[str]] = {
    "morpheus8": ["morpheus8", "morpheus"],
    "toxins": ["botox", "toxin", "wrinkle treatment", "neurotoxin"],
    "filler": ["filler", "dermal filler", "juvederm", "restylane"],
    "consultation": ["consultation", "consult", "initial"],
}


class EngineConfig(BaseModel):
    """Runtime configuration for the automation engine.

    Provider credentials left unset make the matching provider report itself
    unavailable; the chain then falls through to the next transport.
    """

    database: str = ":memory:"
    """SQLite path for the persistent store, or ``":memory:"``."""
    poll_interval_seconds: float = Field(default=60.0, gt=0.0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True
    default_from_email: str = "noreply@example.com"
    http_timeout_seconds: float = Field(default=15.0, gt=0.0)
    twilio: TwilioSettings = Field(default_factory=TwilioSettings)
    sendgrid: SendGridSettings = Field(default_factory=SendGridSettings)
    resend: ResendSettings = Field(default_factory=ResendSettings)
    mailchimp: MailchimpSettings = Field(default_factory=MailchimpSettings)
    default_variables: dict[str, str] = Field(default_factory=dict)
    """Org-level merge variables (``business_name``, ``booking_link``, ...)."""
    appointment_categories: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_APPOINTMENT_CATEGORIES.items()}
    )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create an :class:`EngineConfig` from environment variables.

        Reads the following env vars (all optional):

        * ``CAREFLOW_DATABASE`` → ``database``
        * ``CAREFLOW_POLL_INTERVAL`` → ``poll_interval_seconds``
        * ``CAREFLOW_LOG_LEVEL`` → ``log_level``
        * ``CAREFLOW_LOG_JSON`` → ``log_json`` (``0``/``false`` disables)
        * ``CAREFLOW_FROM_EMAIL`` → ``default_from_email``
        * ``CAREFLOW_BUSINESS_NAME`` / ``CAREFLOW_BUSINESS_PHONE`` /
          ``CAREFLOW_BOOKING_LINK`` / ``CAREFLOW_REVIEW_LINK`` →
          ``default_variables``
        * ``TWILIO_ACCOUNT_SID``, ``TWILIO_AUTH_TOKEN``, ``TWILIO_FROM_NUMBER``
        * ``SENDGRID_API_KEY``, ``SENDGRID_FROM_EMAIL``
        * ``RESEND_API_KEY``, ``RESEND_FROM_EMAIL``
        * ``MAILCHIMP_API_KEY``, ``MAILCHIMP_FROM_EMAIL``

        Any variable that is not set or is empty is left at its default value.

        Raises:
            ConfigurationError: A variable is set to a value that cannot be used.
        """
        env = os.environ
        kwargs: dict[str, Any] = {}

        if env.get("CAREFLOW_DATABASE"):
            kwargs["database"] = env["CAREFLOW_DATABASE"]
        if interval := env.get("CAREFLOW_POLL_INTERVAL"):
            try:
                kwargs["poll_interval_seconds"] = float(interval)
            except ValueError as exc:
                raise ConfigurationError(
                    f"CAREFLOW_POLL_INTERVAL must be a number, got {interval!r}",
                    code="INVALID_CONFIG",
                ) from exc
        if env.get("CAREFLOW_LOG_LEVEL"):
            kwargs["log_level"] = env["CAREFLOW_LOG_LEVEL"].upper()
        if env.get("CAREFLOW_LOG_JSON"):
            kwargs["log_json"] = env["CAREFLOW_LOG_JSON"].lower() not in ("0", "false", "no")
        if env.get("CAREFLOW_FROM_EMAIL"):
            kwargs["default_from_email"] = env["CAREFLOW_FROM_EMAIL"]

        variables: dict[str, str] = {}
        for key in ("business_name", "business_phone", "booking_link", "review_link"):
            value = env.get(f"CAREFLOW_{key.upper()}")
            if value:
                variables[key] = value
        if variables:
            kwargs["default_variables"] = variables

        kwargs["twilio"] = TwilioSettings(
            account_sid=env.get("TWILIO_ACCOUNT_SID") or None,
            auth_token=env.get("TWILIO_AUTH_TOKEN") or None,
            from_number=env.get("TWILIO_FROM_NUMBER") or None,
        )
        kwargs["sendgrid"] = SendGridSettings(
            api_key=env.get("SENDGRID_API_KEY") or None,
            from_email=env.get("SENDGRID_FROM_EMAIL") or None,
        )
        kwargs["resend"] = ResendSettings(
            api_key=env.get("RESEND_API_KEY") or None,
            from_email=env.get("RESEND_FROM_EMAIL") or None,
        )
        kwargs["mailchimp"] = MailchimpSettings(
            api_key=env.get("MAILCHIMP_API_KEY") or None,
            from_email=env.get("MAILCHIMP_FROM_EMAIL") or None,
        )

        try:
            return cls(**kwargs)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid careflow configuration from environment: {exc}",
                code="INVALID_CONFIG",
                details={"errors": exc.errors(include_url=False)},
            ) from exc
