"""
Process Configuration for Safe on Shift.

``AppConfig`` describes how one process is wired: which SMS and email
providers to use, how often the background tasks poll, and the values
the settings singleton is seeded with at boot.  It is read once at start
and does not change at runtime -- the admin-mutable knobs live in
``safeshift.settings.SystemSettings``.

Configuration comes from a YAML file validated through the pydantic
models below, then environment variables override provider credentials
so secrets never have to be written to disk.

Example YAML::

    app_name: "Safe on Shift"
    escalation_poll_interval_seconds: 60
    sms:
      provider: twilio
      from_number: "+15551234567"
    initial_settings:
      escalation_delay_minutes: 10
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from safeshift.settings import SystemSettings


# ---------------------------------------------------------------------------
# Transport configuration
# ---------------------------------------------------------------------------

class SmsConfig(BaseModel):
    """SMS provider selection and credentials."""

    provider: str = Field(
        default="console",
        description="'console' logs messages instead of sending; 'twilio' sends via the Twilio REST API.",
    )
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    api_base_url: str = "https://api.twilio.com"
    timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        allowed = {"console", "twilio"}
        if v not in allowed:
            raise ValueError(f"sms.provider must be one of {sorted(allowed)}, got '{v}'")
        return v


class EmailConfig(BaseModel):
    """Email provider selection."""

    provider: str = "console"
    from_address: str = "noreply@safeonshift.com"

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v != "console":
            raise ValueError(f"email.provider must be 'console', got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Application configuration
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    """Complete configuration for one Safe on Shift process."""

    app_name: str = Field(default="Safe on Shift", min_length=1)
    log_level: str = "INFO"
    escalation_poll_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description=(
            "How often the escalation scheduler scans active alerts.  "
            "Independent of the per-alert escalation delay."
        ),
    )
    overdue_check_interval_seconds: float = Field(default=30.0, gt=0)
    enable_overdue_monitor: bool = Field(
        default=True,
        description="Run the overdue check-in sweep in-process instead of from an external cron.",
    )
    sms: SmsConfig = Field(default_factory=SmsConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    initial_settings: SystemSettings = Field(default_factory=SystemSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"log_level '{v}' is not a standard logging level")
        return level


DEFAULT_CONFIG = AppConfig()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config_from_yaml(path: str | Path) -> AppConfig:
    """Load and validate an ``AppConfig`` from a YAML file.

    An empty file yields the defaults.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the top level is not a mapping.
        pydantic.ValidationError: If any value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return AppConfig()
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a mapping at the top level.")

    return AppConfig.model_validate(raw)


_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "APP_NAME": ("app_name",),
    "LOG_LEVEL": ("log_level",),
    "SMS_PROVIDER": ("sms", "provider"),
    "TWILIO_ACCOUNT_SID": ("sms", "account_sid"),
    "TWILIO_AUTH_TOKEN": ("sms", "auth_token"),
    "TWILIO_PHONE_NUMBER": ("sms", "from_number"),
    "EMAIL_PROVIDER": ("email", "provider"),
    "EMAIL_FROM": ("email", "from_address"),
}


def apply_env_overrides(
    config: AppConfig, environ: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Return a copy of ``config`` with environment variables applied.

    Only non-empty variables listed in ``_ENV_OVERRIDES`` are considered.
    The result is re-validated, so a bad override raises the same error a
    bad YAML value would.
    """
    if environ is None:
        environ = os.environ

    data = config.model_dump()
    for var, path in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        target = data
        for key in path[:-1]:
            target = target[key]
        target[path[-1]] = value

    return AppConfig.model_validate(data)
