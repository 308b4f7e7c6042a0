"""Bridge configuration.

Every model is a pydantic-settings class so fields can be overridden via
environment variables.  :func:`load_config` additionally accepts the JSON
file layout used by existing deployments::

    {
      "dingtalk": {"app_key": "...", "app_secret": "...", "agent_id": "123"},
      "smtp": {"listen_addr": "0.0.0.0:2525", "domain": "mail.example.com"},
      "user_mappings": {"alice@example.com": "13800000000"}
    }
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

from .address import normalize_address


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value.strip()


class PlatformConfig(BaseSettings):
    """DingTalk application credentials and delivery settings."""

    model_config = {"env_prefix": "DINGTALK_"}

    app_key: str = Field(description="DingTalk application key")
    app_secret: SecretStr = Field(description="DingTalk application secret")
    agent_id: int = Field(gt=0, description="Agent id that sends work notifications")
    base_url: str = Field(
        default="https://oapi.dingtalk.com",
        description="Base URL of the DingTalk open API",
    )
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")
    batch_size: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Recipients per send call (1 sends one call per recipient)",
    )
    token_safety_margin_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Seconds subtracted from the token TTL before it is considered expired",
    )
    notification_title: str = Field(
        default="Mail notification",
        description="Notification title used when the mail has no subject",
    )
    include_sender: bool = Field(
        default=False,
        description="Render the envelope sender in the notification text",
    )

    @field_validator("app_key")
    @classmethod
    def _app_key_not_blank(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("app_secret")
    @classmethod
    def _app_secret_not_blank(cls, value: SecretStr) -> SecretStr:
        _require_text(value.get_secret_value())
        return value


class SmtpConfig(BaseSettings):
    """Inbound SMTP listener settings."""

    model_config = {"env_prefix": "SMTP_"}

    listen_addr: str = Field(description="host:port the SMTP server binds to")
    domain: str = Field(description="Hostname announced in the SMTP greeting")
    timeout_seconds: float = Field(
        default=30.0,
        description="Idle timeout for a client connection",
    )
    max_message_bytes: int = Field(
        default=1024 * 1024,
        description="Largest DATA payload accepted",
    )
    max_recipients: int = Field(
        default=50,
        ge=1,
        description="Largest number of RCPT commands accepted per transaction",
    )
    allow_insecure_auth: bool = Field(
        default=True,
        description="Advertise AUTH without TLS and accept any credentials",
    )

    @field_validator("listen_addr", "domain")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _require_text(value)

    @field_validator("listen_addr")
    @classmethod
    def _has_port(cls, value: str) -> str:
        _, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError("must be in host:port form")
        return value

    @property
    def host(self) -> str:
        host = self.listen_addr.rpartition(":")[0]
        return host.strip("[]") or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.listen_addr.rpartition(":")[2])


class RetryConfig(BaseSettings):
    """Retry / backoff settings for platform HTTP calls, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, ge=1, description="Maximum attempts per HTTP call")
    initial_wait_seconds: float = Field(default=0.5, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=5.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class BridgeConfig(BaseSettings):
    """Root configuration for a bridge process."""

    model_config = {"env_prefix": "BRIDGE_"}

    dingtalk: PlatformConfig = Field(default_factory=PlatformConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    user_mappings: dict[str, str] = Field(
        description="Mail address to contact key (mobile number) mapping",
    )
    health_port: int = Field(
        default=8080,
        ge=0,
        description="Port for health probe endpoints (0 to disable)",
    )
    shutdown_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Seconds in-flight sessions get to finish on shutdown",
    )
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("user_mappings")
    @classmethod
    def _normalize_mappings(cls, value: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for address, contact_key in value.items():
            key = normalize_address(address)
            if not key:
                raise ValueError(f"invalid mail address {address!r}")
            if not contact_key.strip():
                raise ValueError(f"blank contact key for {address!r}")
            normalized[key] = contact_key.strip()
        if not normalized:
            raise ValueError("at least one user mapping is required")
        return normalized


def load_config(path: str | Path) -> BridgeConfig:
    """Load a :class:`BridgeConfig` from a JSON file.

    Values from the file take precedence over environment variables.
    Raises ``FileNotFoundError`` if *path* does not exist and
    ``pydantic.ValidationError`` on invalid or missing settings.
    """
    data: dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
    return BridgeConfig(**data)
