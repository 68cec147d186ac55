"""
Application configuration.

Settings are read from an optional YAML file and then overridden by
environment variables (via pydantic-settings), so secrets never need to
live in the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml  # type: ignore[import-untyped]
from pydantic_settings import BaseSettings, SettingsConfigDict

from classdrive.gdrive.config import DriveConfig, OAuthClientConfig

logger = structlog.get_logger()

ENV_PREFIX = "CLASSDRIVE_"


class EnvOverrides(BaseSettings):
    """Environment overrides, read from ``CLASSDRIVE_*`` variables or a ``.env`` file.

    Only values that are set and non-empty are applied on top of the file
    settings. Teacher sign-in and student Drive consent use separate OAuth
    clients, hence the ``teacher_`` and ``student_`` groups.
    """

    config: Path | None = None

    institutional_domain: str | None = None
    secret_key: str | None = None
    database_url: str | None = None
    frontend_url: str | None = None

    teacher_client_id: str | None = None
    teacher_client_secret: str | None = None
    teacher_redirect_uri: str | None = None

    student_client_id: str | None = None
    student_client_secret: str | None = None
    student_redirect_uri: str | None = None

    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )


@dataclass
class SmtpConfig:
    """Outgoing mail settings for authorization emails."""

    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    sender: str = "no-reply@slrtce.in"
    use_tls: bool = True
    timeout_seconds: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.host)


@dataclass
class AppConfig:
    """Top-level settings for the web service and CLI."""

    institutional_domain: str = "slrtce.in"
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///classdrive.db"
    frontend_url: str = "http://localhost:8000"
    session_cookie_name: str = "classdrive_session"
    session_max_age_seconds: int = 7 * 24 * 3600
    teacher_oauth: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    drive: DriveConfig = field(default_factory=DriveConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Build a config from a parsed settings dictionary."""
        config = cls()

        for key in (
            "institutional_domain",
            "secret_key",
            "database_url",
            "frontend_url",
            "session_cookie_name",
        ):
            if key in data:
                setattr(config, key, str(data[key]))
        if "session_max_age_seconds" in data:
            config.session_max_age_seconds = int(data["session_max_age_seconds"])

        if "teacher_oauth" in data:
            config.teacher_oauth.update(data["teacher_oauth"])

        if "smtp" in data:
            smtp_data = data["smtp"]
            config.smtp.host = smtp_data.get("host", config.smtp.host)
            config.smtp.port = int(smtp_data.get("port", config.smtp.port))
            config.smtp.username = smtp_data.get("username", config.smtp.username)
            config.smtp.password = smtp_data.get("password", config.smtp.password)
            config.smtp.sender = smtp_data.get("sender", config.smtp.sender)
            config.smtp.use_tls = bool(smtp_data.get("use_tls", config.smtp.use_tls))

        if "drive" in data:
            config.drive = DriveConfig.from_dict(data["drive"])

        return config

    def apply_env(self, overrides: EnvOverrides | None = None) -> AppConfig:
        """Overlay environment overrides onto this config."""
        env = overrides if overrides is not None else EnvOverrides()

        for attr in ("institutional_domain", "secret_key", "database_url", "frontend_url"):
            value = getattr(env, attr)
            if value:
                setattr(self, attr, value)

        for prefix, client in (("teacher_", self.teacher_oauth), ("student_", self.drive.oauth)):
            for key in ("client_id", "client_secret", "redirect_uri"):
                value = getattr(env, prefix + key)
                if value:
                    setattr(client, key, value)

        for key in ("host", "username", "password", "sender"):
            value = getattr(env, "smtp_" + key)
            if value:
                setattr(self.smtp, key, value)
        if env.smtp_port:
            self.smtp.port = env.smtp_port

        return self


def load_config(config_path: Path | None = None) -> AppConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        config_path: Path to settings.yaml. Falls back to CLASSDRIVE_CONFIG.

    Returns:
        Fully populated AppConfig.
    """
    env = EnvOverrides()
    if config_path is None:
        config_path = env.config

    data: dict[str, Any] = {}
    if config_path and config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        logger.info("config_loaded", path=str(config_path))
    else:
        logger.warning("using_default_config")

    return AppConfig.from_dict(data).apply_env(env)
