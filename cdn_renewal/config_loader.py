"""
Configuration loading, validation, and parsing.

Loads configuration from a YAML file once at startup and provides typed
access to configuration values. The resulting Config is handed to every
component constructor; components never read the environment themselves.
"""

import os
import re
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

import yaml

from .logger import get_logger


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_CDN_URL = "https://api.digitalocean.com/v2/cdn"
DEFAULT_CERTIFICATES_URL = "https://api.digitalocean.com/v2"


@dataclass
class ApiSettings:
    """Provider REST API settings shared by the CDN and certificate clients."""
    token: str = ""
    cdn_url: str = DEFAULT_CDN_URL
    certificates_url: str = DEFAULT_CERTIFICATES_URL
    timeout_connect: float = 5.0
    timeout_read: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 0.5
    per_page: int = 50


@dataclass
class AcmeSettings:
    """Certbot / ACME issuance settings."""
    email: str = ""
    dns_plugin: str = "digitalocean"
    dns_credentials: str = ""
    use_staging: bool = False
    propagation_seconds: int = 60
    key_type: str = "rsa"  # "rsa" or "ecdsa"
    rsa_key_size: int = 2048
    elliptic_curve: str = "secp384r1"
    certbot_work_dir: str = "/tmp/certbot"
    certbot_logs_dir: str = "/tmp/certbot-logs"
    certbot_config_dir: str = "/tmp/certbot-config"
    certbot_timeout: int = 600


@dataclass
class Settings:
    """Run-wide behavior."""
    continue_on_error: bool = False
    dry_run: bool = False


@dataclass
class EmailNotificationConfig:
    """Email notification configuration."""
    enabled: bool = False
    from_email: str = ""
    to_emails: List[str] = field(default_factory=list)
    sendgrid_api_key: str = ""


@dataclass
class TeamsNotificationConfig:
    """Teams notification configuration."""
    enabled: bool = False
    webhook_url: str = ""


@dataclass
class NotificationsConfig:
    """Notification channels configuration."""
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    teams: TeamsNotificationConfig = field(default_factory=TeamsNotificationConfig)


@dataclass
class Config:
    """Root configuration object."""
    api: ApiSettings = field(default_factory=ApiSettings)
    acme: AcmeSettings = field(default_factory=AcmeSettings)
    settings: Settings = field(default_factory=Settings)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


def _expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in string values.

    Supports ${VAR_NAME} syntax. Unset variables expand to an empty string
    so that a missing secret is reported by validation, not sent verbatim.

    Args:
        value: Value to expand (string, dict, or list)

    Returns:
        Value with environment variables expanded
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"
        return re.sub(pattern, lambda m: os.environ.get(m.group(1), ""), value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]

    return value


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "0", "off", ""):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got: {value!r}")


def _as_number(value: Any, name: str, kind=int):
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got: {value!r}")
    if number < 0:
        raise ConfigurationError(f"{name} must not be negative, got: {value!r}")
    return number


def _parse_api(data: Dict[str, Any]) -> ApiSettings:
    """
    Parse the api section.

    Args:
        data: Raw api data from YAML

    Returns:
        ApiSettings instance
    """
    defaults = ApiSettings()
    api = ApiSettings(
        token=str(data.get("token", "") or "").strip(),
        cdn_url=str(data.get("cdn_url", defaults.cdn_url)).rstrip("/"),
        certificates_url=str(data.get("certificates_url", defaults.certificates_url)).rstrip("/"),
        timeout_connect=_as_number(data.get("timeout_connect", defaults.timeout_connect), "api.timeout_connect", float),
        timeout_read=_as_number(data.get("timeout_read", defaults.timeout_read), "api.timeout_read", float),
        max_retries=_as_number(data.get("max_retries", defaults.max_retries), "api.max_retries"),
        backoff_factor=_as_number(data.get("backoff_factor", defaults.backoff_factor), "api.backoff_factor", float),
        per_page=_as_number(data.get("per_page", defaults.per_page), "api.per_page"),
    )

    for name, url in (("cdn_url", api.cdn_url), ("certificates_url", api.certificates_url)):
        if not url.startswith(("https://", "http://")):
            raise ConfigurationError(f"api.{name} must be an http(s) URL, got: {url!r}")
    if api.timeout_connect == 0 or api.timeout_read == 0:
        raise ConfigurationError("api timeouts must be greater than zero")
    if not 1 <= api.per_page <= 200:
        raise ConfigurationError("api.per_page must be between 1 and 200")

    return api


def _parse_acme(data: Dict[str, Any]) -> AcmeSettings:
    """
    Parse the acme section.

    Args:
        data: Raw acme data from YAML

    Returns:
        AcmeSettings instance
    """
    defaults = AcmeSettings()
    acme = AcmeSettings(
        email=str(data.get("email", "") or "").strip(),
        dns_plugin=str(data.get("dns_plugin", defaults.dns_plugin)).strip().lower(),
        dns_credentials=str(data.get("dns_credentials", "") or "").strip(),
        use_staging=_as_bool(data.get("use_staging", False), "acme.use_staging"),
        propagation_seconds=_as_number(
            data.get("propagation_seconds", defaults.propagation_seconds), "acme.propagation_seconds"
        ),
        key_type=str(data.get("key_type", defaults.key_type)).lower(),
        rsa_key_size=_as_number(data.get("rsa_key_size", defaults.rsa_key_size), "acme.rsa_key_size"),
        elliptic_curve=str(data.get("elliptic_curve", defaults.elliptic_curve)).lower(),
        certbot_work_dir=data.get("certbot_work_dir", defaults.certbot_work_dir),
        certbot_logs_dir=data.get("certbot_logs_dir", defaults.certbot_logs_dir),
        certbot_config_dir=data.get("certbot_config_dir", defaults.certbot_config_dir),
        certbot_timeout=_as_number(data.get("certbot_timeout", defaults.certbot_timeout), "acme.certbot_timeout"),
    )

    if not re.fullmatch(r"[a-z0-9][a-z0-9-]*", acme.dns_plugin):
        raise ConfigurationError(f"Invalid dns_plugin '{acme.dns_plugin}'")

    valid_key_types = ["rsa", "ecdsa"]
    if acme.key_type not in valid_key_types:
        raise ConfigurationError(
            f"Invalid key_type '{acme.key_type}'. Must be one of: {', '.join(valid_key_types)}"
        )

    valid_rsa_sizes = [2048, 3072, 4096]
    if acme.rsa_key_size not in valid_rsa_sizes:
        raise ConfigurationError(
            f"Invalid rsa_key_size '{acme.rsa_key_size}'. Must be one of: {', '.join(map(str, valid_rsa_sizes))}"
        )

    valid_curves = ["secp256r1", "secp384r1"]
    if acme.elliptic_curve not in valid_curves:
        raise ConfigurationError(
            f"Invalid elliptic_curve '{acme.elliptic_curve}'. Must be one of: {', '.join(valid_curves)}"
        )

    return acme


def _parse_settings(data: Dict[str, Any]) -> Settings:
    return Settings(
        continue_on_error=_as_bool(data.get("continue_on_error", False), "settings.continue_on_error"),
        dry_run=_as_bool(data.get("dry_run", False), "settings.dry_run"),
    )


def _parse_notifications(data: Dict[str, Any]) -> NotificationsConfig:
    """
    Parse notifications configuration.

    Args:
        data: Raw notifications data from YAML

    Returns:
        NotificationsConfig instance
    """
    email_data = data.get("email", {}) or {}
    to_emails = email_data.get("to_emails", [])
    if isinstance(to_emails, str):
        to_emails = [to_emails]

    email_config = EmailNotificationConfig(
        enabled=_as_bool(email_data.get("enabled", False), "notifications.email.enabled"),
        from_email=email_data.get("from_email", ""),
        to_emails=to_emails,
        sendgrid_api_key=email_data.get("sendgrid_api_key", ""),
    )

    teams_data = data.get("teams", {}) or {}
    teams_config = TeamsNotificationConfig(
        enabled=_as_bool(teams_data.get("enabled", False), "notifications.teams.enabled"),
        webhook_url=teams_data.get("webhook_url", ""),
    )

    return NotificationsConfig(email=email_config, teams=teams_config)


def parse_config(raw_data: Dict[str, Any]) -> Config:
    """
    Build a validated Config from already-loaded YAML data.

    Args:
        raw_data: Mapping as produced by yaml.safe_load

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    if not isinstance(raw_data, dict):
        raise ConfigurationError("Configuration must be a mapping")

    data = _expand_env_vars(raw_data)

    if "api" not in data:
        raise ConfigurationError("Missing 'api' section in configuration")

    return Config(
        api=_parse_api(data.get("api") or {}),
        acme=_parse_acme(data.get("acme") or {}),
        settings=_parse_settings(data.get("settings") or {}),
        notifications=_parse_notifications(data.get("notifications") or {}),
    )


def load_config(config_path: str) -> Config:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = get_logger()
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    if path.suffix not in (".yaml", ".yml"):
        raise ConfigurationError(
            f"Configuration file must be YAML (.yaml or .yml): {config_path}"
        )

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if not raw_data:
        raise ConfigurationError("Configuration file is empty")

    config = parse_config(raw_data)

    logger.info(f"Loaded configuration from {config_path}")
    logger.info(f"  CDN API: {config.api.cdn_url}")
    logger.info(f"  Certificate API: {config.api.certificates_url}")
    logger.info(f"  DNS plugin: {config.acme.dns_plugin}")

    enabled_channels = []
    if config.notifications.email.enabled:
        enabled_channels.append("email")
    if config.notifications.teams.enabled:
        enabled_channels.append("teams")
    if enabled_channels:
        logger.info(f"  Notifications: {', '.join(enabled_channels)}")
    else:
        logger.info("  Notifications: disabled")

    return config
