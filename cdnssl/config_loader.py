"""
Configuration loading, validation, and change detection.

Loads configuration from YAML files and provides typed access to
configuration values. ConfigSource re-reads the file once per cycle and
flags which capability sections changed since the previous read.
"""

import dataclasses
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


DEFAULT_QINIU_API_URL = "https://api.qiniu.com"
DEFAULT_LOOKAHEAD_DAYS = 30
# certbot's --keep-until-expiring only re-issues inside its own 30-day window
MAX_LOOKAHEAD_DAYS = 30


@dataclass
class Settings:
    """Control loop settings."""
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    min_cycle_interval: int = 3600  # seconds between cycle starts
    call_timeout: int = 300  # seconds per capability call
    workers: int = 1
    max_renewals_per_cycle: int = 0  # 0 = unlimited
    include_domains: List[str] = field(default_factory=list)
    ignore_domains: List[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(frozen=True)
class IssuerConfig:
    """ACME issuance (certbot) configuration."""
    email: str = ""
    staging: bool = False
    key_type: str = "rsa"  # "rsa" or "ecdsa"
    rsa_key_size: int = 2048
    elliptic_curve: str = "secp384r1"
    dns_plugin: str = ""  # certbot authenticator, e.g. "dns-aliyun"
    dns_credentials: Dict[str, str] = field(default_factory=dict)
    propagation_seconds: int = 60
    work_dir: str = "/tmp/certbot"
    logs_dir: str = "/tmp/certbot-logs"
    config_dir: str = "/tmp/certbot-config"


@dataclass(frozen=True)
class CdnConfig:
    """Qiniu CDN API credentials."""
    access_key: str = ""
    secret_key: str = ""
    api_url: str = DEFAULT_QINIU_API_URL
    http2: bool = True


@dataclass(frozen=True)
class EmailNotificationConfig:
    """Alert e-mail delivery configuration."""
    provider: str = "smtp"  # "smtp" or "sendgrid"
    from_email: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    sendgrid_api_key: str = ""


@dataclass
class NotificationsConfig:
    """Alert recipients and delivery channel."""
    recipients: List[str] = field(default_factory=list)
    report_template: Optional[str] = None
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)


@dataclass
class Config:
    """Root configuration object."""
    settings: Settings
    issuer: IssuerConfig
    cdn: CdnConfig
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


@dataclass
class ConfigSnapshot:
    """
    Configuration as seen by one cycle.

    The ``*_changed`` flags report whether the section that backs each
    capability differs (by value) from the previous snapshot. The first
    snapshot marks every section changed.
    """
    config: Config
    issuer_changed: bool = True
    cdn_changed: bool = True
    notifier_changed: bool = True

    @property
    def settings(self) -> Settings:
        return self.config.settings

    @property
    def issuer(self) -> IssuerConfig:
        return self.config.issuer

    @property
    def cdn(self) -> CdnConfig:
        return self.config.cdn

    @property
    def notifier(self) -> EmailNotificationConfig:
        return self.config.notifications.email

    @property
    def recipients(self) -> List[str]:
        return self.config.notifications.recipients

    @property
    def lookahead_days(self) -> int:
        return self.config.settings.lookahead_days


def _expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in string values.

    Supports ${VAR_NAME} syntax; unknown variables are left untouched.

    Args:
        value: Value to expand (string, dict, or list)

    Returns:
        Value with environment variables expanded
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"

        def replace(match):
            var_name = match.group(1)
            return os.environ.get(var_name, match.group(0))

        return re.sub(pattern, replace, value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]

    return value


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{name}' section must be a mapping")
    return value


def _as_int(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    # YAML booleans are ints to Python but never a meaningful count
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def _parse_settings(data: Dict[str, Any]) -> Settings:
    """
    Parse settings configuration.

    Numeric values are coerced with int(), so values supplied through
    ${VAR} expansion (always strings) are accepted.

    Args:
        data: Raw settings data from YAML

    Returns:
        Settings instance
    """
    settings = Settings(
        lookahead_days=_as_int(data, "lookahead_days", DEFAULT_LOOKAHEAD_DAYS),
        min_cycle_interval=_as_int(data, "min_cycle_interval", 3600),
        call_timeout=_as_int(data, "call_timeout", 300),
        workers=_as_int(data, "workers", 1),
        max_renewals_per_cycle=_as_int(data, "max_renewals_per_cycle", 0),
        include_domains=_as_list(data.get("include_domains")),
        ignore_domains=_as_list(data.get("ignore_domains")),
        dry_run=data.get("dry_run", False),
    )
    _validate_settings(settings)
    return settings


def _validate_settings(settings: Settings) -> None:
    if settings.lookahead_days < 1:
        raise ConfigurationError("lookahead_days must be at least 1")
    if settings.lookahead_days > MAX_LOOKAHEAD_DAYS:
        raise ConfigurationError(
            f"lookahead_days must not exceed {MAX_LOOKAHEAD_DAYS} (certbot's renewal window)"
        )
    if settings.min_cycle_interval < 0:
        raise ConfigurationError("min_cycle_interval must not be negative")
    if settings.call_timeout <= 0:
        raise ConfigurationError("call_timeout must be positive")
    if settings.workers < 1:
        raise ConfigurationError("workers must be at least 1")
    if settings.max_renewals_per_cycle < 0:
        raise ConfigurationError("max_renewals_per_cycle must not be negative")


def _parse_issuer(data: Dict[str, Any]) -> IssuerConfig:
    """
    Parse the certbot issuer section.

    Args:
        data: Raw issuer data from YAML

    Returns:
        IssuerConfig instance
    """
    credentials = _section(data, "dns_credentials")

    issuer = IssuerConfig(
        email=data.get("email", ""),
        staging=data.get("staging", False),
        key_type=str(data.get("key_type", "rsa")).lower(),
        rsa_key_size=_as_int(data, "rsa_key_size", 2048),
        elliptic_curve=str(data.get("elliptic_curve", "secp384r1")).lower(),
        dns_plugin=data.get("dns_plugin", ""),
        dns_credentials={str(k): str(v) for k, v in credentials.items()},
        propagation_seconds=_as_int(data, "propagation_seconds", 60),
        work_dir=data.get("work_dir", "/tmp/certbot"),
        logs_dir=data.get("logs_dir", "/tmp/certbot-logs"),
        config_dir=data.get("config_dir", "/tmp/certbot-config"),
    )

    valid_key_types = ["rsa", "ecdsa"]
    if issuer.key_type not in valid_key_types:
        raise ConfigurationError(
            f"Invalid key_type '{issuer.key_type}'. Must be one of: {', '.join(valid_key_types)}"
        )

    valid_rsa_sizes = [2048, 3072, 4096]
    if issuer.rsa_key_size not in valid_rsa_sizes:
        raise ConfigurationError(
            f"Invalid rsa_key_size '{issuer.rsa_key_size}'. Must be one of: {', '.join(map(str, valid_rsa_sizes))}"
        )

    valid_curves = ["secp256r1", "secp384r1"]
    if issuer.elliptic_curve not in valid_curves:
        raise ConfigurationError(
            f"Invalid elliptic_curve '{issuer.elliptic_curve}'. Must be one of: {', '.join(valid_curves)}"
        )

    return issuer


def _parse_cdn(data: Dict[str, Any]) -> CdnConfig:
    cdn = CdnConfig(
        access_key=data.get("access_key", ""),
        secret_key=data.get("secret_key", ""),
        api_url=str(data.get("api_url", DEFAULT_QINIU_API_URL)).rstrip("/"),
        http2=data.get("http2", True),
    )
    if not cdn.api_url.startswith("https://"):
        raise ConfigurationError(f"cdn.api_url must start with https:// ({cdn.api_url})")
    return cdn


def _parse_notifications(data: Dict[str, Any]) -> NotificationsConfig:
    """
    Parse notifications configuration.

    Args:
        data: Raw notifications data from YAML

    Returns:
        NotificationsConfig instance
    """
    email_data = _section(data, "email")

    email_config = EmailNotificationConfig(
        provider=str(email_data.get("provider", "smtp")).lower(),
        from_email=email_data.get("from_email", ""),
        smtp_host=email_data.get("smtp_host", ""),
        smtp_port=_as_int(email_data, "smtp_port", 587),
        username=email_data.get("username", ""),
        password=email_data.get("password", ""),
        use_tls=email_data.get("use_tls", True),
        sendgrid_api_key=email_data.get("sendgrid_api_key", ""),
    )

    valid_providers = ["smtp", "sendgrid"]
    if email_config.provider not in valid_providers:
        raise ConfigurationError(
            f"Invalid email provider '{email_config.provider}'. Must be one of: {', '.join(valid_providers)}"
        )

    return NotificationsConfig(
        recipients=_as_list(data.get("recipients")),
        report_template=data.get("report_template"),
        email=email_config,
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
    if not isinstance(raw_data, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    data = _expand_env_vars(raw_data)

    for section in ("issuer", "cdn"):
        if section not in data:
            raise ConfigurationError(f"Missing '{section}' section in configuration")

    try:
        return Config(
            settings=_parse_settings(_section(data, "settings")),
            issuer=_parse_issuer(_section(data, "issuer")),
            cdn=_parse_cdn(_section(data, "cdn")),
            notifications=_parse_notifications(_section(data, "notifications")),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")


def _log_config_summary(config_path: str, config: Config) -> None:
    logger = get_logger()
    logger.info(f"Loaded configuration from {config_path}")
    logger.info(f"  Lookahead window: {config.settings.lookahead_days} days")
    logger.info(f"  Minimum cycle interval: {config.settings.min_cycle_interval}s")
    logger.info(f"  Workers: {config.settings.workers}")
    logger.info(f"  DNS plugin: {config.issuer.dns_plugin or 'not configured'}")
    if config.notifications.recipients:
        logger.info(
            f"  Alerts: {config.notifications.email.provider} -> "
            f"{', '.join(config.notifications.recipients)}"
        )
    else:
        logger.info("  Alerts: no recipients configured")


class ConfigSource:
    """
    Re-readable configuration file with per-section change detection.

    Sections are compared by value; the change flags are derived here and are
    never part of the compared data. Overrides (from the command line) are
    re-applied on every read so they survive file edits.
    """

    def __init__(self, config_path: str, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        self.overrides = overrides or {}
        self._last: Optional[Config] = None

    def _apply_overrides(self, config: Config) -> Config:
        settings_fields = {f.name for f in dataclasses.fields(Settings)}
        settings_changes = {
            k: v for k, v in self.overrides.items()
            if k in settings_fields and v is not None
        }
        if settings_changes:
            config.settings = dataclasses.replace(config.settings, **settings_changes)
            _validate_settings(config.settings)

        if self.overrides.get("staging"):
            config.issuer = dataclasses.replace(config.issuer, staging=True)

        return config

    def load(self) -> ConfigSnapshot:
        """
        Read the configuration file and diff it against the previous read.

        Returns:
            ConfigSnapshot for the coming cycle

        Raises:
            ConfigurationError: If the very first read fails
        """
        logger = get_logger()
        previous = self._last

        try:
            config = self._apply_overrides(load_config(self.config_path))
        except ConfigurationError as e:
            if previous is None:
                raise
            logger.error(f"Failed to reload configuration, keeping previous: {e}")
            return ConfigSnapshot(
                config=previous,
                issuer_changed=False,
                cdn_changed=False,
                notifier_changed=False,
            )

        if previous is None:
            _log_config_summary(self.config_path, config)
            snapshot = ConfigSnapshot(config=config)
        else:
            snapshot = ConfigSnapshot(
                config=config,
                issuer_changed=config.issuer != previous.issuer,
                cdn_changed=config.cdn != previous.cdn,
                notifier_changed=config.notifications.email != previous.notifications.email,
            )
            for section, changed in (
                ("issuer", snapshot.issuer_changed),
                ("cdn", snapshot.cdn_changed),
                ("notifications.email", snapshot.notifier_changed),
            ):
                if changed:
                    logger.info(f"Configuration section '{section}' changed")

        self._last = config
        return snapshot
