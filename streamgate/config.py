"""Configuration loading for streamgate.

Loads settings from TOML config file with CLI override support.
"""

import logging
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import tomli

from streamgate.exceptions import ConfigurationError
from streamgate.models.access import DEFAULT_STOP_MESSAGES

logger = logging.getLogger(__name__)


def get_config_search_paths() -> list[Path]:
    """Get list of paths to search for config file."""
    return [
        Path("streamgate.toml"),  # Current directory
        Path.home() / ".config" / "streamgate" / "streamgate.toml",
        Path("/etc/streamgate/streamgate.toml"),
    ]


def find_config_file() -> Optional[Path]:
    """Find the first existing config file."""
    for path in get_config_search_paths():
        if path.exists():
            return path
    return None


@dataclass
class Config:
    """Loaded configuration with all sections."""

    # Database
    db_path: Path = field(default_factory=lambda: Path.home() / ".local" / "share" / "streamgate" / "access.db")

    # Access policy
    default_block: bool = True  # Used until a global default is saved
    timezone: Optional[str] = None  # IANA name; None = server local wall clock
    fail_closed: bool = True

    # Cache
    has_rules_ttl: int = 60  # seconds

    # Client-facing stop messages keyed by stop code
    messages: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STOP_MESSAGES))

    # Data Retention Policy
    retention_enabled: bool = False
    retention_decisions_days: int = 30
    retention_device_cleanup_enabled: bool = False
    retention_device_inactive_days: int = 90

    def get_timezone(self) -> Optional[tzinfo]:
        """Resolve the configured timezone.

        Raises:
            ConfigurationError: If the zone name is unknown
        """
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(
                f"Unknown timezone '{self.timezone}'", details={"timezone": self.timezone}
            ) from e


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from TOML file.

    Args:
        config_path: Explicit path to config file, or None to search

    Returns:
        Config object with loaded values
    """
    config = Config()

    # Find config file
    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        logger.debug("No config file found, using defaults")
        return config

    logger.info(f"Loading config from {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config file: {e}")
        return config

    # Database section
    if "database" in data:
        db = data["database"]
        if "path" in db:
            config.db_path = Path(db["path"]).expanduser()

    # Access section
    if "access" in data:
        access = data["access"]
        if "default_block" in access:
            config.default_block = bool(access["default_block"])
        if "timezone" in access:
            config.timezone = access["timezone"] or None
        if "fail_closed" in access:
            config.fail_closed = bool(access["fail_closed"])

    # Cache section
    if "cache" in data:
        cache = data["cache"]
        if "has_rules_ttl" in cache:
            config.has_rules_ttl = cache["has_rules_ttl"]

    # Messages section: overrides per stop code, unknown codes are ignored
    if "messages" in data:
        for code, text in data["messages"].items():
            if code not in DEFAULT_STOP_MESSAGES:
                logger.warning(f"Ignoring message for unknown stop code: {code}")
                continue
            config.messages[code] = str(text)

    # Data Retention Policy section
    if "retention" in data:
        ret = data["retention"]
        if "enabled" in ret:
            config.retention_enabled = ret["enabled"]
        if "decisions_days" in ret:
            config.retention_decisions_days = ret["decisions_days"]
        if "device_cleanup_enabled" in ret:
            config.retention_device_cleanup_enabled = ret["device_cleanup_enabled"]
        if "device_inactive_days" in ret:
            config.retention_device_inactive_days = ret["device_inactive_days"]

    return config


def merge_cli_options(config: Config, **cli_options: Any) -> Config:
    """Merge CLI options into config (CLI takes precedence).

    Args:
        config: Base config from file
        **cli_options: CLI option overrides (None values are ignored)

    Returns:
        Config with CLI overrides applied
    """
    # Map CLI option names to config attributes
    mappings = {
        "db": "db_path",
        "timezone": "timezone",
        "fail_closed": "fail_closed",
        "default_block": "default_block",
    }

    for cli_name, config_name in mappings.items():
        if cli_name in cli_options:
            value = cli_options[cli_name]
            # Only override if CLI value is meaningful
            if value is not None and value != "":
                if cli_name == "db":
                    value = Path(value)
                setattr(config, config_name, value)

    return config
