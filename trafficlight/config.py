"""Configuration loading for trafficlight.

Loads settings from TOML config file with CLI override support.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli

from trafficlight.policies.message_classifier import (
    GRADING_KEYWORDS,
    GREEN_KEYWORDS,
    RED_KEYWORDS,
    YELLOW_KEYWORDS,
)
from trafficlight.policies.models import ACADEMIC_PLATFORMS, AI_WEBSITES, PolicyConfig

logger = logging.getLogger(__name__)


def get_default_config_path() -> Path:
    """Get the default config file path."""
    return Path.home() / ".config" / "trafficlight" / "trafficlight.toml"


def get_config_search_paths() -> list[Path]:
    """Get list of paths to search for config file."""
    return [
        Path("trafficlight.toml"),  # Current directory
        Path.home() / ".config" / "trafficlight" / "trafficlight.toml",
        Path("/etc/trafficlight/trafficlight.toml"),
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

    # Storage
    db_path: Path = field(default_factory=lambda: Path.home() / ".local" / "share" / "trafficlight" / "state.db")

    # Block policy
    policy_enabled: bool = True
    violation_threshold: int = 5
    block_duration_minutes: int = 10

    # Rule overrides by category; an entry replaces the built-in list
    rule_overrides: dict[str, list[dict]] = field(default_factory=dict)

    # Message keywords
    red_keywords: list[str] = field(default_factory=lambda: list(RED_KEYWORDS))
    yellow_keywords: list[str] = field(default_factory=lambda: list(YELLOW_KEYWORDS))
    green_keywords: list[str] = field(default_factory=lambda: list(GREEN_KEYWORDS))
    grading_keywords: list[str] = field(default_factory=lambda: list(GRADING_KEYWORDS))

    # Notifications
    notify_on_red: bool = True
    notify_on_yellow: bool = False

    # Slack
    slack_enabled: bool = False
    slack_webhook_url: Optional[str] = None

    # Command receiver
    receiver_port: int = 8765
    receiver_bind_address: str = "127.0.0.1"  # Localhost only by default
    receiver_allowed_ips: list[str] = field(default_factory=list)

    def policy(self) -> PolicyConfig:
        """Policy settings from the file, or defaults if they are invalid."""
        try:
            return PolicyConfig(
                enabled=self.policy_enabled,
                violation_threshold=self.violation_threshold,
                block_duration_minutes=self.block_duration_minutes,
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [policy] settings, using defaults: {e}")
            return PolicyConfig()

    def keywords(self) -> dict[str, list[str]]:
        return {
            "red": self.red_keywords,
            "yellow": self.yellow_keywords,
            "green": self.green_keywords,
        }


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

    return apply_config_data(config, data)


def apply_config_data(config: Config, data: dict[str, Any]) -> Config:
    """Merge parsed TOML data into a Config, field by field."""
    # Storage section
    if "storage" in data:
        storage = data["storage"]
        if "path" in storage:
            config.db_path = Path(storage["path"]).expanduser()

    # Policy section
    if "policy" in data:
        policy = data["policy"]
        if "enabled" in policy:
            config.policy_enabled = policy["enabled"]
        if "violation_threshold" in policy:
            config.violation_threshold = policy["violation_threshold"]
        if "block_duration_minutes" in policy:
            config.block_duration_minutes = policy["block_duration_minutes"]

    # Rules section
    if "rules" in data:
        rules = data["rules"]
        for category in (AI_WEBSITES, ACADEMIC_PLATFORMS):
            if category in rules:
                entries = rules[category]
                if isinstance(entries, list):
                    config.rule_overrides[category] = [
                        dict(e) for e in entries if isinstance(e, dict)
                    ]
                else:
                    logger.warning(f"[rules] {category} must be an array of tables")

    # Keywords section
    if "keywords" in data:
        keywords = data["keywords"]
        if "red" in keywords:
            config.red_keywords = list(keywords["red"])
        if "yellow" in keywords:
            config.yellow_keywords = list(keywords["yellow"])
        if "green" in keywords:
            config.green_keywords = list(keywords["green"])
        if "grading" in keywords:
            config.grading_keywords = list(keywords["grading"])

    # Notifications section
    if "notifications" in data:
        notifications = data["notifications"]
        if "notify_on_red" in notifications:
            config.notify_on_red = bool(notifications["notify_on_red"])
        if "notify_on_yellow" in notifications:
            config.notify_on_yellow = bool(notifications["notify_on_yellow"])

    # Slack section
    if "slack" in data:
        slack = data["slack"]
        if "enabled" in slack:
            config.slack_enabled = slack["enabled"]
        if "webhook_url" in slack:
            config.slack_webhook_url = slack["webhook_url"]

    # Receiver section
    if "receiver" in data:
        receiver = data["receiver"]
        if "port" in receiver:
            config.receiver_port = receiver["port"]
        if "bind_address" in receiver:
            config.receiver_bind_address = receiver["bind_address"]
        if "allowed_ips" in receiver:
            config.receiver_allowed_ips = receiver["allowed_ips"]

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
        "port": "receiver_port",
        "bind": "receiver_bind_address",
        "allow": "receiver_allowed_ips",
        "threshold": "violation_threshold",
        "duration": "block_duration_minutes",
        "db": "db_path",
    }

    for cli_name, config_name in mappings.items():
        if cli_name in cli_options:
            value = cli_options[cli_name]
            # Only override if CLI value is meaningful
            if value is not None and value != () and value != "":
                if cli_name == "allow" and isinstance(value, tuple):
                    value = list(value)
                if cli_name == "db" and value:
                    value = Path(value)
                setattr(config, config_name, value)

    return config
