"""Configuration for the WhatsApp session manager."""

import os
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, asdict
from enum import Enum
import json

from .logging import LogLevel


class StoreBackend(str, Enum):
    """Session store backend types."""

    MEMORY = "memory"  # Ephemeral, in-process
    SQLITE = "sqlite"  # Local SQLite file
    GITHUB = "github"  # Files in a GitHub repository


@dataclass
class SessionConfig:
    """Session manager configuration."""

    # Transport bridge
    bridge_url: str = "ws://localhost:8790"
    bridge_request_timeout_seconds: float = 30.0

    # Session store
    store_backend: StoreBackend = StoreBackend.SQLITE
    storage_path: str = field(default_factory=lambda: str(Path.home() / ".whatsapp_sessions"))
    github_token: Optional[str] = None
    github_owner: str = ""
    github_repo: str = ""
    github_branch: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    credential_passphrase: Optional[str] = None

    # Reconnect policy
    reconnect_base_delay_seconds: float = 10.0
    max_reconnect_attempts: int = 5

    # Pairing
    pairing_max_retries: int = 3
    pairing_initial_delay_seconds: float = 1.5
    pairing_retry_delay_seconds: float = 2.0
    pairing_timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 30.0
    max_concurrent_pairings: int = 5
    auto_reconnect: bool = True

    # On-open side effects
    about_status_text: str = "Session bot is active"
    about_update_interval_seconds: float = 3600.0
    connected_broadcast_interval_seconds: float = 86400.0
    admin_numbers: List[str] = field(default_factory=list)
    admin_list_path: Optional[str] = None
    timezone: str = "UTC"

    # Group and newsletter
    group_invite_link: str = ""
    newsletter_jid: str = ""
    newsletter_message_id: str = ""
    newsletter_reaction_emojis: List[str] = field(
        default_factory=lambda: ["\u2764\ufe0f", "\U0001f525", "\U0001f600", "\U0001f44d"]
    )
    newsletter_cooldown_seconds: float = 30.0

    # Commands
    command_prefix: str = "."
    command_cooldown_seconds: float = 1.0
    status_cooldown_seconds: float = 10.0
    presence_cooldown_seconds: float = 5.0
    deletion_notice_cooldown_seconds: float = 30.0
    action_max_retries: int = 3
    action_retry_delay_seconds: float = 1.0

    # Caches and OTP
    cache_ttl_seconds: float = 300.0
    otp_expiry_seconds: float = 300.0

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_file: Optional[str] = None

    # HTTP API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        data = asdict(self)
        data["store_backend"] = self.store_backend.value
        data["log_level"] = self.log_level.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        """Create config from dictionary."""
        data = dict(data)
        if "store_backend" in data:
            data["store_backend"] = StoreBackend(data["store_backend"])
        if "log_level" in data:
            data["log_level"] = LogLevel(data["log_level"])

        return cls(**data)


class ConfigManager:
    """Manage session manager configuration."""

    _instance: Optional["ConfigManager"] = None
    _config: SessionConfig

    def __new__(cls) -> "ConfigManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize config manager."""
        if self._initialized:
            return

        self._initialized = True
        self._config = SessionConfig()
        self._config_file: Optional[Path] = None

    def load_config(self, config_file: str) -> None:
        """
        Load configuration from JSON file.

        Args:
            config_file: Path to config JSON file
        """
        config_path = Path(config_file).expanduser()

        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")

        with open(config_path, "r") as f:
            data = json.load(f)

        self._config = SessionConfig.from_dict(data)
        self._config_file = config_path

    def save_config(self, config_file: Optional[str] = None) -> None:
        """
        Save configuration to JSON file.

        Args:
            config_file: Path to save config (uses loaded path if not provided)
        """
        if config_file:
            self._config_file = Path(config_file).expanduser()
        elif not self._config_file:
            raise ValueError("No config file path specified")

        self._config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(self._config_file, "w") as f:
            json.dump(self._config.to_dict(), f, indent=2)

    def load_config_from_env(self) -> None:
        """Load configuration from environment variables."""
        env = os.environ

        if "WHATSAPP_BRIDGE_URL" in env:
            self._config.bridge_url = env["WHATSAPP_BRIDGE_URL"]

        # Store
        if "WHATSAPP_STORE_BACKEND" in env:
            self._config.store_backend = StoreBackend(env["WHATSAPP_STORE_BACKEND"].lower())

        if "WHATSAPP_STORAGE_PATH" in env:
            self._config.storage_path = env["WHATSAPP_STORAGE_PATH"]

        if "WHATSAPP_CREDENTIAL_PASSPHRASE" in env:
            self._config.credential_passphrase = env["WHATSAPP_CREDENTIAL_PASSPHRASE"]

        # GitHub store
        if "GITHUB_TOKEN" in env:
            self._config.github_token = env["GITHUB_TOKEN"]
            if "WHATSAPP_STORE_BACKEND" not in env:
                self._config.store_backend = StoreBackend.GITHUB

        if "GITHUB_REPO_OWNER" in env:
            self._config.github_owner = env["GITHUB_REPO_OWNER"]

        if "GITHUB_REPO_NAME" in env:
            self._config.github_repo = env["GITHUB_REPO_NAME"]

        # Sessions
        if "WHATSAPP_MAX_CONCURRENT_PAIRINGS" in env:
            self._config.max_concurrent_pairings = int(env["WHATSAPP_MAX_CONCURRENT_PAIRINGS"])

        if "WHATSAPP_MAX_RECONNECT_ATTEMPTS" in env:
            self._config.max_reconnect_attempts = int(env["WHATSAPP_MAX_RECONNECT_ATTEMPTS"])

        if "WHATSAPP_AUTO_RECONNECT" in env:
            self._config.auto_reconnect = env["WHATSAPP_AUTO_RECONNECT"].lower() in ("1", "true", "yes")

        if "WHATSAPP_ADMIN_NUMBERS" in env:
            self._config.admin_numbers = [
                n.strip() for n in env["WHATSAPP_ADMIN_NUMBERS"].split(",") if n.strip()
            ]

        # Group and newsletter
        if "WHATSAPP_GROUP_INVITE_LINK" in env:
            self._config.group_invite_link = env["WHATSAPP_GROUP_INVITE_LINK"]

        if "WHATSAPP_NEWSLETTER_JID" in env:
            self._config.newsletter_jid = env["WHATSAPP_NEWSLETTER_JID"]

        if "WHATSAPP_NEWSLETTER_MESSAGE_ID" in env:
            self._config.newsletter_message_id = env["WHATSAPP_NEWSLETTER_MESSAGE_ID"]

        # Logging
        if "WHATSAPP_LOG_LEVEL" in env:
            self._config.log_level = LogLevel(env["WHATSAPP_LOG_LEVEL"].upper())

        if "WHATSAPP_LOG_FILE" in env:
            self._config.log_file = env["WHATSAPP_LOG_FILE"]

        # HTTP API
        if "PORT" in env:
            self._config.api_port = int(env["PORT"])

    def get_config(self) -> SessionConfig:
        """Get current configuration."""
        return self._config

    def update_config(self, **kwargs: Any) -> None:
        """
        Update specific configuration values.

        Args:
            **kwargs: Configuration keys and values to update
        """
        for key, value in kwargs.items():
            if hasattr(self._config, key):
                setattr(self._config, key, value)
            else:
                raise ValueError(f"Unknown configuration key: {key}")

    def get_value(self, key: str) -> Any:
        """
        Get a configuration value.

        Raises:
            KeyError: If key not found
        """
        if not hasattr(self._config, key):
            raise KeyError(f"Unknown configuration key: {key}")
        return getattr(self._config, key)

    def set_value(self, key: str, value: Any) -> None:
        """
        Set a configuration value.

        Raises:
            KeyError: If key not found
        """
        if not hasattr(self._config, key):
            raise KeyError(f"Unknown configuration key: {key}")
        setattr(self._config, key, value)

    def reset_to_defaults(self) -> None:
        """Reset configuration to defaults."""
        self._config = SessionConfig()


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    """Get global config manager instance."""
    return _config_manager


def get_config() -> SessionConfig:
    """Get current configuration."""
    return _config_manager.get_config()


def load_config(config_file: str) -> None:
    """Load configuration from file."""
    _config_manager.load_config(config_file)


def save_config(config_file: Optional[str] = None) -> None:
    """Save configuration to file."""
    _config_manager.save_config(config_file)


def load_config_from_env() -> None:
    """Load configuration from environment variables."""
    _config_manager.load_config_from_env()


def update_config(**kwargs: Any) -> None:
    """Update configuration values."""
    _config_manager.update_config(**kwargs)
