"""TOML configuration file support for hypolab.

Loads configuration from:
1. System: /etc/hypolab/config.toml
2. User: ~/.config/hypolab/config.toml (XDG_CONFIG_HOME)
3. Local: ./.hypolab.toml (project-specific)
4. Environment variables (highest priority)

Configuration is merged in order, with later sources overriding earlier ones.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from hypolab.paths import paths

logger = logging.getLogger(__name__)


@dataclass
class GeneralConfig:
    """General configuration settings."""

    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"
    log_max_bytes: int = 1_000_000
    log_backup_count: int = 3


@dataclass
class StorageConfig:
    """Session storage configuration."""

    backend: str = "sqlite"  # "sqlite" or "memory"
    path: str = ""  # empty means the XDG data dir
    key_prefix: str = "hypolab-session-"

    def resolved_path(self) -> Path:
        return Path(self.path).expanduser() if self.path else paths.db_path


@dataclass
class RetryConfig:
    """Retry policy applied to storage I/O."""

    max_attempts: int = 3
    base_delay_ms: int = 50
    max_delay_ms: int = 1000
    jitter_ratio: float = 0.2


@dataclass
class TimeoutConfig:
    """Deadline applied to each storage call."""

    timeout_ms: int = 5000


@dataclass
class ConfidenceConfig:
    """Confidence update policy tuning."""

    support_multiplier: float = 0.15
    challenge_multiplier: float = 0.3
    min_confidence: float = 1.0
    max_confidence: float = 99.0
    significance_threshold: float = 5.0
    initial_confidence: float = 50.0


@dataclass
class ServerConfig:
    """Local HTTP adapter configuration."""

    host: str = "127.0.0.1"
    port: int = 8020


@dataclass
class Config:
    """Complete hypolab configuration."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def load(cls, sources: list[Path] | None = None) -> "Config":
        """Load configuration from all sources."""
        config = cls()

        if sources is None:
            sources = [
                Path("/etc/hypolab/config.toml"),  # System
                paths.config_file,  # User (~/.config/hypolab/config.toml)
                Path.cwd() / ".hypolab.toml",  # Local project
            ]

        for source in sources:
            if source.exists():
                config = config._merge_from_file(source)

        return config._apply_env_overrides()

    def _merge_from_file(self, path: Path) -> "Config":
        """Merge configuration from a TOML file."""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            # Log but don't fail on config errors
            logger.warning("Failed to load config from %s: %s", path, e)
            return self
        return self._merge_dict(data)

    def _merge_dict(self, data: dict[str, Any]) -> "Config":
        """Merge a dictionary into the configuration."""
        for section_name in ("general", "storage", "retry", "timeout", "confidence", "server"):
            if section_name in data and isinstance(data[section_name], dict):
                section = getattr(self, section_name)
                setattr(self, section_name, _merge_dataclass(section, data[section_name]))
        return self

    def _apply_env_overrides(self) -> "Config":
        """Apply environment variable overrides."""
        env_mappings = {
            "HYPOLAB_LOG_LEVEL": ("general", "log_level"),
            "HYPOLAB_LOG_FORMAT": ("general", "log_format"),
            "HYPOLAB_STORAGE_BACKEND": ("storage", "backend"),
            "HYPOLAB_STORAGE_PATH": ("storage", "path"),
            "HYPOLAB_KEY_PREFIX": ("storage", "key_prefix"),
            "HYPOLAB_RETRY_MAX_ATTEMPTS": ("retry", "max_attempts", int),
            "HYPOLAB_RETRY_BASE_DELAY_MS": ("retry", "base_delay_ms", int),
            "HYPOLAB_RETRY_MAX_DELAY_MS": ("retry", "max_delay_ms", int),
            "HYPOLAB_RETRY_JITTER_RATIO": ("retry", "jitter_ratio", float),
            "HYPOLAB_TIMEOUT_MS": ("timeout", "timeout_ms", int),
            "HYPOLAB_HOST": ("server", "host"),
            "HYPOLAB_PORT": ("server", "port", int),
        }

        for env_var, mapping in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                section_name = mapping[0]
                field_name = mapping[1]
                converter = mapping[2] if len(mapping) > 2 else str

                section = getattr(self, section_name)
                try:
                    setattr(section, field_name, converter(value))  # type: ignore[operator]
                except (ValueError, TypeError):
                    logger.warning("Ignoring invalid value for %s: %r", env_var, value)

        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to a dictionary."""
        return asdict(self)


def _merge_dataclass(obj: Any, data: dict[str, Any]) -> Any:
    """Merge dictionary values into a dataclass instance."""
    for key, value in data.items():
        if hasattr(obj, key):
            # Handle type conversion for common cases
            current_value = getattr(obj, key)
            try:
                if isinstance(current_value, int) and isinstance(value, str):
                    value = int(value)
                elif isinstance(current_value, float) and isinstance(value, (str, int)):
                    value = float(value)
            except ValueError:
                logger.warning("Ignoring invalid config value for %s: %r", key, value)
                continue
            setattr(obj, key, value)
    return obj


# Default configuration template
DEFAULT_CONFIG_TEMPLATE = """\
# hypolab configuration
#
# This file uses TOML format: https://toml.io/
# Environment variables (HYPOLAB_*) override these settings.

[general]
# Log level: DEBUG, INFO, WARNING, ERROR
log_level = "INFO"

# Log format: "text" or "json"
log_format = "text"

log_max_bytes = 1000000
log_backup_count = 3

[storage]
# "sqlite" persists sessions; "memory" keeps them for the process lifetime
backend = "sqlite"

# Database path (leave empty for ~/.local/share/hypolab/sessions.db)
# path = ""

# Namespace for session keys
key_prefix = "hypolab-session-"

[retry]
max_attempts = 3
base_delay_ms = 50
max_delay_ms = 1000
jitter_ratio = 0.2

[timeout]
# Deadline for each storage read or write
timeout_ms = 5000

[confidence]
support_multiplier = 0.15
challenge_multiplier = 0.3
min_confidence = 1.0
max_confidence = 99.0
significance_threshold = 5.0
initial_confidence = 50.0

[server]
host = "127.0.0.1"
port = 8020
"""


def write_default_config(path: Path | None = None) -> Path:
    """Write the default configuration file.

    Args:
        path: Path to write to. Defaults to user config path.

    Returns:
        The path where the config was written.
    """
    if path is None:
        path = paths.config_file

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE)
    return path


# Global configuration instance - loaded on first access
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from disk."""
    global _config
    _config = Config.load()
    return _config
