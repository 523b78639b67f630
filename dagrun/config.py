"""
Configuration management for dagrun.

Loads and validates config.yaml from the dagrun home directory
($DAGRUN_HOME, default ~/.config/dagrun).
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = "config.yaml"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("pretty", "structured")
EXECUTOR_NAMES = ("sequential", "local")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_dagrun_home() -> Path:
    """Directory holding config.yaml (and by default graphs and run state)."""
    return Path(os.environ.get("DAGRUN_HOME", "~/.config/dagrun")).expanduser()


@dataclass
class DagrunConfig:
    """
    Scheduler configuration.

    Attributes:
        definitions_dir: Directory of graph definition files
        store_dir: Directory of the file-based run state store
        tick_interval: Seconds between scheduler ticks
        poll_timeout: Seconds one tick may wait on the executor backend
        max_dispatch_attempts: Consecutive submit refusals before the scheduler halts
        executor: Executor backend name (sequential or local)
        parallelism: Maximum task attempts in flight at once
        log_level: Logging level name
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional JSON log file
        env_file: Optional dotenv file loaded into the environment
    """
    definitions_dir: str = "~/.config/dagrun/graphs"
    store_dir: str = "~/.config/dagrun/store"
    tick_interval: float = 5.0
    poll_timeout: float = 1.0
    max_dispatch_attempts: int = 3
    executor: str = "local"
    parallelism: int = 4
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    @property
    def definitions_path(self) -> Path:
        return Path(self.definitions_dir).expanduser()

    @property
    def store_path(self) -> Path:
        return Path(self.store_dir).expanduser()

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If a value is out of range or unknown
        """
        if self.tick_interval <= 0:
            raise ConfigError("tick_interval must be > 0")
        if self.poll_timeout < 0:
            raise ConfigError("poll_timeout must be >= 0")
        if self.max_dispatch_attempts < 1:
            raise ConfigError("max_dispatch_attempts must be >= 1")
        if self.parallelism < 1:
            raise ConfigError("parallelism must be >= 1")
        if self.executor not in EXECUTOR_NAMES:
            raise ConfigError(f"Unknown executor '{self.executor}'. Available: {list(EXECUTOR_NAMES)}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unknown log_level '{self.log_level}'")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"Unknown log_format '{self.log_format}'. Available: {list(LOG_FORMATS)}")

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DagrunConfig":
        """
        Build and validate a config from a mapping.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {unknown}")
        try:
            config = cls(**data)
            config.tick_interval = float(config.tick_interval)
            config.poll_timeout = float(config.poll_timeout)
            config.max_dispatch_attempts = int(config.max_dispatch_attempts)
            config.parallelism = int(config.parallelism)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e
        config.validate()
        return config

    @classmethod
    def default(cls, home: Optional[Path] = None) -> "DagrunConfig":
        """Defaults rooted at `home` (the dagrun home by default)."""
        home = home or get_dagrun_home()
        return cls(definitions_dir=str(home / "graphs"), store_dir=str(home / "store"))


def load_config(config_path: Optional[Path] = None) -> DagrunConfig:
    """
    Load dagrun configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $DAGRUN_HOME/config.yaml

    Returns:
        DagrunConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_dagrun_home() / CONFIG_FILENAME
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"dagrun config.yaml not found at {config_path}. Run 'dagrun init' first."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    config = DagrunConfig.from_dict(data)
    if config.env_file:
        load_dotenv(Path(config.env_file).expanduser(), override=False)
    return config
