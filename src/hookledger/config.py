"""Configuration parsing for hookledger.

Parses .hookledger/config.toml files for ledger, state, input, logging and
pricing settings. Every section is optional; missing values fall back to the
defaults below.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from hookledger.metrics.pricing import DEFAULT_MODEL, PRICING

CONFIG_DIR = ".hookledger"
CONFIG_FILE = "config.toml"

# Environment variables that override file settings
ENV_DATA_DIR = "HOOKLEDGER_DATA_DIR"
ENV_STATE_DIR = "HOOKLEDGER_STATE_DIR"
ENV_LOG_LEVEL = "HOOKLEDGER_LOG_LEVEL"

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _require_int(section: str, key: str, value: Any, minimum: int = 0) -> int:
    """Validate an integer setting.

    Raises:
        ValueError: If the value is not an int or is below the minimum.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{section}.{key}' must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"'{section}.{key}' must be >= {minimum}, got {value}")
    return value


@dataclass
class LedgerConfig:
    """Configuration for the CSV ledgers."""

    data_dir: str = ".claude/analytics"
    max_retries: int = 3  # attempts per append on a busy file
    retry_delay_ms: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerConfig:
        """Create a LedgerConfig from the [ledger] table."""
        return cls(
            data_dir=str(data.get("data_dir", cls.data_dir)),
            max_retries=_require_int("ledger", "max_retries", data.get("max_retries", 3), 1),
            retry_delay_ms=_require_int("ledger", "retry_delay_ms", data.get("retry_delay_ms", 100)),
        )


@dataclass
class StateConfig:
    """Configuration for per-session state files."""

    state_dir: str = ".claude/analytics/state"
    retention_days: int = 30  # default for `state prune`
    repo_cache_ttl: int = 300  # seconds

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateConfig:
        """Create a StateConfig from the [state] table."""
        return cls(
            state_dir=str(data.get("state_dir", cls.state_dir)),
            retention_days=_require_int("state", "retention_days", data.get("retention_days", 30)),
            repo_cache_ttl=_require_int("state", "repo_cache_ttl", data.get("repo_cache_ttl", 300)),
        )


@dataclass
class InputConfig:
    """Limits applied to the event read from stdin."""

    max_bytes: int = 10 * 1024 * 1024

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InputConfig:
        """Create an InputConfig from the [input] table."""
        return cls(
            max_bytes=_require_int("input", "max_bytes", data.get("max_bytes", 10 * 1024 * 1024), 1),
        )


@dataclass
class LoggingConfig:
    """Diagnostic logging settings."""

    level: str = "WARNING"
    file: str | None = None  # optional rotating log file

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingConfig:
        """Create a LoggingConfig from the [logging] table."""
        level = str(data.get("level", "WARNING")).upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"'logging.level' has invalid value '{level}'. "
                f"Valid levels are: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        return cls(level=level, file=data.get("file") or None)

    @property
    def level_number(self) -> int:
        """The numeric logging level."""
        return logging.getLevelName(self.level)


@dataclass
class PricingConfig:
    """Cost calculation settings."""

    default_model: str = DEFAULT_MODEL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PricingConfig:
        """Create a PricingConfig from the [pricing] table."""
        default_model = data.get("default_model", DEFAULT_MODEL)
        if default_model not in PRICING:
            raise ValueError(
                f"'pricing.default_model' names unknown model '{default_model}'. "
                f"Known models are: {', '.join(sorted(PRICING))}"
            )
        return cls(default_model=default_model)


@dataclass
class Config:
    """Main configuration container."""

    version: str = "1"
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    state: StateConfig = field(default_factory=StateConfig)
    input: InputConfig = field(default_factory=InputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    root: Path = field(default_factory=Path.cwd)
    config_path: Path | None = None

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        """Load configuration from a file.

        Args:
            path: Path to config file. If None, searches for .hookledger/config.toml
                  in current directory and parents.

        Returns:
            Loaded configuration with environment overrides applied.

        Raises:
            FileNotFoundError: If no config file found.
            ValueError: If config file is invalid.
        """
        if path is None:
            path = cls._find_config()

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        config = cls._from_dict(data, path)
        config.apply_env(os.environ)
        return config

    @classmethod
    def load_or_default(cls, path: Path | None = None) -> Config:
        """Load configuration or return default if not found."""
        try:
            return cls.load(path)
        except FileNotFoundError:
            config = cls()
            config.apply_env(os.environ)
            return config

    @classmethod
    def _find_config(cls) -> Path:
        """Find config file by searching current directory and parents."""
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            config_path = parent / CONFIG_DIR / CONFIG_FILE
            if config_path.exists():
                return config_path

        # Return expected path even if it doesn't exist
        return cwd / CONFIG_DIR / CONFIG_FILE

    @classmethod
    def _from_dict(cls, data: dict[str, Any], path: Path) -> Config:
        """Create a Config from a dictionary."""
        section = data.get("hookledger", {})

        # The project root is the directory holding .hookledger/
        if path.parent.name == CONFIG_DIR:
            root = path.parent.parent
        else:
            root = path.parent

        return cls(
            version=str(section.get("version", "1")),
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            state=StateConfig.from_dict(data.get("state", {})),
            input=InputConfig.from_dict(data.get("input", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
            pricing=PricingConfig.from_dict(data.get("pricing", {})),
            root=root,
            config_path=path,
        )

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Apply HOOKLEDGER_* environment overrides in place."""
        if environ.get(ENV_DATA_DIR):
            self.ledger.data_dir = environ[ENV_DATA_DIR]
        if environ.get(ENV_STATE_DIR):
            self.state.state_dir = environ[ENV_STATE_DIR]
        if environ.get(ENV_LOG_LEVEL):
            self.logging = LoggingConfig.from_dict(
                {"level": environ[ENV_LOG_LEVEL], "file": self.logging.file}
            )

    def resolve(self, value: str) -> Path:
        """Resolve a configured path against the project root."""
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return self.root / path

    @property
    def data_dir(self) -> Path:
        """Absolute directory holding the ledger files."""
        return self.resolve(self.ledger.data_dir)

    @property
    def state_dir(self) -> Path:
        """Absolute directory holding per-session state files."""
        return self.resolve(self.state.state_dir)

    @property
    def log_file(self) -> Path | None:
        """Absolute path of the rotating log file, if configured."""
        if not self.logging.file:
            return None
        return self.resolve(self.logging.file)

    def get_value(self, key_path: str) -> Any:
        """Get a configuration value by dot-separated path.

        Args:
            key_path: Dot-separated path to value (e.g. "ledger.max_retries").

        Returns:
            The configuration value.

        Raises:
            KeyError: If path is invalid.
        """
        parts = key_path.split(".")
        current = self
        for part in parts:
            if hasattr(current, part):
                current = getattr(current, part)
            elif isinstance(current, dict) and part in current:
                current = current[part]
            else:
                raise KeyError(f"Invalid config path: {key_path}")
        return current
