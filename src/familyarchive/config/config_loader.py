"""
Configuration loader for the backup/restore engine.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml
except ImportError:
    yaml = None

from ..core.exceptions import ConfigError


logger = logging.getLogger(__name__)

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "FAMILYARCHIVE_INSTANCE": "instance.name",
    "FAMILYARCHIVE_DB_BACKEND": "database.backend",
    "FAMILYARCHIVE_DB_PATH": "database.sqlite.path",
    "FAMILYARCHIVE_ASSETS_DIR": "assets.base_dir",
    "FAMILYARCHIVE_SNAPSHOTS_DIR": "snapshots.base_dir",
    "FAMILYARCHIVE_MAX_ARCHIVE_BYTES": "archive.max_size_bytes",
    "FAMILYARCHIVE_RATE_LIMIT_DB": "rate_limits.ledger_path",
    "FAMILYARCHIVE_LOG_LEVEL": "logging.level",
}

INT_KEYS = {"archive.max_size_bytes"}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class BackupConfig:
    """
    Configuration for the backup/restore engine.

    Loads a YAML configuration file over built-in defaults, then applies
    FAMILYARCHIVE_* environment variable overrides.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)

        Raises:
            ConfigError: If the file is missing, unparseable or has invalid values
        """
        self.config_path = Path(config_path) if config_path else None
        self.config = self._default_config()
        if self.config_path:
            self.config = _deep_merge(self.config, self._load_config())
        self._apply_env_overrides()
        self._validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if yaml is None:
            raise ImportError(
                "pyyaml is required for config loading. "
                "Install with: pip install pyyaml"
            )

        if not self.config_path.exists():
            raise ConfigError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if config is not None and not isinstance(config, dict):
            raise ConfigError(f"Config root must be a mapping: {self.config_path}")
        return config or {}

    def _default_config(self) -> Dict[str, Any]:
        """Return default configuration."""
        return {
            "instance": {
                "name": "familyarchive",
            },
            "database": {
                "backend": "sqlite",
                "sqlite": {
                    "path": "local/data/familyarchive.db",
                },
                "sqlserver": {
                    "host": "localhost",
                    "port": 1433,
                    "database": "FamilyArchive",
                    "user": "sa",
                    "schema": "family",
                    "driver": "ODBC Driver 18 for SQL Server",
                },
            },
            "assets": {
                "base_dir": "local/photos",
            },
            "snapshots": {
                "base_dir": "local/snapshots",
                "encrypt": False,
                "key_source": "env",
                "key_env_var": "FAMILYARCHIVE_SNAPSHOT_KEY",
                "key_file": None,
            },
            "archive": {
                "max_size_bytes": 100 * 1024 * 1024,
                "chunk_size": 64 * 1024,
                "compresslevel": 6,
            },
            "export": {
                "include_photos": True,
                "include_audit_logs": True,
                "audit_log_days": 90,
            },
            "import": {
                "strategy": "skip",
                "create_backup_before_import": True,
                "import_photos": True,
                "import_audit_logs": False,
            },
            "rate_limits": {
                "ledger_path": "local/data/rate_limits.db",
                "export_cooldown_seconds": 300,
                "import_cooldown_seconds": 300,
            },
            "logging": {
                "level": "INFO",
            },
        }

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        for env_var, key in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if not value:
                continue
            if key in INT_KEYS:
                try:
                    value = int(value)
                except ValueError:
                    raise ConfigError(f"{env_var} must be an integer, got {value!r}")
            self.set(key, value)
            logger.debug(f"Config override from {env_var}: {key}")

    def _validate(self) -> None:
        days = self.get("export.audit_log_days")
        if not isinstance(days, int) or not 1 <= days <= 365:
            raise ConfigError(f"export.audit_log_days must be between 1 and 365, got {days!r}")

        strategy = self.get("import.strategy")
        if strategy not in ("skip", "replace", "merge"):
            raise ConfigError(f"import.strategy must be skip, replace or merge, got {strategy!r}")

        max_size = self.get("archive.max_size_bytes")
        if not isinstance(max_size, int) or max_size <= 0:
            raise ConfigError(f"archive.max_size_bytes must be a positive integer, got {max_size!r}")

        backend = str(self.get("database.backend", "")).lower()
        if backend not in ("sqlite", "sqlserver"):
            raise ConfigError(f"database.backend must be sqlite or sqlserver, got {backend!r}")

    def get_database_config(self) -> Dict[str, Any]:
        """Get data store configuration."""
        return self.config.get("database", {})

    def get_snapshot_config(self) -> Dict[str, Any]:
        """Get rollback snapshot configuration."""
        return self.config.get("snapshots", {})

    def get_rate_limit_config(self) -> Dict[str, Any]:
        """Get rate limit configuration."""
        return self.config.get("rate_limits", {})

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dotted key."""
        keys = key.split(".")
        target = self.config
        for k in keys[:-1]:
            target = target.setdefault(k, {})
        target[keys[-1]] = value
