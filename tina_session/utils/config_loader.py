"""
Configuration Loader Module

Loads ``config.yaml`` from the tina config directory, applies the active
profile, environment substitution and ``TINA_*`` overrides, and validates the
result against a small schema.
"""

import json
import os
import re
import socket
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import dotenv_values

from ..core.errors import ConfigError
from .file_utils import FileUtils

DEFAULT_CONFIG_DIR = Path.home() / '.config' / 'tina'

ENV_OVERRIDES = {
    'TINA_CONVEX_URL': 'convex_url',
    'TINA_AUTH_TOKEN': 'auth_token',
    'TINA_NODE_NAME': 'node_name',
    'TINA_REGISTRY_DIR': 'registry_dir',
    'TINA_LOG_LEVEL': 'logging.level',
}


@dataclass
class ConfigValidationRule:
    """Configuration validation rule."""
    field_path: str
    required: bool = True
    field_type: Union[type, tuple] = str
    default_value: Any = None
    allowed_values: Optional[List[Any]] = None
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None


@dataclass
class ConfigSchema:
    """Configuration schema definition."""
    name: str
    version: str
    rules: List[ConfigValidationRule] = field(default_factory=list)

    def add_rule(self, **kwargs) -> 'ConfigSchema':
        """Add validation rule."""
        self.rules.append(ConfigValidationRule(**kwargs))
        return self


@dataclass
class TinaConfig:
    """Resolved settings for one profile."""
    profile: str = 'prod'
    convex_url: Optional[str] = None
    auth_token: Optional[str] = None
    node_name: str = field(default_factory=socket.gethostname)
    registry_dir: Path = field(default_factory=lambda: Path.home() / '.claude' / 'tina-sessions')
    teams_dir: Path = field(default_factory=lambda: Path.home() / '.claude' / 'teams')
    tasks_dir: Path = field(default_factory=lambda: Path.home() / '.claude' / 'tasks')
    pid_file: Path = field(default_factory=lambda: Path.home() / '.local' / 'share' / 'tina' / 'daemon.pid')
    log_file: Path = field(default_factory=lambda: Path.home() / '.local' / 'share' / 'tina' / 'daemon.log')
    sync_interval_secs: int = 30
    log_level: str = 'INFO'

    @classmethod
    def from_dict(cls, data: Dict[str, Any], profile: str = 'prod') -> 'TinaConfig':
        daemon = data.get('daemon') or {}
        logging_cfg = data.get('logging') or {}
        config = cls(profile=profile)

        config.convex_url = data.get('convex_url') or None
        config.auth_token = data.get('auth_token') or None
        if data.get('node_name'):
            config.node_name = data['node_name']
        for key in ('registry_dir', 'teams_dir', 'tasks_dir'):
            if data.get(key):
                setattr(config, key, Path(data[key]).expanduser())
        if daemon.get('pid_file'):
            config.pid_file = Path(daemon['pid_file']).expanduser()
        if daemon.get('log_file'):
            config.log_file = Path(daemon['log_file']).expanduser()
        if daemon.get('sync_interval_secs') is not None:
            config.sync_interval_secs = int(daemon['sync_interval_secs'])
        if logging_cfg.get('level'):
            config.log_level = str(logging_cfg['level']).upper()
        return config


class ConfigLoader:
    """
    Configuration loader with profile, environment and schema support.

    Features:
    - YAML (or JSON) configuration files
    - ``prod`` / ``dev`` profiles selected by ``TINA_ENV``
    - ``.env`` loading via python-dotenv
    - ``${VAR}`` substitution and ``TINA_*`` overrides
    - Schema validation with detailed error reporting
    """

    CONFIG_NAMES = ('config.yaml', 'config.yml', 'config.json')

    def __init__(self, config_dir: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize config loader.

        Args:
            config_dir: Directory containing configuration files
            environ: Environment mapping (defaults to os.environ)
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.environ = environ if environ is not None else os.environ

        self._schemas: Dict[str, ConfigSchema] = {}
        self._initialize_builtin_schemas()

    def load(self, profile: Optional[str] = None) -> TinaConfig:
        """
        Load and validate the configuration for a profile.

        Args:
            profile: Profile name; defaults to ``TINA_ENV`` or ``prod``

        Returns:
            TinaConfig: resolved configuration

        Raises:
            ConfigError: if the file is malformed or fails validation
        """
        self._load_env_files()
        profile = profile or self.environ.get('TINA_ENV', 'prod')

        raw = self._read_config_file()
        profiles = raw.pop('profiles', None) or {}
        if profiles and profile not in profiles:
            raise ConfigError(
                f"Unknown profile '{profile}'. Available: {', '.join(sorted(profiles))}"
            )

        merged = self.merge_configs(raw, profiles.get(profile) or {})
        merged = self._substitute_environment_variables(merged)
        self._apply_env_overrides(merged)

        errors = self.validate_config(merged, 'tina')
        if errors:
            raise ConfigError("Config validation failed: " + "; ".join(errors))

        return TinaConfig.from_dict(merged, profile=profile)

    def merge_configs(self,
                     base_config: Dict[str, Any],
                     override_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge two configuration dictionaries recursively.

        Args:
            base_config: Base configuration
            override_config: Configuration to merge in

        Returns:
            Merged configuration
        """
        merged = base_config.copy()

        for key, value in override_config.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self.merge_configs(merged[key], value)
            else:
                merged[key] = value

        return merged

    def register_schema(self, schema: ConfigSchema) -> None:
        self._schemas[schema.name] = schema

    def validate_config(self, config_data: Dict[str, Any], schema_name: str) -> List[str]:
        """
        Validate configuration against schema, filling defaults in place.

        Args:
            config_data: Configuration to validate
            schema_name: Name of schema to validate against

        Returns:
            List of validation error messages (empty when valid)
        """
        if schema_name not in self._schemas:
            return [f"Schema not found: {schema_name}"]

        schema = self._schemas[schema_name]
        validation_errors = []

        for rule in schema.rules:
            value = self._get_nested_value(config_data, rule.field_path)

            if value is None:
                if rule.default_value is not None:
                    self._set_nested_value(config_data, rule.field_path, rule.default_value)
                elif rule.required:
                    validation_errors.append(f"Required field missing: {rule.field_path}")
                continue

            if not isinstance(value, rule.field_type):
                expected = getattr(rule.field_type, '__name__', str(rule.field_type))
                validation_errors.append(
                    f"Field {rule.field_path} must be {expected}, got {type(value).__name__}"
                )
                continue

            if rule.allowed_values and value not in rule.allowed_values:
                validation_errors.append(
                    f"Field {rule.field_path} must be one of {rule.allowed_values}, got {value}"
                )

            if rule.min_value is not None and value < rule.min_value:
                validation_errors.append(
                    f"Field {rule.field_path} must be >= {rule.min_value}, got {value}"
                )

            if rule.max_value is not None and value > rule.max_value:
                validation_errors.append(
                    f"Field {rule.field_path} must be <= {rule.max_value}, got {value}"
                )

        return validation_errors

    def _load_env_files(self) -> None:
        for env_path in (self.config_dir / '.env', Path.cwd() / '.env'):
            if not env_path.exists():
                continue
            # existing environment wins over .env entries
            for key, value in dotenv_values(env_path).items():
                if value is not None:
                    self.environ.setdefault(key, value)

    def _read_config_file(self) -> Dict[str, Any]:
        for name in self.CONFIG_NAMES:
            path = self.config_dir / name
            if not path.exists():
                continue
            try:
                if path.suffix == '.json':
                    data = FileUtils.load_json(path)
                else:
                    data = FileUtils.read_yaml(path)
            except (yaml.YAMLError, json.JSONDecodeError, OSError) as e:
                raise ConfigError(f"Failed to parse {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{path} must contain a mapping at the top level")
            return data
        return {}

    def _apply_env_overrides(self, data: Dict[str, Any]) -> None:
        for env_name, field_path in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value:
                if field_path == 'logging.level':
                    value = value.upper()
                self._set_nested_value(data, field_path, value)

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Any:
        """Get nested value using dot notation."""
        current = data
        for key in path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return None
        return current

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set nested value using dot notation."""
        keys = path.split('.')
        current = data
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _substitute_environment_variables(self, data: Any) -> Any:
        """Recursively substitute ${VAR} / $VAR references."""
        if isinstance(data, dict):
            return {k: self._substitute_environment_variables(v) for k, v in data.items()}
        if isinstance(data, list):
            return [self._substitute_environment_variables(item) for item in data]
        if isinstance(data, str):
            def replace_env_var(match):
                var_name = match.group(1) or match.group(2)
                return self.environ.get(var_name, match.group(0))

            pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)'
            return re.sub(pattern, replace_env_var, data)
        return data

    def _initialize_builtin_schemas(self) -> None:
        tina_schema = ConfigSchema("tina", "1.0")
        tina_schema.add_rule(
            field_path="convex_url",
            required=False,
            field_type=str
        ).add_rule(
            field_path="auth_token",
            required=False,
            field_type=str
        ).add_rule(
            field_path="node_name",
            required=False,
            field_type=str
        ).add_rule(
            field_path="daemon.sync_interval_secs",
            required=True,
            field_type=int,
            default_value=30,
            min_value=1,
            max_value=3600
        ).add_rule(
            field_path="logging.level",
            required=True,
            field_type=str,
            default_value="INFO",
            allowed_values=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        )

        self.register_schema(tina_schema)
