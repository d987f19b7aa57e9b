"""
Configuration Loader Module

Loads runtime settings from a YAML or JSON file with environment variable
substitution and range validation. A missing file yields the defaults.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .file_utils import FileUtils

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'TMUX_TEAM_CONFIG'
JOBS_DIR_ENV_VAR = 'TMUX_TEAM_JOBS_DIR'
DEFAULT_HOME = Path.home() / '.tmux-team'


@dataclass
class ConfigValidationRule:
    """Configuration validation rule."""
    field_path: str
    field_type: Union[type, tuple] = int
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    allowed_values: Optional[List[Any]] = None


@dataclass
class Settings:
    """Runtime settings. Durations carry their unit in the name."""
    poll_interval_ms: int = 5000
    watchdog_interval_ms: int = 3000
    stall_threshold_s: float = 60.0
    startup_delay_s: float = 4.0
    kill_grace_ms: int = 10000
    shutdown_ack_timeout_ms: int = 2000
    outbox_max_lines: int = 500
    message_max_chars: int = 200
    log_level: str = 'INFO'
    jobs_dir: Path = field(default_factory=lambda: DEFAULT_HOME / 'jobs')
    # agent type -> {'busy': [...], 'trust_question': [...], 'trust_choices': [...]}
    pane_patterns: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)


SETTINGS_RULES = [
    ConfigValidationRule('poll_interval_ms', int, min_value=100, max_value=600000),
    ConfigValidationRule('watchdog_interval_ms', int, min_value=100, max_value=600000),
    ConfigValidationRule('stall_threshold_s', (int, float), min_value=1),
    ConfigValidationRule('startup_delay_s', (int, float), min_value=0, max_value=300),
    ConfigValidationRule('kill_grace_ms', int, min_value=0),
    ConfigValidationRule('shutdown_ack_timeout_ms', int, min_value=0),
    ConfigValidationRule('outbox_max_lines', int, min_value=2),
    ConfigValidationRule('message_max_chars', int, min_value=10, max_value=4000),
    ConfigValidationRule('log_level', str,
                         allowed_values=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
    ConfigValidationRule('jobs_dir', str),
    ConfigValidationRule('pane_patterns', dict),
]


class ConfigLoader:
    """
    Settings loader with validation and environment variable support.

    Features:
    - JSON and YAML configuration support
    - Environment variable substitution (${VAR} and $VAR)
    - Rule-based validation; invalid keys are dropped with a warning and
      fall back to their defaults
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize config loader.

        Args:
            config_path: Explicit settings file; defaults to $TMUX_TEAM_CONFIG
                or ~/.tmux-team/config.yaml
        """
        if config_path is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            config_path = Path(env_path) if env_path else DEFAULT_HOME / 'config.yaml'
        self.config_path = Path(config_path)

    def load_settings(self) -> Settings:
        """
        Load settings from disk, falling back to defaults.

        Returns:
            Settings: validated settings
        """
        raw = self._read_raw()
        raw = self._substitute_environment_variables(raw)
        valid = self.validate(raw)

        settings = Settings()
        for key, value in valid.items():
            if key == 'jobs_dir':
                value = Path(value).expanduser()
            elif key == 'log_level':
                value = value.upper()
            setattr(settings, key, value)

        # Environment wins over the file for the jobs directory
        env_jobs_dir = os.environ.get(JOBS_DIR_ENV_VAR)
        if env_jobs_dir:
            settings.jobs_dir = Path(env_jobs_dir)

        return settings

    def validate(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate raw settings against SETTINGS_RULES.

        Args:
            config_data: Raw configuration dictionary

        Returns:
            Dict containing only the keys that passed validation
        """
        valid: Dict[str, Any] = {}
        errors: List[str] = []

        for rule in SETTINGS_RULES:
            if rule.field_path not in config_data:
                continue
            value = config_data[rule.field_path]

            if isinstance(value, bool) or not isinstance(value, rule.field_type):
                errors.append(f"{rule.field_path} has wrong type {type(value).__name__}")
                continue
            if rule.field_path == 'log_level':
                value = value.upper()
            if rule.allowed_values and value not in rule.allowed_values:
                errors.append(f"{rule.field_path} must be one of {rule.allowed_values}, got {value}")
                continue
            if rule.min_value is not None and value < rule.min_value:
                errors.append(f"{rule.field_path} must be >= {rule.min_value}, got {value}")
                continue
            if rule.max_value is not None and value > rule.max_value:
                errors.append(f"{rule.field_path} must be <= {rule.max_value}, got {value}")
                continue

            valid[rule.field_path] = value

        for error in errors:
            logger.warning(f"Ignoring setting in {self.config_path}: {error}")

        return valid

    def _read_raw(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            return {}

        if self.config_path.suffix == '.json':
            data = FileUtils.read_json(self.config_path)
        else:
            data = FileUtils.read_yaml(self.config_path)

        if not isinstance(data, dict):
            logger.warning(f"Settings file {self.config_path} is not a mapping, using defaults")
            return {}
        return data

    def _substitute_environment_variables(self, data: Any) -> Any:
        """Recursively substitute environment variables in configuration."""
        if isinstance(data, dict):
            return {k: self._substitute_environment_variables(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._substitute_environment_variables(item) for item in data]
        elif isinstance(data, str):
            def replace_env_var(match):
                var_name = match.group(1) or match.group(2)
                return os.environ.get(var_name, match.group(0))

            pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)'
            return re.sub(pattern, replace_env_var, data)
        else:
            return data


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Convenience wrapper around ConfigLoader.load_settings()."""
    return ConfigLoader(config_path).load_settings()


def load_team_config_file(path: Path) -> Dict[str, Any]:
    """
    Read a team config (YAML or JSON) for the CLI ``start`` command.

    Raises:
        ValueError: if the file is missing or not a mapping
    """
    path = Path(path)
    if not path.exists():
        raise ValueError(f"Team config not found: {path}")
    if path.suffix == '.json':
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    else:
        data = FileUtils.read_yaml(path)
    if not isinstance(data, dict):
        raise ValueError(f"Team config {path} must contain a mapping")
    return data
