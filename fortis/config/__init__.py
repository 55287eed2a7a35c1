"""YAML configuration loader for Fortis."""

import os
import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigIncompleteError
from ..models.settings import REQUIRED_FIELDS, Settings
from ..services.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

API_KEY_ENV = "DEEPGRAM_API_KEY"

DEFAULT_CONFIG: Dict[str, Any] = {
    "transcriber": {
        "provider": "deepgram",
        "api_key": None,
        "language": "en-US",
        "model": "nova-2",
        "credentials_path": None,
    },
    "audio": {
        "device": None,
        "sample_rate": 16000,
        "channels": 1,
        "chunk_duration_ms": 100,
        "queue_seconds": 3.0,
        "device_poll_interval": 2.0,
    },
    "network": {
        "connect_timeout": 10.0,
        "send_timeout": 5.0,
        "keep_alive_interval": 3.0,
        "backoff": {
            "base": 1.0,
            "cap": 30.0,
            "jitter": 0.2,
            "max_attempts": 8,
        },
    },
    "ui": {
        "theme": "blue",
        "refresh_per_second": 10,
    },
    "logging": {
        "level": "INFO",
        "file_path": "logs/fortis.log",
        "console_output": False,
    },
}

LANGUAGES: List[str] = [
    "en-US", "en-GB", "en-AU", "en-IN", "es", "es-419", "fr", "fr-CA", "de",
    "hi", "it", "ja", "ko", "nl", "pt", "pt-BR", "ru", "sv", "tr", "uk", "zh",
]


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class FortisConfig:
    """Fortis configuration loader."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to YAML config file. If None, built-in defaults are used.
            environ: Environment mapping consulted for overrides (defaults to os.environ)
        """
        self.environ = os.environ if environ is None else environ
        self.config_file = Path(config_path) if config_path else None

        if self.config_file is not None:
            if not self.config_file.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_file}")
            logger.info(f"Loading configuration from: {self.config_file}")
            self.config = _merge(DEFAULT_CONFIG, self._load_config())
        else:
            logger.info("No configuration file given, using defaults")
            self.config = copy.deepcopy(DEFAULT_CONFIG)

        self._apply_environment()

    def _load_config(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ValueError("Configuration file must contain a mapping")

        self._resolve_paths(config)
        logger.info("Configuration loaded successfully")
        return config

    def _resolve_paths(self, config: Dict[str, Any]) -> None:
        """Resolve relative paths in configuration relative to config file location."""
        config_dir = self.config_file.parent

        transcriber = config.get('transcriber') or {}
        creds_path = transcriber.get('credentials_path')
        if creds_path and not os.path.isabs(creds_path):
            transcriber['credentials_path'] = str(config_dir / creds_path)

        log_config = config.get('logging') or {}
        log_path = log_config.get('file_path')
        if log_path and not os.path.isabs(log_path):
            log_config['file_path'] = str(config_dir / log_path)

    def _apply_environment(self) -> None:
        env_key = self.environ.get(API_KEY_ENV)
        if env_key and not self.get('transcriber.api_key'):
            logger.info(f"Using API key from {API_KEY_ENV}")
            self.set('transcriber.api_key', env_key)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'transcriber.language').

        Args:
            key_path: Dot-separated key path
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split('.')
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation.

        Args:
            key_path: Dot-separated path to config value (e.g., 'transcriber.language')
            value: Value to set
        """
        keys = key_path.split('.')
        config_dict = self.config

        for key in keys[:-1]:
            if not isinstance(config_dict.get(key), dict):
                config_dict[key] = {}
            config_dict = config_dict[key]

        config_dict[keys[-1]] = value
        if keys[-1] == 'api_key':
            logger.debug(f"Configuration key '{key_path}' set")
        else:
            logger.debug(f"Configuration key '{key_path}' set to: {value}")

    def save(self, path: Optional[str] = None) -> Path:
        """Write the current configuration back to YAML."""
        target = Path(path) if path else self.config_file
        if target is None:
            raise ValueError("No configuration path to save to")
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.config, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Configuration saved to: {target}")
        return target

    def get_settings(self) -> Settings:
        """Build the immutable Settings used to open a transcription session.

        Raises:
            ConfigIncompleteError: api_key, language or model is missing or blank
        """
        values = {
            "api_key": self.get('transcriber.api_key'),
            "language": self.get('transcriber.language'),
            "model": self.get('transcriber.model'),
            "provider": self.get('transcriber.provider', 'deepgram'),
            "theme": self.get('ui.theme', 'blue'),
            "credentials_path": self.get('transcriber.credentials_path'),
        }
        # Google service-account credentials stand in for an API key
        if values["provider"] == "google" and values["credentials_path"] and not values["api_key"]:
            values["api_key"] = "service-account"

        missing = [name for name in REQUIRED_FIELDS if not isinstance(values[name], str) or not values[name].strip()]
        if missing:
            raise ConfigIncompleteError(missing)
        try:
            return Settings(**values)
        except ValidationError as e:
            invalid = sorted({str(error["loc"][0]) for error in e.errors() if error.get("loc")})
            raise ConfigIncompleteError(invalid or list(REQUIRED_FIELDS)) from e

    def get_backoff_policy(self) -> BackoffPolicy:
        backoff = self.get('network.backoff', {}) or {}
        return BackoffPolicy(
            base=float(backoff.get('base', 1.0)),
            cap=float(backoff.get('cap', 30.0)),
            jitter=float(backoff.get('jitter', 0.2)),
            max_attempts=backoff.get('max_attempts', 8),
        )

    def get_log_file_path(self) -> str:
        return str(Path(self.get('logging.file_path', 'logs/fortis.log')).absolute())
