"""
Configuration Management

YAML-based configuration with .env loading and ${VAR:default} substitution.

Usage:
    from config import get_config

    config = get_config()
    binance = config.get_venue_config('binance')
    ws_config = config.get_websocket_config()
    cache_config = config.get_cache_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import msgspec
import yaml
from dotenv import load_dotenv

from infrastructure.exceptions.system import ConfigurationError
from infrastructure.logging.structs import LoggingConfig
from .structs import (
    NetworkConfig, WebSocketConfig, ExchangeCredentials, VenueConfig,
    BalanceConfig, RateLimitConfig, CacheConfig, IbkrConfig
)

T = TypeVar('T')

_ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')


def guess_file_paths(file_name: str) -> list[Path]:
    """Candidate locations of a config file, most specific first."""
    return [
        Path.cwd() / file_name,                           # Current working directory
        Path(__file__).parent.parent.parent / file_name,  # Project root
        Path(__file__).parent.parent / file_name,         # src directory
    ]


def parse_section(data: Optional[Dict[str, Any]], struct_type: Type[T], section: str) -> T:
    """
    Convert a raw config section into its struct and validate it.

    Raises:
        ConfigurationError: If values have the wrong type or fail validation
    """
    try:
        value = msgspec.convert(data or {}, struct_type, strict=False)
        value.validate()
        return value
    except (msgspec.ValidationError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid {section} configuration: {e}", section) from e


def parse_venue_config(name: str, data: Dict[str, Any]) -> VenueConfig:
    """Venue sections keep api_key/secret_key at top level for env substitution."""
    data = dict(data)
    credentials = ExchangeCredentials(
        api_key=str(data.pop('api_key', '') or ''),
        secret_key=str(data.pop('secret_key', '') or ''),
    )
    data.setdefault('name', name)
    venue = parse_section(data, VenueConfig, f"venues.{name}")
    return msgspec.structs.replace(venue, credentials=credentials)


class HftConfig:
    """
    Process-wide configuration singleton.

    Loads .env then config.yaml (path from CONFIG_PATH or the default
    locations), substitutes environment references and parses every
    section into frozen structs.
    """

    _instance: Optional['HftConfig'] = None
    _initialized: bool = False

    ENVIRONMENT = 'dev'

    def __new__(cls) -> 'HftConfig':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._logger = logging.getLogger(__name__)
        self._load_env_file()
        self._apply(self._load_yaml_config())
        HftConfig._initialized = True
        self._logger.info(f"Configuration initialized for environment: {self.ENVIRONMENT}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HftConfig':
        """Build a standalone (non-singleton) config from an in-memory mapping."""
        instance = object.__new__(cls)
        instance._logger = logging.getLogger(__name__)
        instance._apply(data)
        return instance

    @classmethod
    def reset(cls) -> None:
        """Forget the singleton so the next access reloads from disk."""
        cls._instance = None
        cls._initialized = False

    def _load_env_file(self) -> None:
        for env_path in guess_file_paths('.env'):
            if env_path.exists():
                load_dotenv(dotenv_path=env_path, override=False)
                self._logger.info(f"Loaded environment variables from: {env_path}")
                return
        self._logger.debug("No .env file found - using system environment variables only")

    def _load_yaml_config(self) -> Dict[str, Any]:
        explicit = os.getenv('CONFIG_PATH')
        candidates = [Path(explicit)] if explicit else guess_file_paths('config.yaml')

        for config_path in candidates:
            if not config_path.exists():
                continue
            raw_content = config_path.read_text()
            try:
                data = yaml.safe_load(self._substitute_env_vars(raw_content)) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Failed to parse {config_path}: {e}", str(config_path)) from e
            self._logger.info(f"Configuration loaded from: {config_path}")
            return data

        raise ConfigurationError("No valid config.yaml found", 'CONFIG_PATH')

    def _substitute_env_vars(self, content: str) -> str:
        """
        Substitute environment variables in configuration content.

        Supports syntax:
        - ${VAR_NAME} - environment variable, empty when unset
        - ${VAR_NAME:default} - with default value
        """
        def replace_var(match):
            var_expr = match.group(1)
            if ':' in var_expr:
                var_name, default_value = var_expr.split(':', 1)
                return os.getenv(var_name.strip(), default_value)
            var_name = var_expr.strip()
            env_value = os.getenv(var_name)
            if env_value is None:
                self._logger.warning(f"Environment variable {var_name} not set - using empty value")
                return ""
            return env_value

        return _ENV_VAR_PATTERN.sub(replace_var, content)

    def _apply(self, data: Dict[str, Any]) -> None:
        self._config_data = data

        environment = data.get('environment', os.getenv('ENVIRONMENT', 'dev'))
        if isinstance(environment, dict):
            environment = environment.get('name', 'dev')
        self.ENVIRONMENT = str(environment).lower()
        if self.ENVIRONMENT not in ('dev', 'prod', 'test'):
            raise ConfigurationError(f"Invalid environment '{self.ENVIRONMENT}'", 'environment')

        self._network_config = parse_section(data.get('network'), NetworkConfig, 'network')
        self._websocket_config = parse_section(data.get('websocket'), WebSocketConfig, 'websocket')
        self._balance_config = parse_section(data.get('balance'), BalanceConfig, 'balance')
        self._rate_limit_config = parse_section(data.get('rate_limit'), RateLimitConfig, 'rate_limit')
        self._cache_config = parse_section(data.get('cache'), CacheConfig, 'cache')
        self._ibkr_config = parse_section(data.get('ibkr'), IbkrConfig, 'ibkr')

        self._venue_configs: Dict[str, VenueConfig] = {
            name.lower(): parse_venue_config(name.lower(), section or {})
            for name, section in (data.get('venues') or {}).items()
        }

        logging_data = data.get('logging')
        self._logging_config = (parse_section(logging_data, LoggingConfig, 'logging')
                                if logging_data else None)

    def get_venue_config(self, name: str) -> VenueConfig:
        """
        Raises:
            ConfigurationError: If the venue is not configured
        """
        name = name.lower()
        if name not in self._venue_configs:
            raise ConfigurationError(f"Venue '{name}' is not configured", f"venues.{name}")
        return self._venue_configs[name]

    def get_all_venue_configs(self) -> Dict[str, VenueConfig]:
        return dict(self._venue_configs)

    def get_network_config(self) -> NetworkConfig:
        return self._network_config

    def get_websocket_config(self) -> WebSocketConfig:
        return self._websocket_config

    def get_balance_config(self) -> BalanceConfig:
        return self._balance_config

    def get_rate_limit_config(self) -> RateLimitConfig:
        return self._rate_limit_config

    def get_cache_config(self) -> CacheConfig:
        return self._cache_config

    def get_ibkr_config(self) -> IbkrConfig:
        return self._ibkr_config

    def get_logging_config(self) -> LoggingConfig:
        """
        Raises:
            ConfigurationError: If config.yaml has no logging section
        """
        if self._logging_config is None:
            raise ConfigurationError("No logging section configured", 'logging')
        return self._logging_config


def get_config() -> HftConfig:
    """Get the process-wide configuration, loading it on first access."""
    return HftConfig()
