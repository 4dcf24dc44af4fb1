"""
Configuration Loader for the BTCDOM Backtester
Loads YAML configuration files based on environment
"""

import logging
import os
import yaml
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class Config:
    """Configuration singleton that loads and merges YAML configs"""

    _instance = None
    _config: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_config()
        return cls._instance

    def _load_config(self):
        """Load configuration from YAML files"""
        config_dir = Path(__file__).parent / "config"
        env = os.getenv("BTCDOM_ENV", "development")

        # Load default config
        default_path = config_dir / "default.yaml"
        if default_path.exists():
            with open(default_path, 'r') as f:
                self._config = yaml.safe_load(f) or {}

        # Load environment-specific config and merge
        env_path = config_dir / f"{env}.yaml"
        if env_path.exists():
            with open(env_path, 'r') as f:
                env_config = yaml.safe_load(f) or {}
                self._deep_merge(self._config, env_config)

        logger.info(f"Loaded configuration for environment: {env}")

    def _deep_merge(self, base: dict, override: dict):
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, path: str, default=None) -> Any:
        """
        Get config value using dot notation.
        Example: config.get('strategy.btc_ratio', 0.5)
        """
        keys = path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    # Convenience properties for common config sections
    @property
    def strategy(self) -> Dict[str, Any]:
        return self.get_section('strategy')

    @property
    def simulation(self) -> Dict[str, Any]:
        return self.get_section('simulation')

    @property
    def optimizer(self) -> Dict[str, Any]:
        return self.get_section('optimizer')

    @property
    def database(self) -> Dict[str, Any]:
        return self.get_section('database')


# Singleton instance
config = Config()
