"""
Configuration Manager for VoltAssist

Loads config.yaml into the pydantic HubConfig, fills secrets from the
environment and turns validation failures into ConfigInvalid so a bad
threshold ordering stops the process at start-up instead of at decision time.
"""

import os
import yaml
import logging
from typing import Any, Dict, Optional
from pathlib import Path

from pydantic import ValidationError

from voltassist.config import HubConfig
from voltassist.errors import ConfigInvalid
from voltassist.timezone_utils import initialize_timezones

log = logging.getLogger(__name__)

HA_TOKEN_ENV = "VOLTASSIST_HA_TOKEN"
ESIOS_TOKEN_ENV = "ESIOS_TOKEN"


class ConfigurationManager:
    """Loads, validates, updates and persists the YAML configuration."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config_cache: Optional[HubConfig] = None
        self._from_env = set()  # (section, field) pairs filled from the environment

    @property
    def config(self) -> HubConfig:
        if self._config_cache is None:
            return self.load_config()
        return self._config_cache

    def load_config(self) -> HubConfig:
        log.info(f"Loading configuration from {self.config_path}")
        config = self.validate(self._load_from_file())
        self._apply_environment(config)
        self._config_cache = config

        # Initialize timezone utilities with the loaded configuration
        initialize_timezones(config.timezone)
        return config

    def _load_from_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        with open(self.config_path, 'r') as f:
            try:
                config_dict = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigInvalid(f"Invalid YAML in {self.config_path}: {e}") from e
        return config_dict or {}

    @staticmethod
    def validate(config_dict: Dict[str, Any]) -> HubConfig:
        try:
            return HubConfig(**config_dict)
        except ValidationError as e:
            raise ConfigInvalid(f"Invalid configuration: {e}") from e

    def _apply_environment(self, config: HubConfig):
        if not config.home_assistant.token and os.getenv(HA_TOKEN_ENV):
            config.home_assistant.token = os.getenv(HA_TOKEN_ENV)
            self._from_env.add(("home_assistant", "token"))
            log.info(f"Home Assistant token taken from {HA_TOKEN_ENV}")
        if not config.prices.esios_token and os.getenv(ESIOS_TOKEN_ENV):
            config.prices.esios_token = os.getenv(ESIOS_TOKEN_ENV)
            self._from_env.add(("prices", "esios_token"))

    def update_section(self, section: str, values: Dict[str, Any]) -> HubConfig:
        """
        Merge `values` into one top-level section and re-validate the whole
        config. The cached config is only replaced when validation passes.
        """
        current = self.config.model_dump()
        if section not in current or not isinstance(current[section], dict):
            raise ConfigInvalid(f"Unknown configuration section: {section}")
        current[section].update(values)
        updated = self.validate(current)
        self._config_cache = updated
        log.info(f"Configuration section '{section}' updated: {values}")
        return updated

    def reload_config(self) -> HubConfig:
        """Reload configuration from file."""
        log.info("Reloading configuration")
        self._config_cache = None
        return self.load_config()

    def sync_to_file(self):
        """Write the current configuration back to config.yaml, leaving out secrets read from the environment."""
        if not self._config_cache:
            log.warning("No configuration cache available for sync")
            return

        config_dict = self._config_cache.model_dump(mode="json")
        for section, field in self._from_env:
            config_dict[section].pop(field, None)
        with open(self.config_path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
        log.info(f"Configuration synced to {self.config_path}")
