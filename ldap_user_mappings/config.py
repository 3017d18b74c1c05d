"""
Configuration loading and management for LDAP User Mappings.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if self.config is None:
            self.config = {}
        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields of configured sections."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            section = config_key.split('.')[0]
            if env_value and isinstance(self.config.get(section), dict):
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # LDAP is optional, but must be complete when present
        ldap_config = self.config.get('ldap')
        if ldap_config is not None:
            if not isinstance(ldap_config, dict):
                errors.append("ldap must be a mapping")
            else:
                if not ldap_config.get('server_url'):
                    errors.append("Missing required LDAP field: server_url")
                if bool(ldap_config.get('bind_dn')) != bool(ldap_config.get('bind_password')):
                    errors.append("LDAP bind_dn and bind_password must be set together")

        settings_config = self.config.get('settings_store') or {}
        if not isinstance(settings_config, dict) or not settings_config.get('path'):
            errors.append("Missing required field settings_store.path")

        catalog_config = self.config.get('field_catalog') or {}
        if not isinstance(catalog_config, dict):
            errors.append("field_catalog must be a mapping")
        else:
            fields = catalog_config.get('fields')
            database = catalog_config.get('database')
            if fields is None and not database:
                errors.append("field_catalog requires either fields or database")
            if fields is not None and not isinstance(fields, list):
                errors.append("field_catalog.fields must be a list")

        mappings_config = self.config.get('mappings') or {}
        if not isinstance(mappings_config, dict):
            errors.append("mappings must be a mapping")
        else:
            exclusions = mappings_config.get('exclusions', [])
            if not isinstance(exclusions, list):
                errors.append("mappings.exclusions must be a list")
            if 'option_key' in mappings_config and not mappings_config['option_key']:
                errors.append("mappings.option_key must not be empty")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        if isinstance(self.config.get('ldap'), dict):
            ldap_defaults = {
                'user_base_dn': '',
                'user_filter': '(objectClass=person)',
                'login_attribute': 'uid',
                'verify_ssl': True,
                'connection_timeout': 10,
                'receive_timeout': 10
            }
            for key, value in ldap_defaults.items():
                self.config['ldap'].setdefault(key, value)

        catalog_config = self.config['field_catalog'] = self.config.get('field_catalog') or {}
        if catalog_config.get('database'):
            catalog_config.setdefault('table', 'usermeta')
            catalog_config.setdefault('column', 'meta_key')

        mappings_defaults = {
            'option_key': 'simpleldap_user_attr_map',
            'exclusions': [],
            'prune_stale_fields': False,
            'alt_dn_prefix': 'ldap_alt_dn_',
            'ldap_attr_prefix': 'ldap_attr_'
        }
        mappings_config = self.config['mappings'] = self.config.get('mappings') or {}
        for key, value in mappings_defaults.items():
            mappings_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'retention_days': 7
        }
        logging_config = self.config['logging'] = self.config.get('logging') or {}
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
