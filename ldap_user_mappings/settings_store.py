"""
Settings stores for the mapping configuration.

A settings store is a simple key-value store with get_option/update_option.
"""

import os
import copy
import logging
import tempfile
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger(__name__)


class SettingsStoreError(Exception):
    """Raised when the settings store cannot be read or written."""
    pass


class MemorySettingsStore:
    """Settings store held in memory."""

    def __init__(self, options: Optional[Dict[str, Any]] = None):
        self.options = copy.deepcopy(options) if options else {}

    def get_option(self, key: str, default: Any = None) -> Any:
        if key not in self.options:
            return default
        return copy.deepcopy(self.options[key])

    def update_option(self, key: str, value: Any) -> None:
        self.options[key] = copy.deepcopy(value)


class YamlSettingsStore:
    """
    Settings store backed by a YAML file.

    The file holds one mapping of option key to value. Each update rewrites
    the whole file through a temporary file and os.replace, so readers see
    either the old or the new document.
    """

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as e:
            raise SettingsStoreError(f"Invalid YAML in settings file {self.path}: {e}")
        except OSError as e:
            raise SettingsStoreError(f"Cannot read settings file {self.path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise SettingsStoreError(f"Settings file {self.path} must contain a mapping")
        return data

    def get_option(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def update_option(self, key: str, value: Any) -> None:
        options = self._read()
        options[key] = value

        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix='.settings-', suffix='.yaml', dir=directory)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    yaml.safe_dump(options, f, default_flow_style=False, sort_keys=False)
                os.replace(temp_path, self.path)
            except BaseException:
                os.unlink(temp_path)
                raise
        except OSError as e:
            raise SettingsStoreError(f"Cannot write settings file {self.path}: {e}")

        logger.debug(f"Updated option '{key}' in {self.path}")
