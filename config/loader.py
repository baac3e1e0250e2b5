"""
Configuration loading and management with template support.

Handles tree setup, template substitution and environment overrides.
"""

import json
import os
import tempfile
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional, Union
import logging

from core.models.config import CONFIG_DIR_NAME, GlobalSettings, SyncConfig
from .defaults import ENV_VAR_MAPPING, get_default_sync_config

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and manage sync configurations with template support"""

    def __init__(self, global_settings: Optional[GlobalSettings] = None):
        self.global_settings = global_settings or GlobalSettings()
        self.config_cache: Dict[str, SyncConfig] = {}

    def load_sync_config(self, root: Union[str, Path]) -> SyncConfig:
        """Load or create the configuration for a markdown tree"""
        root = Path(root).resolve()

        cache_key = str(root)
        if cache_key in self.config_cache:
            return self.config_cache[cache_key]

        config_file = root / CONFIG_DIR_NAME / "config.json"

        if config_file.exists():
            config = self._load_existing_config(config_file, root)
        else:
            config = self._create_sync_config(root)

        self.config_cache[cache_key] = config
        return config

    def _load_existing_config(self, config_file: Path, root: Path) -> SyncConfig:
        """Load existing configuration file with validation"""
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            data = self._apply_env_overrides(data)
            data['root'] = root

            return SyncConfig.from_dict(data)

        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            return self._create_sync_config(root)

    def _create_sync_config(self, root: Path) -> SyncConfig:
        """Create new sync configuration from template"""
        config_data = get_default_sync_config()
        config_data = self._substitute_template_vars(config_data, {'root': str(root)})
        config_data = self._apply_env_overrides(config_data)
        config_data['root'] = root

        return SyncConfig.from_dict(config_data)

    def _substitute_template_vars(
        self,
        data: Any,
        substitutions: Dict[str, str]
    ) -> Any:
        """Recursively substitute template variables in configuration"""
        if isinstance(data, dict):
            return {
                key: self._substitute_template_vars(value, substitutions)
                for key, value in data.items()
            }
        elif isinstance(data, list):
            return [
                self._substitute_template_vars(item, substitutions)
                for item in data
            ]
        elif isinstance(data, str):
            return Template(data).safe_substitute(substitutions)
        else:
            return data

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(config_data, config_path, env_value)

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: str) -> None:
        """
        Set nested dictionary value using dot notation path.

        A trailing ``*`` applies the value to every key of the target mapping.
        """
        keys = path.split('.')
        current = data

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        final_key = keys[-1]
        converted_value = self._convert_env_value(value)
        if final_key == '*':
            for key in list(current):
                current[key] = converted_value
        else:
            current[final_key] = converted_value

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type"""
        if value.lower() in ('true', 'yes', 'on'):
            return True
        elif value.lower() in ('false', 'no', 'off'):
            return False

        try:
            if '.' in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        return value

    def save_sync_config(self, config: SyncConfig) -> bool:
        """Save configuration to disk atomically"""
        try:
            config_file = config.get_config_file()
            config_file.parent.mkdir(parents=True, exist_ok=True)

            config_data = config.to_dict()
            config_data.pop('root', None)

            fd, temp_path = tempfile.mkstemp(
                dir=config_file.parent, prefix=".config.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(config_data, f, indent=2, ensure_ascii=False)
                os.replace(temp_path, config_file)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

            logger.info(f"Saved configuration to {config_file}")

            self.config_cache[str(config.root)] = config
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save config for {config.root}: {e}")
            return False

    def setup_tree(
        self,
        root: Union[str, Path],
        overwrite: bool = False,
        **overrides: Any
    ) -> SyncConfig:
        """Initialize a markdown tree for synchronization"""
        root = Path(root).resolve()

        if not root.exists():
            raise ValueError(f"Sync root does not exist: {root}")

        logger.info(f"Setting up outline-sync at {root}")

        config = self.load_sync_config(root)

        if config.is_initialized and not overwrite:
            logger.info(f"Tree already initialized at {root}")
            return config

        if overrides:
            data = config.to_dict()
            for key, value in overrides.items():
                if value is not None:
                    self._assign(data, key, value)
            data['root'] = root
            config = SyncConfig.from_dict(data)

        config.get_state_dir()
        self.save_sync_config(config)

        logger.info(f"Setup complete for {root}")
        return config

    def _assign(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set a nested value without type conversion"""
        keys = path.split('.')
        current = data
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    def clear_cache(self) -> None:
        """Clear configuration cache"""
        self.config_cache.clear()
        logger.info("Configuration cache cleared")
