# DiaLoop Configuration Management
# Handles loading and accessing preference documents for the dosing engine
# and the observational learning subsystem.

import yaml
import json
import logging
from typing import Dict, Any, Optional
import os

DEFAULT_CONFIG_FILENAME = "dialoop_config.yaml"  # Default config filename to look for

logger = logging.getLogger(__name__)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Reads a preference document (`.yaml`, `.yml` or `.json`).

    Without `config_path` the file `DEFAULT_CONFIG_FILENAME` in the working
    directory is tried. Any problem (missing file, unknown extension,
    parse error, non-mapping document) is logged and yields `{}`; the
    engine then runs on its built-in defaults.
    """
    resolved_path = config_path
    if resolved_path is None:
        if os.path.exists(DEFAULT_CONFIG_FILENAME):
            resolved_path = DEFAULT_CONFIG_FILENAME
            logger.debug(
                f"No config path provided, using default "
                f"'{DEFAULT_CONFIG_FILENAME}' in CWD."
            )
        else:
            logger.debug(
                f"No config path provided and default "
                f"'{DEFAULT_CONFIG_FILENAME}' not found in CWD. "
                f"Returning empty config."
            )
            return {}

    if not os.path.exists(resolved_path):
        logger.warning(
            f"Configuration file not found at '{resolved_path}'. "
            f"Returning empty config."
        )
        return {}

    try:
        with open(resolved_path, 'r', encoding='utf-8') as f:
            if resolved_path.endswith((".yaml", ".yml")):
                config_data = yaml.safe_load(f)
            elif resolved_path.endswith(".json"):
                config_data = json.load(f)
            else:
                logger.warning(
                    f"Unknown config file format for '{resolved_path}'. "
                    f"Supported: .yaml, .yml, .json. Returning empty config."
                )
                return {}
    except yaml.YAMLError as ye:
        logger.warning(
            f"Error parsing YAML configuration from '{resolved_path}': {ye}. "
            f"Returning empty config."
        )
        return {}
    except json.JSONDecodeError as je:
        logger.warning(
            f"Error parsing JSON configuration from '{resolved_path}': {je}. "
            f"Returning empty config."
        )
        return {}
    except OSError as e:
        logger.warning(
            f"Could not read configuration from '{resolved_path}': {e}. "
            f"Returning empty config."
        )
        return {}

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        logger.warning(
            f"Configuration in '{resolved_path}' is not a mapping. "
            f"Returning empty config."
        )
        return {}
    logger.info(f"Configuration loaded successfully from '{resolved_path}'.")
    return config_data


def get_config_value(config: Dict[str, Any], key_path: str,
                     default: Optional[Any] = None) -> Any:
    """Looks up `a.b.c` in nested dicts, e.g. `engine.max_bolus_day`.

    Returns `default` when any segment is missing or not a mapping.
    """
    keys = key_path.split('.')
    current_level = config
    for key in keys:
        if isinstance(current_level, dict) and key in current_level:
            current_level = current_level[key]
        else:
            return default
    return current_level


class ConfigManager:
    """A manager class for handling DiaLoop preferences.

    Loads a preference document from a file (YAML or JSON) and gives
    dot-path access to it. The engine reads the `engine` section once
    per cycle, so a `reload()` between cycles takes effect on the next
    decision without restarting the loop.

    Attributes:
        config_data (Dict[str, Any]): The dictionary holding all loaded
            configuration parameters.
        _config_file_path (Optional[str]): The path to the configuration
            file that was last successfully loaded. Stored for
            reloading.
    """
    def __init__(self, config_file_path: Optional[str] = None,
                 config_data: Optional[Dict[str, Any]] = None):
        """Initializes the ConfigManager and loads configuration.

        Args:
            config_file_path (Optional[str]): The path to the
                configuration file (YAML or JSON). Defaults to None.
            config_data (Optional[Dict[str, Any]]): An already parsed
                document. When given, no file is read.
        """
        self.logger = logging.getLogger(__name__)
        self._config_file_path: Optional[str] = config_file_path
        if config_data is not None:
            self.config_data: Dict[str, Any] = dict(config_data)
        else:
            self.config_data = load_config(config_file_path)

        if not self.config_data and config_file_path:
            self.logger.warning(
                f"Could not load configuration from '{config_file_path}'. "
                f"Using built-in defaults."
            )

    def get(self, key_path: str, default: Optional[Any] = None) -> Any:
        """Retrieves a configuration value using a dot-separated key path."""
        return get_config_value(self.config_data, key_path, default)

    def get_section(self, section_key_path: str) -> Dict[str, Any]:
        """Retrieves an entire section of the configuration as a dictionary.

        Args:
            section_key_path (str): The dot-separated path to the desired
                configuration section (e.g., "engine").

        Returns:
            Dict[str, Any]: The configuration section as a dictionary.
                Returns an empty dictionary if the section is not found
                or if the item at the path is not a dictionary.
        """
        section = self.get(section_key_path, default={})
        return section if isinstance(section, dict) else {}

    def reload(self, new_config_file_path: Optional[str] = None):
        """Reloads the configuration.

        If `new_config_file_path` is provided, it is loaded and stored
        for future reloads; otherwise the last known path is re-read.
        """
        if new_config_file_path is not None:
            self._config_file_path = new_config_file_path
        path_to_load = self._config_file_path
        self.logger.info(
            f"Reloading configuration from "
            f"'{path_to_load if path_to_load else DEFAULT_CONFIG_FILENAME}'."
        )
        self.config_data = load_config(path_to_load)
        if not self.config_data:
            self.logger.warning(
                "Reload resulted in an empty configuration; "
                "built-in defaults apply."
            )
