"""
Configuration loading utilities for the form engine.

This module provides functionality to load and validate application
configuration (API location, form behavior defaults, logging) with
fallback to defaults.
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging
from copy import deepcopy

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.yaml")


def deep_merge(base_dict: Dict[str, Any], update_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries, with update_dict taking precedence.
    
    Args:
        base_dict: Base dictionary (defaults)
        update_dict: Dictionary to merge in (user config)
        
    Returns:
        Merged dictionary
    """
    result = deepcopy(base_dict)
    
    for key, value in update_dict.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = deepcopy(value)
    
    return result


def get_default_config() -> Dict[str, Any]:
    """
    Get default configuration.
    
    Returns:
        Dictionary with default configuration
    """
    return {
        'app': {
            'name': 'Catalog Admin Console',
            'version': '1.0.0',
            'debug': False
        },
        'api': {
            'base_url': 'http://localhost:8000/api',
            'timeout': 10.0,
            'token': None,
            'lang': 'en'
        },
        'forms': {
            'schemas_dir': 'schemas',
            'page_size': 10,
            'debounce_ms': 500,
            'scroll_threshold_px': 100,
            'status_display_seconds': 2.0,
            'max_upload_mb': 5
        },
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        }
    }


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load application configuration.
    
    Args:
        config_path: Optional path to config file (defaults to config.yaml)
        
    Returns:
        Complete configuration dictionary
    """
    if config_path is None:
        config_path = CONFIG_FILE
    
    default_config = get_default_config()
    
    if not config_path.exists():
        logger.warning(f"Configuration file not found: {config_path}")
        logger.info("Using default configuration")
        return default_config
    
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            user_config = yaml.safe_load(f)
        
        if user_config is None:
            logger.warning(f"Configuration file is empty: {config_path}")
            return default_config
        
        if not isinstance(user_config, dict):
            logger.error(f"Configuration file is not a valid dictionary: {config_path}")
            logger.info("Using default configuration")
            return default_config
        
        config = deep_merge(default_config, user_config)
        
        if not validate_config(config):
            logger.info("Using default configuration")
            return default_config
        
        logger.info(f"Successfully loaded configuration from {config_path}")
        return config
        
    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {config_path}: {e}")
        logger.info("Using default configuration")
        return default_config
        
    except (IOError, OSError) as e:
        logger.error(f"Failed to read configuration file {config_path}: {e}")
        logger.info("Using default configuration")
        return default_config


def validate_config(config: Dict[str, Any]) -> bool:
    """
    Validate configuration structure and value ranges.
    
    Args:
        config: Configuration dictionary to validate
        
    Returns:
        True if configuration is valid, False otherwise
    """
    required_sections = ['app', 'api', 'forms', 'logging']
    
    for section in required_sections:
        if not isinstance(config.get(section), dict):
            logger.error(f"Configuration section '{section}' is missing or not a mapping")
            return False
    
    forms = config['forms']
    
    for key in ('page_size', 'max_upload_mb'):
        value = forms.get(key)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            logger.error(f"forms.{key} must be a positive number, got {value!r}")
            return False
    
    for key in ('debounce_ms', 'scroll_threshold_px', 'status_display_seconds'):
        value = forms.get(key)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            logger.error(f"forms.{key} must be a non-negative number, got {value!r}")
            return False
    
    if not config['api'].get('base_url'):
        logger.error("api.base_url must be set")
        return False
    
    return True


def get_config_value(config: Dict[str, Any], section: str, key: str, default: Any = None) -> Any:
    """
    Get a specific configuration value.
    
    Args:
        config: Loaded configuration
        section: Configuration section name
        key: Key within the section
        default: Value returned when section or key is missing
    """
    section_values = config.get(section)
    if not isinstance(section_values, dict):
        return default
    return section_values.get(key, default)


def get_logging_level(level_str: str) -> int:
    """Map string logging level to logging constant."""
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    return level_map.get(str(level_str).upper(), logging.INFO)


def configure_logging(config: Dict[str, Any]) -> int:
    """
    Apply the configured logging level and format.

    Returns:
        The numeric level that was applied
    """
    level = get_logging_level(get_config_value(config, 'logging', 'level', 'INFO'))
    log_format = get_config_value(config, 'logging', 'format')
    if log_format:
        logging.basicConfig(level=level, format=log_format)
    else:
        logging.basicConfig(level=level)
    logger.info(f"Logging configured to level: {logging.getLevelName(level)}")
    return level
