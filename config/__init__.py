"""Configuration module for loading and managing marketplace settings"""
import logging
from typing import Dict, Any, Optional

from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS
)

__all__ = [
    'get_settings',
    'load_settings_conf',
    'validate_settings',
    'configure_logging',
    'SettingsError',
    'DEFAULTS'
]

_settings_conf: Optional[Dict[str, Any]] = None


def get_settings(settings_path: Optional[str] = None, reload: bool = False) -> Dict[str, Any]:
    """Get the loaded settings, loading settings.conf on first use.

    Args:
        settings_path: Optional directory containing settings.conf
        reload: Force reading the file again

    Raises:
        SettingsError: If the configuration is invalid
    """
    global _settings_conf

    if _settings_conf is None or reload or settings_path is not None:
        try:
            _settings_conf = load_settings_conf(settings_path)
        except SettingsError as e:
            # Re-raise the error but provide more context
            raise SettingsError(
                f"Configuration Error\n"
                "=================\n\n"
                f"{str(e)}\n\n"
                "Please ensure settings.conf is properly configured.\n"
                "See settings.conf.example for the available settings."
            ) from e
    return _settings_conf


def configure_logging(level: str = 'INFO') -> None:
    """Configure root logging the same way for every entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
