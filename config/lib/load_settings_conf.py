"""Settings configuration loader module.

This module handles loading and parsing of the settings.conf file which holds
the marketplace configuration: the admin, escrow and signer addresses, the fee
schedule, duration limits, allowlists and the event database URL.

The settings file uses INI format with a [DEFAULT] section containing key-value pairs.

Required settings:
    admin_address: Address holding the administrative capability

Example settings.conf:
    [DEFAULT]
    admin_address = 0x1111111111111111111111111111111111111111
    signer_address = 0x2222222222222222222222222222222222222222
    platform_fee_bps = 100
    token_contracts = 0x57f1887a8BF19d14Bc7DfD3783E9aF5A015223C2

Raises:
    SettingsError: If the settings file is invalid or missing required settings
"""
from configparser import ConfigParser
from pathlib import Path
from typing import Dict, Any, List, Optional

from web3 import Web3


class ConfigValidationError:
    """Helper class to format configuration validation errors"""
    def __init__(self):
        self.missing: List[str] = []
        self.invalid: List[str] = []
        self.missing_sections: List[str] = []

    def has_errors(self) -> bool:
        """Check if any errors exist"""
        return bool(self.missing or self.invalid or self.missing_sections)

    def format_message(self) -> str:
        """Format error message in a clean, readable way"""
        messages = []

        if self.missing_sections:
            messages.append("Missing required sections:")
            messages.extend(f"  - {item}" for item in self.missing_sections)

        if self.missing:
            if messages:
                messages.append("")
            messages.append("Missing required settings:")
            messages.extend(f"  - {item}" for item in self.missing)

        if self.invalid:
            if messages:
                messages.append("")
            messages.append("Invalid settings:")
            messages.extend(f"  - {item}" for item in self.invalid)

        return "\n".join(messages)


class SettingsError(Exception):
    """Raised when there are issues loading or parsing the settings configuration."""
    pass


# Default settings
DEFAULTS = {
    'escrow_address': '0x000000000000000000000000000000000000e5c0',  # Account holding escrow
    'signer_address': '',  # Off-ledger trades are disabled until a signer is set
    'platform_fee_bps': '100',  # 1% on listings, auctions and signature trades
    'offer_fee_bps': '100',  # 1% on accepted offers
    'max_fee_bps': '1000',  # Fee changes are capped at 10%
    'min_listing_duration': '86400',  # 1 day
    'max_listing_duration': '31536000',  # 365 days
    'min_auction_duration': '3600',  # 1 hour
    'max_auction_duration': '604800',  # 7 days
    'max_bulk_entries': '50',
    'payment_tokens': '',  # Comma-separated token addresses accepted besides native value
    'token_contracts': '',  # Comma-separated asset contracts traded on the marketplace
    'db_url': 'postgresql://root@localhost:26257/defaultdb?sslmode=disable',
    'log_level': 'INFO'
}

INT_SETTINGS = [
    'platform_fee_bps',
    'offer_fee_bps',
    'max_fee_bps',
    'min_listing_duration',
    'max_listing_duration',
    'min_auction_duration',
    'max_auction_duration',
    'max_bulk_entries'
]

ADDRESS_LIST_SETTINGS = ['payment_tokens', 'token_contracts']


def load_settings_conf(settings_path: Optional[str] = None) -> Dict[str, Any]:
    """Load, parse and validate settings.conf

    Args:
        settings_path: Directory containing settings.conf. When omitted, the
            current directory is searched and the defaults are used if no
            file is found.

    Returns:
        Dictionary containing validated settings

    Raises:
        SettingsError: If an explicit file is missing, parsing fails, or validation fails
    """
    config_path = Path(settings_path or ".") / 'settings.conf'

    if not config_path.exists():
        if settings_path is not None:
            raise SettingsError(
                f"Settings file not found at: {config_path}\n"
                "Please create settings.conf based on settings.conf.example"
            )
        return validate_settings(dict(DEFAULTS))

    try:
        parser = ConfigParser()
        parser.read(config_path)
    except Exception as e:
        raise SettingsError(f"Error parsing settings.conf: {str(e)}")

    settings = dict(DEFAULTS)
    settings.update(parser['DEFAULT'])
    return validate_settings(settings)


def validate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Validate loaded settings.

    Args:
        settings: Dictionary of settings to validate

    Returns:
        Validated and processed settings

    Raises:
        SettingsError: If validation fails
    """
    errors = ConfigValidationError()
    settings = {**DEFAULTS, **settings}

    if not settings.get('admin_address'):
        errors.missing.append('admin_address')

    for key in ('admin_address', 'escrow_address', 'signer_address'):
        value = settings.get(key)
        if not value:
            settings[key] = None
        elif not Web3.is_address(value):
            errors.invalid.append(f"{key}: {value} is not an address")
        else:
            settings[key] = Web3.to_checksum_address(value)

    for key in ADDRESS_LIST_SETTINGS:
        value = settings.get(key) or ''
        if isinstance(value, str):
            value = [item.strip() for item in value.split(',') if item.strip()]
        addresses = []
        for item in value:
            if Web3.is_address(item):
                addresses.append(Web3.to_checksum_address(item))
            else:
                errors.invalid.append(f"{key}: {item} is not an address")
        settings[key] = addresses

    for key in INT_SETTINGS:
        try:
            settings[key] = int(settings[key])
        except (TypeError, ValueError):
            errors.invalid.append(f"{key}: {settings[key]!r} is not an integer")

    if not errors.has_errors():
        if settings['max_fee_bps'] > 10000:
            errors.invalid.append("max_fee_bps: must be at most 10000")
        for key in ('platform_fee_bps', 'offer_fee_bps'):
            if not 0 <= settings[key] <= settings['max_fee_bps']:
                errors.invalid.append(f"{key}: must be between 0 and max_fee_bps")
        for kind in ('listing', 'auction'):
            low = settings[f'min_{kind}_duration']
            high = settings[f'max_{kind}_duration']
            if low < 1 or high < low:
                errors.invalid.append(f"{kind} durations: need 1 <= min <= max, got {low}..{high}")
        if settings['max_bulk_entries'] < 1:
            errors.invalid.append("max_bulk_entries: must be at least 1")

    if errors.has_errors():
        raise SettingsError(
            "Settings Configuration Validation Failed\n\n" +
            errors.format_message()
        )

    settings['log_level'] = str(settings['log_level']).upper()
    return settings
