"""Configuration subsystem for the CA toolkit.

Public API::

    from vaultca.config import load_settings

    settings = load_settings("config.yaml")
    settings.issuance.hash_algorithm  # typed access
"""

from vaultca.config.loader import (
    ConfigValidationError,
    load_config_data,
    load_settings,
    validate,
)
from vaultca.config.settings import (
    CrlSettings,
    IssuanceSettings,
    LoggingSettings,
    OcspSettings,
    RevocationCacheSettings,
    VaultcaSettings,
    build_settings,
)

__all__ = [
    "ConfigValidationError",
    "CrlSettings",
    "IssuanceSettings",
    "LoggingSettings",
    "OcspSettings",
    "RevocationCacheSettings",
    "VaultcaSettings",
    "build_settings",
    "load_config_data",
    "load_settings",
    "validate",
]
