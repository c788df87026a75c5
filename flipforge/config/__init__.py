"""Configuration module for the FlipForge pipeline."""

from flipforge.config.settings import (
    CREDENTIAL_RECOMMENDATIONS,
    MARKETPLACE_CREDENTIALS,
    Settings,
    get_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "MARKETPLACE_CREDENTIALS",
    "CREDENTIAL_RECOMMENDATIONS",
]
