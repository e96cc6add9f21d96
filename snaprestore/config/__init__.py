"""Process configuration (environment, .env file, CLI overrides)."""

from snaprestore.config.base import RestoreSettings, get_settings, lazy_settings, settings

__all__ = ['RestoreSettings', 'get_settings', 'lazy_settings', 'settings']
