"""Configuration management for stream-loader.

Usage:
    >>> from stream_loader.config import get_settings
    >>> settings = get_settings()
    >>> settings.LOADER_MAX_WORKERS
    4
"""

from stream_loader.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
