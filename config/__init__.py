"""
Configuration management for savevault

Handles loading, validation, and the default config file.
"""

from .loader import ConfigurationLoader
from .defaults import DEFAULT_SETTINGS

__all__ = ["ConfigurationLoader", "DEFAULT_SETTINGS"]
