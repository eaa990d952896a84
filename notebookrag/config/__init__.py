"""Configuration module - exports Settings, load_config, and a module-level singleton."""

from notebookrag.config.loader import DEFAULTS, load_config
from notebookrag.config.settings import Settings

settings = Settings()

__all__ = ["DEFAULTS", "Settings", "load_config", "settings"]
