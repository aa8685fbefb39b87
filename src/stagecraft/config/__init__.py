"""
Stagecraft Configuration System.

- Pydantic-based settings (environment variables, .env files)
- Per-project and user-level defaults files for command parameters
"""

from stagecraft.config.loader import CommandDefaults, get_config_path, load_defaults
from stagecraft.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "CommandDefaults",
    "get_config_path",
    "load_defaults",
]
