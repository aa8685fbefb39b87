"""
Configuration file loading.

Search order:
1. Explicit path (--config flag)
2. .stagecraft/config.yaml (project root)
3. ~/.stagecraft/config.yaml (user home)
4. No file (empty defaults)

The file only supplies *defaults* for command parameters; explicit CLI
flags always win.

Example:
    defaults:
      infraprofile: acme-infra
      targetprofile: acme-sandbox
      prefix: hellospa
      region: us-east-1
      vpc: vpc-0f59afe5908b84a1a
      domains:
        - example.com
        - www.example.com
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from stagecraft.core.errors import ConfigurationError

logger = structlog.get_logger()

KNOWN_KEYS = frozenset(
    {"infraprofile", "targetprofile", "prefix", "region", "vpc", "domains"}
)


def get_config_path(explicit_path: str | Path | None = None) -> Path | None:
    """
    Find the configuration file to use.

    Returns:
        Path to config file or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigurationError(f"Config file not found: {path}")

    cwd_config = Path.cwd() / ".stagecraft" / "config.yaml"
    if cwd_config.exists():
        return cwd_config

    home_config = Path.home() / ".stagecraft" / "config.yaml"
    if home_config.exists():
        return home_config

    return None


@dataclass
class CommandDefaults:
    """Default values for command parameters loaded from the config file."""

    values: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def apply(self, params: dict[str, Any]) -> dict[str, Any]:
        """Fill parameters the operator did not pass explicitly."""
        merged = dict(params)
        for key, value in self.values.items():
            if merged.get(key) in (None, [], ""):
                merged[key] = value
        return merged


def load_defaults(path: str | Path | None = None) -> CommandDefaults:
    """Load command defaults from the first config file found."""
    config_path = get_config_path(path)
    if config_path is None:
        return CommandDefaults()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Config file is not valid YAML: {config_path}", details={"error": str(e)}
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {config_path}")

    defaults = data.get("defaults") or {}
    unknown = sorted(set(defaults) - KNOWN_KEYS)
    if unknown:
        logger.warning("unknown_config_keys", path=str(config_path), keys=unknown)

    logger.debug("loaded_config", path=str(config_path))
    return CommandDefaults(
        values={k: v for k, v in defaults.items() if k in KNOWN_KEYS},
        source=config_path,
    )
