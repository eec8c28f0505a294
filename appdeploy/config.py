"""Deployment configuration and user config file access."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path


logger = logging.getLogger("appdeploy.config")

CONFIG_DIR = Path.home() / ".appdeploy"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"
PREFERENCES_FILE = CONFIG_DIR / "preferences.json"

# Homebrew prefixes: Apple Silicon first, then Intel
DEFAULT_TOOL_CANDIDATES: tuple[Path, ...] = (
    Path("/opt/homebrew/bin/ios-deploy"),
    Path("/usr/local/bin/ios-deploy"),
)

DEFAULT_LOG_MAX_LENGTH = 20_000
DEFAULT_FLUSH_DELAY = 0.1


@dataclass
class DeployConfig:
    """Configuration for the appdeploy service."""

    host: str = "127.0.0.1"
    port: int = 9200
    log_max_length: int = DEFAULT_LOG_MAX_LENGTH
    flush_delay: float = DEFAULT_FLUSH_DELAY
    tool_candidates: tuple[Path, ...] = DEFAULT_TOOL_CANDIDATES
    preferences_file: Path = field(default=PREFERENCES_FILE)

    @classmethod
    def from_user_config(cls, **overrides) -> DeployConfig:
        """Build a config, folding in ~/.appdeploy/config.json.

        Explicit keyword overrides win over the file. A ``tool_path`` entry in
        the file is tried before the Homebrew locations.
        """
        user = read_user_config()
        kwargs: dict = {}

        tool_path = user.get("tool_path")
        if isinstance(tool_path, str) and tool_path:
            kwargs["tool_candidates"] = (Path(tool_path).expanduser(),) + DEFAULT_TOOL_CANDIDATES

        max_length = user.get("log_max_length")
        if isinstance(max_length, int) and max_length > 0:
            kwargs["log_max_length"] = max_length

        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)


def read_user_config() -> dict:
    """Read user config from ~/.appdeploy/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        data = json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", USER_CONFIG_FILE)
        return {}
    return data
