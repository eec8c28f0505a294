"""Locate the ios-deploy binary."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from appdeploy.config import DEFAULT_TOOL_CANDIDATES
from appdeploy.models import ToolNotFound

logger = logging.getLogger("appdeploy.locator")

INSTALL_HINT = "Please install via Homebrew:\n    brew install ios-deploy"


def locate_tool(candidates: Iterable[Path] = DEFAULT_TOOL_CANDIDATES) -> Path:
    """Return the first candidate path that exists.

    Candidates are checked in order; there is no PATH lookup, so the result
    does not depend on the environment the server was launched from.

    Raises ToolNotFound (with an install hint) when none of them exist.
    """
    checked: list[str] = []
    for candidate in candidates:
        path = Path(candidate)
        checked.append(str(path))
        if path.exists():
            logger.debug("Using ios-deploy at %s", path)
            return path

    logger.debug("ios-deploy not found in %s", ", ".join(checked))
    raise ToolNotFound("ios-deploy not found", hint=INSTALL_HINT)


def find_tool(candidates: Iterable[Path] = DEFAULT_TOOL_CANDIDATES) -> Path | None:
    """Like locate_tool, but returns None instead of raising."""
    try:
        return locate_tool(candidates)
    except ToolNotFound:
        return None
