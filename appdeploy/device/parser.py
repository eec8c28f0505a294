"""Parser for ``ios-deploy -c`` (detect) output.

ios-deploy mixes progress and diagnostic lines with one announcement per
connected device. Only the announcements carry device identity:

    [....] Found 00008120-0000795A11D8C01E (D73AP, iPhone 14 Pro, iphoneos, arm64e, 18.6.2, 22G100) a.k.a. 'iPhone' connected through USB.

The parenthesised metadata is: hardware id, model, platform, arch,
OS version, build. Only the model (index 1) and OS version (index 4) are
used; the rest is opaque. Every other line is ignored.
"""

from __future__ import annotations

import logging
import re

from appdeploy.models import DeviceRecord

logger = logging.getLogger(__name__)

# Groups: udid, metadata list, alias
FOUND_PATTERN = re.compile(
    r"\[.*\] Found "
    r"([0-9A-Fa-f-]+) "      # udid: "00008120-0000795A11D8C01E"
    r"\(([^)]*)\) "          # metadata: "D73AP, iPhone 14 Pro, ..."
    r"a\.k\.a\. '([^']*)'"   # alias: 'iPhone'
)

UNKNOWN_MODEL = "Unknown Device"
UNKNOWN_OS = "unknownOS"

_MODEL_INDEX = 1
_OS_VERSION_INDEX = 4


def parse_device_line(line: str) -> DeviceRecord | None:
    """Parse a single line. Returns None for anything that isn't an announcement."""
    match = FOUND_PATTERN.search(line)
    if not match:
        return None

    udid = match.group(1).strip()
    if not udid:
        return None

    parts = [part.strip() for part in match.group(2).split(",")]
    model = parts[_MODEL_INDEX] if len(parts) > _MODEL_INDEX else UNKNOWN_MODEL
    os_version = parts[_OS_VERSION_INDEX] if len(parts) > _OS_VERSION_INDEX else UNKNOWN_OS

    alias = match.group(3)
    return DeviceRecord(id=udid, name=alias or model, os_version=os_version)


def parse_devices(output: str) -> list[DeviceRecord]:
    """Parse the full captured detect output into device records.

    Records come back in announcement order. A device announced twice
    yields two records.
    """
    devices: list[DeviceRecord] = []
    for line in output.splitlines():
        device = parse_device_line(line)
        if device is not None:
            devices.append(device)

    logger.debug("Parsed %d device(s) from %d chars of output", len(devices), len(output))
    return devices
