"""Core data models for device records, install sessions and API schemas."""

from __future__ import annotations

import enum

from pydantic import BaseModel, Field


class DeployError(Exception):
    """Base error for everything that goes wrong while driving ios-deploy."""

    def __init__(self, message: str, tool: str = "ios-deploy") -> None:
        super().__init__(message)
        self.tool = tool


class ToolNotFound(DeployError):
    """The external device tool is not installed at any known location."""

    def __init__(self, message: str, hint: str = "", tool: str = "ios-deploy") -> None:
        super().__init__(message, tool=tool)
        self.hint = hint


class SpawnError(DeployError):
    """The OS refused to start the tool (bad path, permissions, arguments)."""


class PreconditionError(DeployError):
    """An operation was requested before its inputs were selected."""


class OperationConflict(DeployError):
    """An operation was requested while the same kind of operation is running."""


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceRecord(BaseModel):
    """One physically connected device, as announced by ios-deploy."""

    id: str = Field(min_length=1, description="Device UDID")
    name: str = Field(description="Alias if the device has one, otherwise the model name")
    os_version: str = Field(default="unknownOS", description="e.g. '18.6.2'")


# ---------------------------------------------------------------------------
# Install sessions
# ---------------------------------------------------------------------------


class InstallState(str, enum.Enum):
    """Lifecycle of a single install invocation."""

    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    FINISHED = "finished"
    FAILED = "failed"


class InstallStatus(BaseModel):
    """What the presentation layer sees of the current install."""

    state: InstallState = InstallState.IDLE
    target_device_id: str | None = None
    bundle_path: str | None = None
    exit_code: int | None = None
    reason: str | None = None


class DeployState(BaseModel):
    """Snapshot of everything a UI needs to render."""

    devices: list[DeviceRecord] = Field(default_factory=list)
    selected_device: DeviceRecord | None = None
    bundle_path: str | None = None
    recent_bundles: list[str] = Field(default_factory=list)
    is_discovering: bool = False
    is_installing: bool = False
    install: InstallStatus = Field(default_factory=InstallStatus)


# ---------------------------------------------------------------------------
# API request/response models
# ---------------------------------------------------------------------------


class SelectDeviceRequest(BaseModel):
    udid: str


class SelectBundleRequest(BaseModel):
    path: str


class DeviceListResponse(BaseModel):
    devices: list[DeviceRecord]
    selected_id: str | None = None
    is_discovering: bool = False


class BundleResponse(BaseModel):
    bundle_path: str | None = None
    recent_bundles: list[str] = Field(default_factory=list)


class LogTextResponse(BaseModel):
    text: str
    length: int
    max_length: int
