"""DeploymentOrchestrator: device discovery and install state machine.

Two independent flows share one LogAggregator:

    discovery:  idle -> discovering -> idle
    install:    idle -> installing -> finished | cancelled

Everything here runs on the event loop. Operations that can't proceed
(a second discovery, an install with nothing selected, ...) are rejected
synchronously: the reason goes to the operator log and the method returns
False without touching state. Failures of the tool itself (not installed,
refused to start, non-zero exit) also end up in the log; nothing escapes
to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from appdeploy.bundles import BundleHistory, is_bundle_path
from appdeploy.config import DEFAULT_TOOL_CANDIDATES
from appdeploy.device.locator import find_tool
from appdeploy.device.parser import parse_devices
from appdeploy.device.process import ProcessController, ProcessHandle, iter_lines
from appdeploy.models import (
    DeployError,
    DeployState,
    DeviceRecord,
    InstallState,
    InstallStatus,
    OperationConflict,
    PreconditionError,
    ToolNotFound,
)
from appdeploy.processing.aggregator import LogAggregator

logger = logging.getLogger("appdeploy.orchestrator")

DETECT_ARGS: tuple[str, ...] = ("-c",)
DERIVED_DATA_DIR = Path.home() / "Library" / "Developer" / "Xcode" / "DerivedData"

SHUTDOWN_TIMEOUT = 5.0


def install_args(udid: str, bundle_path: str) -> list[str]:
    """Arguments for a wired-only install of ``bundle_path`` onto ``udid``."""
    return ["--id", udid, "--bundle", bundle_path, "--no-wifi"]


class InstallSession:
    """One install request, from spawn to exit."""

    def __init__(self, target_device_id: str, bundle_path: str) -> None:
        self.target_device_id = target_device_id
        self.bundle_path = bundle_path
        self.handle: ProcessHandle | None = None
        self.state = InstallState.RUNNING
        self.exit_code: int | None = None
        self.reason: str | None = None

    @property
    def active(self) -> bool:
        """True until the process is gone, including while it shuts down."""
        return self.state in (InstallState.RUNNING, InstallState.CANCELLING)

    def finish(self, exit_code: int) -> None:
        self.state = InstallState.FINISHED
        self.exit_code = exit_code
        self.handle = None

    def fail(self, reason: str) -> None:
        self.state = InstallState.FAILED
        self.reason = reason
        self.handle = None

    def status(self) -> InstallStatus:
        return InstallStatus(
            state=self.state,
            target_device_id=self.target_device_id,
            bundle_path=self.bundle_path,
            exit_code=self.exit_code,
            reason=self.reason,
        )


class DeploymentOrchestrator:
    """Coordinates discovery and install runs of ios-deploy.

    Args:
        aggregator: Operator log writer shared by both flows.
        history: Persisted bundle selection. Optional so tests can skip disk.
        candidates: Where to look for ios-deploy.
        discovery_controller / install_controller: Process controllers for
            each flow; default to fresh ProcessControllers.
    """

    def __init__(
        self,
        aggregator: LogAggregator,
        history: BundleHistory | None = None,
        candidates: Sequence[Path] = DEFAULT_TOOL_CANDIDATES,
        discovery_controller: ProcessController | None = None,
        install_controller: ProcessController | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.history = history
        self.candidates = tuple(candidates)
        self.discovery = discovery_controller or ProcessController(self.candidates)
        self.installer = install_controller or ProcessController(self.candidates)

        self.devices: list[DeviceRecord] = []
        self.selected_device: DeviceRecord | None = None
        self.bundle_path: str | None = None
        self.is_discovering = False
        self.session: InstallSession | None = None

        self._discovery_task: asyncio.Task | None = None
        self._install_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_installing(self) -> bool:
        """What the UI shows. Goes False as soon as a cancel is requested."""
        return self.session is not None and self.session.state == InstallState.RUNNING

    @property
    def recent_bundles(self) -> list[str]:
        if self.history is None:
            return []
        return self.history.recent.to_list()

    def install_status(self) -> InstallStatus:
        if self.session is None:
            return InstallStatus()
        return self.session.status()

    def snapshot(self) -> DeployState:
        return DeployState(
            devices=list(self.devices),
            selected_device=self.selected_device,
            bundle_path=self.bundle_path,
            recent_bundles=self.recent_bundles,
            is_discovering=self.is_discovering,
            is_installing=self.is_installing,
            install=self.install_status(),
        )

    def tool_path(self) -> Path | None:
        return find_tool(self.candidates)

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def restore(self) -> None:
        """Load persisted bundle selection. Call once the event loop is running."""
        if self.history is None:
            return
        self.history.load()
        if self.history.last:
            self.bundle_path = self.history.last
            self.log(f"Loaded last selected App: {self.bundle_path}")

    def set_bundle(self, path: str | Path) -> bool:
        """Select the bundle to install. Only ``.app`` paths are accepted."""
        bundle = str(Path(path).expanduser())
        if not is_bundle_path(bundle):
            self.log(f"Dropped file is not an .app: {bundle}")
            return False

        self.bundle_path = bundle
        if self.history is not None:
            self.history.remember(bundle)
        self.log(f"Selected App: {bundle}")
        return True

    def build_folder(self) -> Path | None:
        """Folder containing the selected bundle, else Xcode's DerivedData."""
        if self.bundle_path:
            folder = Path(self.bundle_path).parent
            self.log(f"Folder containing App: {folder}")
            return folder

        if DERIVED_DATA_DIR.exists():
            self.log(f"Xcode DerivedData folder: {DERIVED_DATA_DIR}")
            return DERIVED_DATA_DIR

        self.log(f"DerivedData folder not found: {DERIVED_DATA_DIR}")
        return None

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def start_discovery(self) -> bool:
        """Forget the current devices and run ``ios-deploy -c`` in the background."""
        if self.is_discovering:
            self.log("Device discovery already in progress.")
            return False

        self.devices = []
        self.selected_device = None
        self.is_discovering = True
        self.log("=== Refresh devices ===")
        self._discovery_task = asyncio.create_task(self._run_discovery())
        return True

    async def refresh_devices(self) -> list[DeviceRecord]:
        """Run a discovery (or join the one in flight) and return the devices."""
        if not self.is_discovering:
            self.start_discovery()
        if self._discovery_task is not None:
            await asyncio.shield(self._discovery_task)
        return list(self.devices)

    def select_device(self, udid: str) -> bool:
        for device in self.devices:
            if device.id == udid:
                self.selected_device = device
                self.log(f"Selected device: {device.name} [{device.id}]")
                return True

        self.log(f"Unknown device: {udid}")
        return False

    async def _run_discovery(self) -> None:
        output: list[str] = []
        try:
            try:
                handle = await self.discovery.spawn(DETECT_ARGS)
            except DeployError as e:
                self._log_failure(e)
                return

            async for line in iter_lines(self.discovery.stream_output(handle)):
                output.append(line)
                self._log_output(line)
            await self.discovery.wait_for_exit(handle)

            devices = parse_devices("\n".join(output))
            self.devices = devices
            self.selected_device = devices[0] if devices else None

            if devices:
                self.log(f"Found {len(devices)} device(s).")
            else:
                self.log("No physical devices found.")
        except Exception as e:
            logger.exception("Device discovery failed")
            self.log(f"ERROR: Device discovery failed - {e}")
        finally:
            self.is_discovering = False

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def _check_install_ready(self) -> DeviceRecord:
        if self.session is not None and self.session.active:
            if self.session.state == InstallState.CANCELLING:
                raise OperationConflict("Previous installation is still shutting down.")
            raise OperationConflict("An installation is already in progress.")
        if self.bundle_path is None:
            raise PreconditionError("Please select an .app bundle first.")
        if self.selected_device is None:
            raise PreconditionError("Please select a device first.")
        return self.selected_device

    def start_install(self) -> bool:
        """Install the selected bundle onto the selected device in the background."""
        try:
            device = self._check_install_ready()
        except DeployError as e:
            self.log(str(e))
            return False

        session = InstallSession(device.id, self.bundle_path)
        self.session = session
        self.log(f"=== Install to {device.name} [{device.id}] ===")
        self.log(f"App: {session.bundle_path}")
        self._install_task = asyncio.create_task(self._run_install(session))
        return True

    def cancel_install(self) -> bool:
        """Request graceful termination of the running install.

        The session stops counting as installing immediately; the process
        may keep running until it handles SIGTERM.
        """
        session = self.session
        if session is None or session.state != InstallState.RUNNING:
            self.log("No installation in progress to cancel.")
            return False

        self.log("=== Cancel install requested ===")
        session.state = InstallState.CANCELLING
        if session.handle is not None:
            self.installer.cancel(session.handle)
        return True

    async def wait_for_install(self) -> InstallStatus:
        if self._install_task is not None:
            await asyncio.shield(self._install_task)
        return self.install_status()

    async def _run_install(self, session: InstallSession) -> None:
        try:
            try:
                handle = await self.installer.spawn(
                    install_args(session.target_device_id, session.bundle_path),
                )
            except DeployError as e:
                session.fail(str(e))
                self._log_failure(e)
                return

            session.handle = handle
            if session.state == InstallState.CANCELLING:
                # Cancel arrived while the process was still starting
                self.installer.cancel(handle)

            async for line in iter_lines(self.installer.stream_output(handle)):
                self._log_output(line)
            code = await self.installer.wait_for_exit(handle)

            session.finish(code)
            self.log(f"=== Install finished, exitCode = {code} ===")
        except Exception as e:
            logger.exception("Install failed")
            session.fail(str(e))
            self.log(f"ERROR: Install failed - {e}")

    # ------------------------------------------------------------------
    # Log
    # ------------------------------------------------------------------

    def log(self, message: str) -> None:
        """Write an operator-facing line to the log and mirror it to logging."""
        self.aggregator.append(message)
        logger.info("%s", message)

    def clear_log(self) -> None:
        self.aggregator.clear()

    def _log_output(self, line: str) -> None:
        if line:
            self.aggregator.append(line)
            logger.debug("ios-deploy: %s", line)

    def _log_failure(self, error: DeployError) -> None:
        if isinstance(error, ToolNotFound):
            self.log(f"WARNING: {error}")
            for line in error.hint.splitlines():
                self.log(line)
            return
        self.log(f"ERROR: {error}")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Terminate running tools, wait briefly for the flows to end, flush the log."""
        if self.session is not None and self.session.handle is not None:
            self.installer.cancel(self.session.handle)
        self.discovery.cancel()

        tasks = [
            task for task in (self._discovery_task, self._install_task)
            if task is not None and not task.done()
        ]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_TIMEOUT)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.aggregator.flush_now()
