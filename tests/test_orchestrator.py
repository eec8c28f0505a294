"""Tests for DeploymentOrchestrator with a scripted fake ProcessController."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from appdeploy.bundles import BundleHistory
from appdeploy.deploy.orchestrator import DeploymentOrchestrator
from appdeploy.models import DeviceRecord, InstallState, SpawnError, ToolNotFound
from appdeploy.processing.aggregator import LogAggregator
from appdeploy.storage.log_buffer import LogBuffer
from appdeploy.storage.preferences import PreferenceStore

DETECT_OUTPUT = (
    "[....] Waiting up to 5 seconds for iOS device to be connected\n"
    "[....] Found 00008120-0000795A11D8C01E (D73AP, iPhone 14 Pro, iphoneos, arm64e, 18.6.2, 22G100)"
    " a.k.a. 'iPhone' connected through USB.\n"
    "[....] Found 00008030-001A2B3C4D5E6F70 (J308AP, iPad Pro 11, iphoneos, arm64e, 17.5.1, 21F90)"
    " a.k.a. 'Test iPad' connected through USB.\n"
)

IPHONE = DeviceRecord(id="00008120-0000795A11D8C01E", name="iPhone", os_version="18.6.2")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeHandle:
    def __init__(self) -> None:
        self.cancelling = False
        self.pid = 4242


class FakeProcessController:
    """Plays back canned output; ``hold=True`` keeps the process 'running'
    until cancel() or release() is called."""

    def __init__(
        self,
        output: list[str] | None = None,
        exit_code: int = 0,
        spawn_error: Exception | None = None,
        hold: bool = False,
    ) -> None:
        self.output = output or []
        self.exit_code = exit_code
        self.spawn_error = spawn_error
        self.spawn_calls: list[list[str]] = []
        self.cancel_calls: list[FakeHandle | None] = []
        self.current: FakeHandle | None = None
        self._released = asyncio.Event()
        if not hold:
            self._released.set()

    def release(self) -> None:
        self._released.set()

    async def spawn(self, args, path=None) -> FakeHandle:
        self.spawn_calls.append(list(args))
        if self.spawn_error is not None:
            raise self.spawn_error
        self.current = FakeHandle()
        return self.current

    async def stream_output(self, handle: FakeHandle):
        for chunk in self.output:
            yield chunk
        await self._released.wait()

    async def wait_for_exit(self, handle: FakeHandle) -> int:
        await self._released.wait()
        self.current = None
        return self.exit_code

    def cancel(self, handle: FakeHandle | None = None) -> bool:
        self.cancel_calls.append(handle)
        target = handle or self.current
        if target is None or target.cancelling:
            return False
        target.cancelling = True
        self.exit_code = -15
        self._released.set()
        return True


def _make(
    discovery: FakeProcessController | None = None,
    installer: FakeProcessController | None = None,
    history: BundleHistory | None = None,
) -> tuple[DeploymentOrchestrator, LogBuffer]:
    buffer = LogBuffer(max_length=20_000)
    aggregator = LogAggregator(buffer, flush_delay=0.01)
    orchestrator = DeploymentOrchestrator(
        aggregator,
        history=history,
        discovery_controller=discovery or FakeProcessController(),
        install_controller=installer or FakeProcessController(),
    )
    return orchestrator, buffer


def _log(orchestrator: DeploymentOrchestrator, buffer: LogBuffer) -> str:
    orchestrator.aggregator.flush_now()
    return buffer.text


def _ready_to_install(orchestrator: DeploymentOrchestrator) -> None:
    orchestrator.devices = [IPHONE]
    orchestrator.selected_device = IPHONE
    orchestrator.bundle_path = "/build/Debug-iphoneos/MyApp.app"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestDiscovery:
    async def test_parses_devices_and_selects_first(self):
        discovery = FakeProcessController(output=[DETECT_OUTPUT])
        orchestrator, buffer = _make(discovery=discovery)

        devices = await orchestrator.refresh_devices()

        assert discovery.spawn_calls == [["-c"]]
        assert [d.id for d in devices] == ["00008120-0000795A11D8C01E", "00008030-001A2B3C4D5E6F70"]
        assert orchestrator.selected_device == devices[0]
        assert orchestrator.is_discovering is False

        log = _log(orchestrator, buffer)
        assert "=== Refresh devices ===" in log
        assert "Found 2 device(s)." in log
        assert "Waiting up to 5 seconds" in log

    async def test_output_split_across_chunks(self):
        half = len(DETECT_OUTPUT) // 2
        discovery = FakeProcessController(output=[DETECT_OUTPUT[:half], DETECT_OUTPUT[half:]])
        orchestrator, _ = _make(discovery=discovery)

        devices = await orchestrator.refresh_devices()

        assert len(devices) == 2

    async def test_no_devices(self):
        orchestrator, buffer = _make(discovery=FakeProcessController(output=[]))

        devices = await orchestrator.refresh_devices()

        assert devices == []
        assert orchestrator.selected_device is None
        assert "No physical devices found." in _log(orchestrator, buffer)

    async def test_entry_clears_previous_devices(self):
        discovery = FakeProcessController(output=[DETECT_OUTPUT], hold=True)
        orchestrator, _ = _make(discovery=discovery)
        orchestrator.devices = [IPHONE]
        orchestrator.selected_device = IPHONE

        assert orchestrator.start_discovery() is True
        assert orchestrator.devices == []
        assert orchestrator.selected_device is None
        assert orchestrator.is_discovering is True

        discovery.release()
        await orchestrator.refresh_devices()
        assert len(orchestrator.devices) == 2

    async def test_concurrent_discovery_rejected(self):
        discovery = FakeProcessController(output=[DETECT_OUTPUT], hold=True)
        orchestrator, buffer = _make(discovery=discovery)

        assert orchestrator.start_discovery() is True
        await asyncio.sleep(0)
        assert orchestrator.start_discovery() is False

        discovery.release()
        await orchestrator.refresh_devices()

        assert len(discovery.spawn_calls) == 1
        assert "Device discovery already in progress." in _log(orchestrator, buffer)

    async def test_tool_not_found_logs_hint(self):
        discovery = FakeProcessController(
            spawn_error=ToolNotFound("ios-deploy not found", hint="Please install via Homebrew:\n    brew install ios-deploy"),
        )
        orchestrator, buffer = _make(discovery=discovery)

        devices = await orchestrator.refresh_devices()

        assert devices == []
        assert orchestrator.is_discovering is False
        log = _log(orchestrator, buffer)
        assert "ios-deploy not found" in log
        assert "brew install ios-deploy" in log

    async def test_unexpected_error_returns_to_idle(self):
        discovery = FakeProcessController(output=[DETECT_OUTPUT])
        orchestrator, buffer = _make(discovery=discovery)

        with patch("appdeploy.deploy.orchestrator.parse_devices", side_effect=RuntimeError("boom")):
            await orchestrator.refresh_devices()

        assert orchestrator.is_discovering is False
        assert "ERROR: Device discovery failed - boom" in _log(orchestrator, buffer)

    async def test_select_device(self):
        orchestrator, buffer = _make(discovery=FakeProcessController(output=[DETECT_OUTPUT]))
        await orchestrator.refresh_devices()

        assert orchestrator.select_device("00008030-001A2B3C4D5E6F70") is True
        assert orchestrator.selected_device.name == "Test iPad"

        assert orchestrator.select_device("nope") is False
        assert orchestrator.selected_device.name == "Test iPad"
        assert "Unknown device: nope" in _log(orchestrator, buffer)


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------


class TestInstall:
    async def test_no_device_selected_never_spawns(self):
        installer = FakeProcessController()
        orchestrator, buffer = _make(installer=installer)
        orchestrator.bundle_path = "/build/MyApp.app"

        assert orchestrator.start_install() is False

        assert installer.spawn_calls == []
        assert orchestrator.session is None
        assert "Please select a device first." in _log(orchestrator, buffer)

    async def test_no_bundle_never_spawns(self):
        installer = FakeProcessController()
        orchestrator, buffer = _make(installer=installer)
        orchestrator.selected_device = IPHONE

        assert orchestrator.start_install() is False

        assert installer.spawn_calls == []
        assert "Please select an .app bundle first." in _log(orchestrator, buffer)

    async def test_successful_install(self):
        installer = FakeProcessController(output=["[  0%] Copying\n", "[100%] Installed package\n\n"])
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        assert orchestrator.start_install() is True
        assert orchestrator.is_installing is True
        status = await orchestrator.wait_for_install()

        assert installer.spawn_calls == [[
            "--id", "00008120-0000795A11D8C01E",
            "--bundle", "/build/Debug-iphoneos/MyApp.app",
            "--no-wifi",
        ]]
        assert status.state == InstallState.FINISHED
        assert status.exit_code == 0
        assert orchestrator.is_installing is False
        assert orchestrator.session.handle is None

        log = _log(orchestrator, buffer)
        assert "=== Install to iPhone [00008120-0000795A11D8C01E] ===" in log
        assert "App: /build/Debug-iphoneos/MyApp.app" in log
        assert "[  0%] Copying\n[100%] Installed package\n" in log
        assert log.rstrip().endswith("=== Install finished, exitCode = 0 ===")

    async def test_line_split_across_reads_is_logged_whole(self):
        installer = FakeProcessController(
            output=["[ 50%] Installing", " package\r\n[100", "%] Done"],
        )
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        await orchestrator.wait_for_install()

        log = _log(orchestrator, buffer)
        assert "\n[ 50%] Installing package\n[100%] Done\n=== Install finished" in log
        assert "Installing\n" not in log

    async def test_discovery_line_split_across_reads(self):
        cut = DETECT_OUTPUT.index("a.k.a.")
        discovery = FakeProcessController(output=[DETECT_OUTPUT[:cut], DETECT_OUTPUT[cut:]])
        orchestrator, buffer = _make(discovery=discovery)

        devices = await orchestrator.refresh_devices()

        assert len(devices) == 2
        assert "'iPhone' connected through USB.\n" in _log(orchestrator, buffer)

    async def test_nonzero_exit_is_logged_not_raised(self):
        installer = FakeProcessController(output=["Error: device locked\n"], exit_code=253)
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        status = await orchestrator.wait_for_install()

        assert status.state == InstallState.FINISHED
        assert status.exit_code == 253
        assert "=== Install finished, exitCode = 253 ===" in _log(orchestrator, buffer)

    async def test_second_install_rejected_while_running(self):
        installer = FakeProcessController(hold=True)
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        assert orchestrator.start_install() is True
        first_session = orchestrator.session
        assert orchestrator.start_install() is False
        assert orchestrator.session is first_session

        installer.release()
        await orchestrator.wait_for_install()
        assert len(installer.spawn_calls) == 1
        assert "An installation is already in progress." in _log(orchestrator, buffer)

    async def test_spawn_error_marks_session_failed(self):
        installer = FakeProcessController(spawn_error=SpawnError("Failed to execute ios-deploy: denied"))
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        status = await orchestrator.wait_for_install()

        assert status.state == InstallState.FAILED
        assert "denied" in status.reason
        assert orchestrator.is_installing is False
        assert "ERROR: Failed to execute ios-deploy: denied" in _log(orchestrator, buffer)

    async def test_install_after_finish_is_allowed(self):
        installer = FakeProcessController()
        orchestrator, _ = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        await orchestrator.wait_for_install()
        assert orchestrator.start_install() is True
        await orchestrator.wait_for_install()

        assert len(installer.spawn_calls) == 2


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    async def test_cancel_without_session_is_noop(self):
        installer = FakeProcessController()
        orchestrator, buffer = _make(installer=installer)
        before = orchestrator.snapshot()

        assert orchestrator.cancel_install() is False

        assert orchestrator.snapshot() == before
        assert installer.cancel_calls == []
        assert "No installation in progress to cancel." in _log(orchestrator, buffer)

    async def test_cancel_flips_state_immediately(self):
        installer = FakeProcessController(output=["[ 10%] Copying\n"], hold=True)
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        await asyncio.sleep(0.01)
        assert orchestrator.session.handle is not None

        assert orchestrator.cancel_install() is True
        assert orchestrator.is_installing is False
        assert orchestrator.session.state == InstallState.CANCELLING
        assert len(installer.cancel_calls) == 1

        status = await orchestrator.wait_for_install()
        assert status.state == InstallState.FINISHED
        assert status.exit_code == -15

        log = _log(orchestrator, buffer)
        assert "=== Cancel install requested ===" in log
        assert "=== Install finished, exitCode = -15 ===" in log

    async def test_cancel_twice(self):
        installer = FakeProcessController(hold=True)
        orchestrator, _ = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        await asyncio.sleep(0.01)
        assert orchestrator.cancel_install() is True
        assert orchestrator.cancel_install() is False
        await orchestrator.wait_for_install()

        assert len(installer.cancel_calls) == 1

    async def test_cancel_before_spawn_completes(self):
        installer = FakeProcessController(hold=True)
        orchestrator, _ = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        # The install task hasn't run yet, so there is no handle
        assert orchestrator.session.handle is None
        assert orchestrator.cancel_install() is True

        status = await asyncio.wait_for(orchestrator.wait_for_install(), timeout=5)

        assert len(installer.cancel_calls) == 1
        assert installer.cancel_calls[0] is not None
        assert status.exit_code == -15

    async def test_new_install_rejected_while_cancelling(self):
        installer = FakeProcessController(hold=True)
        orchestrator, buffer = _make(installer=installer)
        _ready_to_install(orchestrator)

        orchestrator.start_install()
        orchestrator.session.state = InstallState.CANCELLING

        assert orchestrator.start_install() is False
        assert "Previous installation is still shutting down." in _log(orchestrator, buffer)

        installer.release()
        await orchestrator.wait_for_install()


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


class TestBundles:
    @pytest.fixture
    def history(self, tmp_path: Path) -> BundleHistory:
        return BundleHistory(PreferenceStore(tmp_path / "preferences.json"))

    async def test_set_bundle_rejects_non_app(self, history: BundleHistory):
        orchestrator, buffer = _make(history=history)

        assert orchestrator.set_bundle("/build/MyApp.ipa") is False
        assert orchestrator.bundle_path is None
        assert "Dropped file is not an .app: /build/MyApp.ipa" in _log(orchestrator, buffer)

    async def test_set_bundle_updates_recent(self, history: BundleHistory, tmp_path: Path):
        orchestrator, buffer = _make(history=history)
        app = tmp_path / "MyApp.app"
        app.mkdir()

        assert orchestrator.set_bundle(app) is True

        assert orchestrator.bundle_path == str(app)
        assert orchestrator.recent_bundles == [str(app)]
        assert f"Selected App: {app}" in _log(orchestrator, buffer)

    async def test_restore_loads_last_bundle(self, history: BundleHistory, tmp_path: Path):
        app = tmp_path / "MyApp.app"
        app.mkdir()
        history.remember(str(app))

        orchestrator, buffer = _make(history=BundleHistory(history.store))
        orchestrator.restore()

        assert orchestrator.bundle_path == str(app)
        assert orchestrator.recent_bundles == [str(app)]
        assert f"Loaded last selected App: {app}" in _log(orchestrator, buffer)

    async def test_build_folder_for_bundle(self):
        orchestrator, _ = _make()
        orchestrator.bundle_path = "/build/Debug-iphoneos/MyApp.app"

        assert orchestrator.build_folder() == Path("/build/Debug-iphoneos")

    async def test_build_folder_without_derived_data(self, tmp_path: Path):
        orchestrator, buffer = _make()
        missing = tmp_path / "DerivedData"

        with patch("appdeploy.deploy.orchestrator.DERIVED_DATA_DIR", missing):
            assert orchestrator.build_folder() is None
        assert f"DerivedData folder not found: {missing}" in _log(orchestrator, buffer)

    async def test_build_folder_falls_back_to_derived_data(self, tmp_path: Path):
        orchestrator, _ = _make()
        derived = tmp_path / "DerivedData"
        derived.mkdir()

        with patch("appdeploy.deploy.orchestrator.DERIVED_DATA_DIR", derived):
            assert orchestrator.build_folder() == derived


# ---------------------------------------------------------------------------
# Snapshot / shutdown
# ---------------------------------------------------------------------------


async def test_snapshot():
    orchestrator, _ = _make(discovery=FakeProcessController(output=[DETECT_OUTPUT]))
    await orchestrator.refresh_devices()
    orchestrator.bundle_path = "/build/MyApp.app"

    state = orchestrator.snapshot()

    assert len(state.devices) == 2
    assert state.selected_device.id == "00008120-0000795A11D8C01E"
    assert state.bundle_path == "/build/MyApp.app"
    assert state.is_installing is False
    assert state.install.state == InstallState.IDLE


async def test_shutdown_cancels_running_install():
    installer = FakeProcessController(hold=True)
    orchestrator, buffer = _make(installer=installer)
    _ready_to_install(orchestrator)

    orchestrator.start_install()
    await asyncio.sleep(0.01)
    await orchestrator.shutdown()

    assert len(installer.cancel_calls) == 1
    assert orchestrator.session.state == InstallState.FINISHED
    assert "=== Install finished, exitCode = -15 ===" in buffer.text
