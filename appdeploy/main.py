"""appdeploy: install locally built .app bundles onto USB-connected iOS devices.

Usage:
    python3 -m appdeploy serve                     Run the HTTP API in the foreground
    python3 -m appdeploy devices                   List connected devices
    python3 -m appdeploy install --bundle X.app    Install onto the first (or --device) device
    python3 -m appdeploy recent                    Show recently used bundles
    python3 -m appdeploy check                     Check that ios-deploy is installed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI

from appdeploy import __version__
from appdeploy.api.deploy import router as deploy_router
from appdeploy.api.logs import router as logs_router
from appdeploy.bundles import BundleHistory
from appdeploy.config import DeployConfig
from appdeploy.deploy.orchestrator import DeploymentOrchestrator
from appdeploy.device.locator import INSTALL_HINT, find_tool
from appdeploy.models import InstallState
from appdeploy.processing.aggregator import LogAggregator
from appdeploy.storage.log_buffer import LogBuffer
from appdeploy.storage.preferences import PreferenceStore

logger = logging.getLogger("appdeploy")


def build_orchestrator(config: DeployConfig) -> tuple[DeploymentOrchestrator, LogBuffer]:
    """Wire buffer -> aggregator -> orchestrator for one process."""
    buffer = LogBuffer(max_length=config.log_max_length)
    aggregator = LogAggregator(buffer, flush_delay=config.flush_delay)
    history = BundleHistory(PreferenceStore(config.preferences_file))
    orchestrator = DeploymentOrchestrator(
        aggregator,
        history=history,
        candidates=config.tool_candidates,
    )
    return orchestrator, buffer


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage server startup and shutdown."""
    config: DeployConfig = app.state.config
    orchestrator: DeploymentOrchestrator = app.state.orchestrator

    orchestrator.restore()

    tool = orchestrator.tool_path()
    if tool is None:
        logger.warning("ios-deploy not found. Install with: brew install ios-deploy")
    else:
        logger.info("Using ios-deploy at %s", tool)

    if app.state.discover_on_start:
        orchestrator.start_discovery()

    logger.info("Server started on http://%s:%d", config.host, config.port)

    yield

    await orchestrator.shutdown()
    orchestrator.aggregator.close()
    logger.info("Server stopped")


def create_app(
    config: DeployConfig | None = None,
    discover_on_start: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if config is None:
        config = DeployConfig.from_user_config()

    app = FastAPI(
        title="appdeploy",
        version=__version__,
        description="Install .app bundles onto USB-connected iOS devices via ios-deploy",
        lifespan=lifespan,
    )

    orchestrator, buffer = build_orchestrator(config)

    # Store shared state
    app.state.config = config
    app.state.log_buffer = buffer
    app.state.orchestrator = orchestrator
    app.state.discover_on_start = discover_on_start

    app.include_router(deploy_router)
    app.include_router(logs_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check with ios-deploy availability."""
        tool = None
        if app.state.orchestrator is not None:
            tool = app.state.orchestrator.tool_path()
        return {
            "status": "ok",
            "version": __version__,
            "tool": str(tool) if tool else None,
        }

    return app


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool, default: int = logging.WARNING) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else default,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


async def _print_log(buffer: LogBuffer) -> None:
    """Echo log flushes to stdout until cancelled."""
    queue = buffer.subscribe()
    try:
        while True:
            kind, chunk = await queue.get()
            if kind == "append":
                sys.stdout.write(chunk)
                sys.stdout.flush()
    finally:
        buffer.unsubscribe(queue)


async def _finish_printing(orchestrator: DeploymentOrchestrator, printer: asyncio.Task) -> None:
    """Flush whatever is still pending and let the printer write it out."""
    orchestrator.aggregator.flush_now()
    await asyncio.sleep(0)
    printer.cancel()
    try:
        await printer
    except asyncio.CancelledError:
        pass


async def _devices(config: DeployConfig) -> int:
    orchestrator, buffer = build_orchestrator(config)
    printer = asyncio.create_task(_print_log(buffer))
    await asyncio.sleep(0)

    devices = await orchestrator.refresh_devices()
    await _finish_printing(orchestrator, printer)

    if devices:
        print()
        for device in devices:
            print(f"{device.id}  {device.name}  (iOS {device.os_version})")
    return 0 if devices else 1


async def _install(config: DeployConfig, bundle: str, udid: str | None) -> int:
    orchestrator, buffer = build_orchestrator(config)
    printer = asyncio.create_task(_print_log(buffer))
    await asyncio.sleep(0)

    try:
        if not orchestrator.set_bundle(bundle):
            return 2

        await orchestrator.refresh_devices()
        if udid is not None and not orchestrator.select_device(udid):
            return 2
        if not orchestrator.start_install():
            return 1

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel_install)
        try:
            status = await orchestrator.wait_for_install()
        finally:
            loop.remove_signal_handler(signal.SIGINT)
    finally:
        await _finish_printing(orchestrator, printer)

    if status.state == InstallState.FINISHED and status.exit_code is not None:
        return status.exit_code if 0 <= status.exit_code <= 255 else 1
    return 1


def _cmd_serve(args: argparse.Namespace) -> None:
    _configure_logging(args.verbose, default=logging.INFO)

    config = DeployConfig.from_user_config(
        host=args.host,
        port=args.port,
        log_max_length=args.log_max_length,
    )
    app = create_app(config=config, discover_on_start=not args.no_discover)

    print(f"appdeploy v{__version__}")
    print(f"  http://{config.host}:{config.port}")
    print()

    uv_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if args.verbose else "info",
    )
    server = uvicorn.Server(uv_config)
    try:
        server.run()
    except KeyboardInterrupt:
        pass  # Clean shutdown already handled by lifespan


def _cmd_recent(args: argparse.Namespace) -> int:
    config = DeployConfig.from_user_config()
    history = BundleHistory(PreferenceStore(config.preferences_file))
    history.load()
    if not len(history.recent):
        print("No recent bundles")
        return 0
    for path in history.recent:
        marker = "*" if path == history.last else " "
        print(f"{marker} {path}")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    config = DeployConfig.from_user_config()
    tool = find_tool(config.tool_candidates)
    if tool is None:
        print("ios-deploy not found")
        print(INSTALL_HINT)
        return 1
    print(f"ios-deploy: {tool}")
    return 0


def cli() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="appdeploy: install .app bundles onto USB-connected iOS devices",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: 9200)")
    serve_parser.add_argument(
        "--log-max-length", type=int, default=None,
        help="Characters of log text to retain (default: 20000)",
    )
    serve_parser.add_argument(
        "--no-discover", action="store_true", default=False,
        help="Don't run device discovery at startup",
    )

    subparsers.add_parser("devices", help="List connected devices")

    install_parser = subparsers.add_parser("install", help="Install a bundle")
    install_parser.add_argument("--bundle", "-b", required=True, help="Path to the .app bundle")
    install_parser.add_argument(
        "--device", "-d", default=None,
        help="Target UDID (default: first discovered device)",
    )

    subparsers.add_parser("recent", help="Show recently used bundles")
    subparsers.add_parser("check", help="Check that ios-deploy is installed")

    args = parser.parse_args()

    if args.command == "serve":
        _cmd_serve(args)
        return

    _configure_logging(args.verbose)

    if args.command == "devices":
        sys.exit(asyncio.run(_devices(DeployConfig.from_user_config())))
    elif args.command == "install":
        sys.exit(asyncio.run(_install(DeployConfig.from_user_config(), args.bundle, args.device)))
    elif args.command == "recent":
        sys.exit(_cmd_recent(args))
    elif args.command == "check":
        sys.exit(_cmd_check(args))
    else:
        parser.print_help()
        sys.exit(2)


if __name__ == "__main__":
    cli()
