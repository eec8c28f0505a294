"""API routes for devices, bundle selection and installs."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from appdeploy.deploy.orchestrator import DeploymentOrchestrator
from appdeploy.models import (
    BundleResponse,
    DeployState,
    DeviceListResponse,
    SelectBundleRequest,
    SelectDeviceRequest,
)

router = APIRouter(prefix="/api/v1", tags=["deploy"])
logger = logging.getLogger("appdeploy.api")


def _get_orchestrator(request: Request) -> DeploymentOrchestrator:
    orchestrator = request.app.state.orchestrator
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@router.get("/state", response_model=DeployState)
async def get_state(request: Request) -> DeployState:
    return _get_orchestrator(request).snapshot()


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@router.get("/devices", response_model=DeviceListResponse)
async def list_devices(request: Request) -> DeviceListResponse:
    orchestrator = _get_orchestrator(request)
    selected = orchestrator.selected_device
    return DeviceListResponse(
        devices=orchestrator.devices,
        selected_id=selected.id if selected else None,
        is_discovering=orchestrator.is_discovering,
    )


@router.post("/devices/refresh", status_code=202)
async def refresh_devices(request: Request) -> dict:
    """Start a device discovery. Poll /devices or watch the log for the result."""
    orchestrator = _get_orchestrator(request)
    if not orchestrator.start_discovery():
        raise HTTPException(status_code=409, detail="Device discovery already in progress")
    return {"status": "discovering"}


@router.post("/devices/select", response_model=DeviceListResponse)
async def select_device(request: Request, body: SelectDeviceRequest) -> DeviceListResponse:
    orchestrator = _get_orchestrator(request)
    if not orchestrator.select_device(body.udid):
        raise HTTPException(status_code=404, detail=f"Unknown device: {body.udid}")
    return await list_devices(request)


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------


@router.get("/bundle", response_model=BundleResponse)
async def get_bundle(request: Request) -> BundleResponse:
    orchestrator = _get_orchestrator(request)
    return BundleResponse(
        bundle_path=orchestrator.bundle_path,
        recent_bundles=orchestrator.recent_bundles,
    )


@router.post("/bundle", response_model=BundleResponse)
async def set_bundle(request: Request, body: SelectBundleRequest) -> BundleResponse:
    orchestrator = _get_orchestrator(request)
    if not orchestrator.set_bundle(body.path):
        raise HTTPException(status_code=400, detail=f"Not an .app bundle: {body.path}")
    return await get_bundle(request)


@router.get("/bundle/folder")
async def build_folder(request: Request) -> dict:
    folder = _get_orchestrator(request).build_folder()
    if folder is None:
        raise HTTPException(status_code=404, detail="No bundle selected and no DerivedData folder")
    return {"path": str(folder)}


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------


@router.post("/install", status_code=202)
async def start_install(request: Request) -> dict:
    """Start installing the selected bundle on the selected device.

    Rejections are 409; the reason is also written to the log.
    """
    orchestrator = _get_orchestrator(request)
    if not orchestrator.start_install():
        raise HTTPException(status_code=409, detail="Install rejected, see log for the reason")
    return {"status": "installing", "install": orchestrator.install_status().model_dump()}


@router.post("/install/cancel")
async def cancel_install(request: Request) -> dict:
    orchestrator = _get_orchestrator(request)
    if not orchestrator.cancel_install():
        raise HTTPException(status_code=409, detail="No installation in progress to cancel")
    return {"status": "cancelling", "install": orchestrator.install_status().model_dump()}


@router.get("/install")
async def install_status(request: Request) -> dict:
    orchestrator = _get_orchestrator(request)
    return {
        "is_installing": orchestrator.is_installing,
        "install": orchestrator.install_status().model_dump(),
    }
