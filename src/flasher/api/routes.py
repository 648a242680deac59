"""API route handlers for flash jobs, devices and firmware uploads."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from flasher.api.models import ApiResponse, CreateFlashJobRequest, FirmwareRegistration
from flasher.errors import FlasherError
from flasher.services.devices import DeviceService
from flasher.services.firmware_store import FirmwareStore
from flasher.services.job_manager import FlashJobManager
from flasher.utils.verification import compute_md5, verify_md5

router = APIRouter(prefix="/api/v1.0")
logger = logging.getLogger("flasher.api")


def _ok(data=None) -> JSONResponse:
    return JSONResponse(status_code=200, content=ApiResponse(data=data).model_dump(mode="json"))


def _error(code: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=200, content=ApiResponse(code=code, msg=msg).model_dump(mode="json"))


def _jobs(request: Request) -> FlashJobManager:
    return request.app.state.job_manager


def _devices(request: Request) -> DeviceService:
    return request.app.state.devices


def _store(request: Request) -> FirmwareStore:
    return request.app.state.firmware_store


@router.get("/devices")
async def list_devices(request: Request):
    """GET /api/v1.0/devices - Currently enumerated flashable devices."""
    devices = await _devices(request).list_devices()
    return _ok([d.model_dump(by_alias=True) for d in devices])


@router.get("/devices/{device_id}")
async def get_device(device_id: str, request: Request):
    """GET /api/v1.0/devices/{id} - Device details, 404 if not connected."""
    for device in await _devices(request).list_devices():
        if device.id == device_id:
            return _ok(device.model_dump(by_alias=True))
    return _error(404, f"Device not found: {device_id}")


@router.post("/devices/{device_id}/unprotect")
async def unprotect_device(device_id: str, request: Request):
    """POST /api/v1.0/devices/{id}/unprotect - Remove read/write protection."""
    try:
        await _jobs(request).unprotect_device(device_id)
    except FlasherError as e:
        logger.warning(f"Unprotect of {device_id} failed: {e.describe()}")
        return _error(404 if e.code == "DEVICE_NOT_FOUND" else 500, e.describe())
    return _ok()


@router.post("/firmware")
async def register_firmware(request: Request, md5: Optional[str] = None):
    """POST /api/v1.0/firmware - Upload a firmware binary as the raw request body.

    The optional ``md5`` query parameter is checked against the upload.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {"id": "6f1c...", "size": 7, "md5": "..."}
        }
    """
    data = await request.body()
    if not data:
        return _error(400, "Empty firmware upload")
    if md5 is not None:
        try:
            if not verify_md5(data, md5):
                return _error(400, "MD5 mismatch")
        except ValueError as e:
            return _error(400, str(e))
    firmware_id = _store(request).register(data)
    registration = FirmwareRegistration(id=firmware_id, size=len(data), md5=compute_md5(data))
    return _ok(registration.model_dump())


@router.delete("/firmware/{firmware_id}")
async def evict_firmware(firmware_id: str, request: Request):
    """DELETE /api/v1.0/firmware/{id} - Forget an uploaded binary."""
    if not _store(request).evict(firmware_id):
        return _error(404, f"Firmware not found: {firmware_id}")
    return _ok()


@router.post("/jobs")
async def create_job(payload: CreateFlashJobRequest, request: Request):
    """POST /api/v1.0/jobs - Start flashing; returns the initial snapshot."""
    manager = _jobs(request)
    job_id = manager.create(payload.device_id, payload.firmware, unprotect=payload.unprotect)
    return _ok(manager.get(job_id).to_wire())


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request):
    """GET /api/v1.0/jobs/{id} - Current job snapshot.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "id": "...", "status": "running", "cancelled": false,
                "meta": {"firmware": {"target": "nv14", "version": "v2.5.0"}, "deviceId": "..."},
                "stages": {
                    "connect": {"started": true, "completed": true, "progress": 100, "error": null},
                    "build": null,
                    "download": {"started": true, "completed": false, "progress": 40, "error": null},
                    "erase": {...}, "flash": {...}
                }
            }
        }
    """
    snapshot = _jobs(request).get(job_id)
    if snapshot is None:
        return _error(404, f"Job not found: {job_id}")
    return _ok(snapshot.to_wire())


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request):
    """POST /api/v1.0/jobs/{id}/cancel - Idempotent cancellation."""
    snapshot = _jobs(request).cancel(job_id)
    if snapshot is None:
        return _error(404, f"Job not found: {job_id}")
    return _ok(snapshot.to_wire())


@router.get("/jobs/{job_id}/updates")
async def job_updates(job_id: str, request: Request):
    """GET /api/v1.0/jobs/{id}/updates - Server-sent events, one snapshot per event.

    Only snapshots emitted after the request are streamed; call
    GET /jobs/{id} first for the current state.
    """
    subscription = _jobs(request).subscribe(job_id)
    if subscription is None:
        return _error(404, f"Job not found: {job_id}")

    async def stream():
        async with subscription:
            async for snapshot in subscription:
                yield f"data: {json.dumps(snapshot.to_wire())}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")
