from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from devicelab.diagnostics.catalog import TestCatalog
from devicelab.diagnostics.run_manager import RunManager
from devicelab.errors import (
    DeviceBusyError,
    DeviceLabError,
    DeviceUnavailableError,
    NotFoundError,
    ParameterValidationError,
)

router = APIRouter(prefix="/api/test", tags=["tests"])


class RunTestRequest(BaseModel):
    testId: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    deviceId: Optional[str] = None


def _manager(request: Request) -> RunManager:
    return request.app.state.run_manager


def _catalog(request: Request) -> TestCatalog:
    return request.app.state.catalog


def _device(request: Request, device_id: Optional[str]) -> str:
    return device_id or request.app.state.engine_settings.default_device_id


def _http_error(exc: DeviceLabError) -> HTTPException:
    if isinstance(exc, ParameterValidationError):
        return HTTPException(status_code=400, detail={"message": exc.message, "errors": exc.errors})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, DeviceBusyError):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, DeviceUnavailableError):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)


@router.get("/catalog")
async def get_catalog(request: Request, category: Optional[str] = None) -> dict:
    tests = _catalog(request).list_by_category(category or "all")
    return {"success": True, "data": [definition.to_dict() for definition in tests]}


@router.get("/categories")
async def get_categories(request: Request) -> dict:
    return {"success": True, "data": _catalog(request).categories()}


@router.post("/run")
async def run_test(data: RunTestRequest, request: Request) -> dict:
    device_id = _device(request, data.deviceId)
    try:
        started = await _manager(request).start(device_id, data.testId, data.parameters)
    except DeviceLabError as exc:
        raise _http_error(exc)
    return {"success": True, "data": started}


@router.get("/status/{run_id}")
async def get_status(run_id: str, request: Request, deviceId: Optional[str] = None) -> dict:
    try:
        status = await _manager(request).get_status(_device(request, deviceId), run_id)
    except DeviceLabError as exc:
        raise _http_error(exc)
    return {"success": True, "data": status}


@router.get("/history")
@router.get("/results")
async def get_history(
    request: Request,
    deviceId: Optional[str] = None,
    limit: int = Query(50, ge=0, le=1000),
) -> dict:
    entries = await _manager(request).history(_device(request, deviceId), limit)
    return {"success": True, "data": entries}


@router.post("/stop/{run_id}")
async def stop_test(run_id: str, request: Request, deviceId: Optional[str] = None) -> dict:
    try:
        stopped = await _manager(request).stop(_device(request, deviceId), run_id)
    except DeviceLabError as exc:
        raise _http_error(exc)
    return {"success": True, "data": stopped}


@router.delete("/history")
async def clear_history(request: Request, deviceId: Optional[str] = None) -> dict:
    removed = await _manager(request).clear_history(_device(request, deviceId))
    return {"success": True, "data": {"removed": removed}}


@router.delete("/result/{run_id}")
async def delete_result(run_id: str, request: Request, deviceId: Optional[str] = None) -> dict:
    removed = await _manager(request).remove_result(_device(request, deviceId), run_id)
    return {"success": True, "data": {"runId": run_id, "removed": removed}}


@router.get("/active")
async def list_active(request: Request, deviceId: Optional[str] = None) -> dict:
    return {"success": True, "data": await _manager(request).list_active(deviceId)}


@router.get("/device")
async def device_status(request: Request, deviceId: Optional[str] = None) -> dict:
    return {"success": True, "data": await _manager(request).device_status(_device(request, deviceId))}
