from fastapi import APIRouter, Body, Depends, Request, Response, status
from fastapi.responses import PlainTextResponse
from typing import Any, Dict

from ..models.ledger_models import UserSettings
from ..models.sync_models import WriteResult
from ..services.errors import ServiceError
from ..services.sync_coordinator import SyncCoordinator
from .dependencies import get_coordinator, service_error_to_http, write_response
from .schemas.settings import SettingsUpdateRequest
from .utilities.limiter import limiter

router = APIRouter(prefix="/data", tags=["Settings & Data"])


@router.get("/settings", response_model=UserSettings, summary="Current user settings")
@limiter.limit("60/minute")
async def get_settings(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.ledger.settings


@router.patch("/settings", response_model=WriteResult, summary="Change user settings")
@limiter.limit("20/minute")
async def update_settings(
    request: Request,
    body: SettingsUpdateRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    try:
        result = await coordinator.update_settings(**body.model_dump(exclude_unset=True))
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.get("/export/json", summary="Export all data as JSON")
@limiter.limit("10/minute")
async def export_json(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.export_json()


@router.get("/export/csv", summary="Export attendance as CSV")
@limiter.limit("10/minute")
async def export_csv(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    content = coordinator.export_csv()
    if content is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="attendance-report.csv"'},
    )


@router.post("/import", response_model=WriteResult, summary="Import a JSON export")
@limiter.limit("5/minute")
async def import_json(
    request: Request,
    document: Dict[str, Any] = Body(...),
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    try:
        result = await coordinator.import_json(document)
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)
