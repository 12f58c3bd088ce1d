from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import List
from uuid import UUID

from ..models.ledger_models import AttendanceRecord, LectureSlot, Subject
from ..models.stats_models import AttendanceAdvice, AttendanceStats
from ..models.sync_models import WriteResult
from ..services.errors import ServiceError
from ..services.sync_coordinator import SyncCoordinator
from .dependencies import get_coordinator, service_error_to_http, write_response
from .schemas.subject import LectureSlotInput, SubjectCreateRequest, SubjectUpdateRequest
from .utilities.limiter import limiter

router = APIRouter(prefix="/subjects", tags=["Subjects"])


def _get_subject_or_404(coordinator: SyncCoordinator, subject_id: UUID) -> Subject:
    subject = coordinator.ledger.get_subject(subject_id)
    if subject is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found.")
    return subject


@router.get("", response_model=List[Subject], summary="List subjects")
@limiter.limit("60/minute")
async def list_subjects(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.ledger.subjects


@router.post("", response_model=WriteResult, summary="Add a subject")
@limiter.limit("20/minute")
async def add_subject(
    request: Request,
    body: SubjectCreateRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    fields = body.model_dump()
    name = fields.pop("name")
    try:
        result = await coordinator.add_subject(name, **fields)
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.get("/{subject_id}", response_model=Subject, summary="Get one subject")
@limiter.limit("60/minute")
async def get_subject(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return _get_subject_or_404(coordinator, subject_id)


@router.patch("/{subject_id}", response_model=WriteResult, summary="Change a subject")
@limiter.limit("20/minute")
async def update_subject(
    request: Request,
    subject_id: UUID,
    body: SubjectUpdateRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    _get_subject_or_404(coordinator, subject_id)
    try:
        result = await coordinator.update_subject(subject_id, **body.model_dump(exclude_unset=True))
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.delete("/{subject_id}", response_model=WriteResult, summary="Delete a subject with its slots and records")
@limiter.limit("20/minute")
async def delete_subject(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    _get_subject_or_404(coordinator, subject_id)
    try:
        result = await coordinator.delete_subject(subject_id)
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.get("/{subject_id}/slots", response_model=List[LectureSlot], summary="Weekly timetable of a subject")
@limiter.limit("60/minute")
async def get_slots(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    _get_subject_or_404(coordinator, subject_id)
    return coordinator.ledger.slots_for_subject(subject_id)


@router.put("/{subject_id}/slots", response_model=WriteResult, summary="Replace the weekly timetable of a subject")
@limiter.limit("20/minute")
async def set_slots(
    request: Request,
    subject_id: UUID,
    body: List[LectureSlotInput],
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """
    Slots sent with an existing id are updated and keep their attendance;
    slots left out are deleted together with their records.
    """
    _get_subject_or_404(coordinator, subject_id)
    try:
        result = await coordinator.set_lecture_slots(subject_id, [s.model_dump() for s in body])
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.get("/{subject_id}/records", response_model=List[AttendanceRecord], summary="Attendance records of a subject")
@limiter.limit("60/minute")
async def get_records(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    _get_subject_or_404(coordinator, subject_id)
    return sorted(coordinator.ledger.records_for_subject(subject_id), key=lambda r: r.date)


@router.get("/{subject_id}/stats", response_model=AttendanceStats, summary="Attendance statistics of a subject")
@limiter.limit("60/minute")
async def get_stats(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    _get_subject_or_404(coordinator, subject_id)
    return coordinator.ledger.stats_for(subject_id)


@router.get("/{subject_id}/advice", response_model=AttendanceAdvice, summary="How many classes can be skipped or must be attended")
@limiter.limit("60/minute")
async def get_advice(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    _get_subject_or_404(coordinator, subject_id)
    return coordinator.ledger.advice_for(subject_id)
