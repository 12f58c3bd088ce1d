from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from datetime import date
from typing import List, Optional
from uuid import UUID

from ..models.ledger_models import AttendanceRecord, LectureSlot
from ..models.stats_models import OverallStats, RiskLevel
from ..models.sync_models import WriteResult
from ..services.errors import ServiceError
from ..services.sync_coordinator import SyncCoordinator
from .dependencies import get_coordinator, service_error_to_http, write_response
from .schemas.attendance import DutyLeaveRequest, MarkAttendanceRequest
from .utilities.limiter import limiter

router = APIRouter(prefix="/attendance", tags=["Attendance"])


@router.post("/mark", response_model=WriteResult, summary="Mark a class present, absent or on duty leave")
@limiter.limit("60/minute")
async def mark_attendance(
    request: Request,
    body: MarkAttendanceRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """
    Marking the same subject, day and slot again replaces the earlier mark.
    """
    try:
        result = await coordinator.mark_attendance(
            body.subject_id, body.date, body.status,
            lecture_slot_id=body.lecture_slot_id,
            hours_logged=body.hours_logged,
        )
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.post("/duty-leave/request", response_model=WriteResult, summary="Request duty leave for a missed class")
@limiter.limit("20/minute")
async def request_duty_leave(
    request: Request,
    body: DutyLeaveRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    try:
        result = await coordinator.request_duty_leave(
            body.subject_id, body.date, body.reason or "", body.lecture_slot_id
        )
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.post("/duty-leave/approve", response_model=WriteResult, summary="Approve a duty leave")
@limiter.limit("20/minute")
async def approve_duty_leave(
    request: Request,
    body: DutyLeaveRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    try:
        result = await coordinator.approve_duty_leave(body.subject_id, body.date, body.lecture_slot_id)
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.post("/duty-leave/cancel", response_model=WriteResult, summary="Withdraw a duty leave request")
@limiter.limit("20/minute")
async def cancel_duty_request(
    request: Request,
    body: DutyLeaveRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    try:
        result = await coordinator.cancel_duty_request(body.subject_id, body.date, body.lecture_slot_id)
    except ServiceError as e:
        raise service_error_to_http(e)
    return write_response(result)


@router.get("/duty-leave/absences", response_model=List[AttendanceRecord], summary="Absences without approved duty leave")
@limiter.limit("60/minute")
async def list_absences(
    request: Request,
    subject_id: Optional[UUID] = None,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    return coordinator.ledger.list_absent_records(subject_id)


@router.get("/duty-leave/approved", response_model=List[AttendanceRecord], summary="Approved duty leaves")
@limiter.limit("60/minute")
async def list_approved(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.ledger.list_approved_duty_leaves()


@router.get("/schedule", response_model=List[LectureSlot], summary="Lecture slots held on a day")
@limiter.limit("60/minute")
async def schedule_for_date(
    request: Request,
    day: date = Query(..., description="YYYY-MM-DD"),
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    return coordinator.ledger.lecture_slots_for_date(day)


@router.get("/stats", response_model=OverallStats, summary="Attendance totals across all subjects")
@limiter.limit("60/minute")
async def overall_stats(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.ledger.overall_stats()


@router.get("/risk/{subject_id}", response_model=RiskLevel, summary="Warning level of a subject")
@limiter.limit("60/minute")
async def subject_risk(request: Request, subject_id: UUID, coordinator: SyncCoordinator = Depends(get_coordinator)):
    if coordinator.ledger.get_subject(subject_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subject not found.")
    return coordinator.ledger.risk_for(subject_id)
