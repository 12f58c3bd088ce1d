from pydantic import BaseModel, Field
from datetime import date
from typing import Optional
from uuid import UUID

from ...models.ledger_models import AttendanceStatus


class MarkAttendanceRequest(BaseModel):
    """Request model for marking one class."""
    subject_id: UUID
    date: date
    status: AttendanceStatus
    lecture_slot_id: Optional[UUID] = Field(None, description="Omit for a whole-day record.")
    hours_logged: Optional[int] = Field(None, description="Defaults to the slot's duration.")


class DutyLeaveRequest(BaseModel):
    """Request model for the duty leave workflow."""
    subject_id: UUID
    date: date
    lecture_slot_id: Optional[UUID] = None
    reason: Optional[str] = Field(None, description="Required when requesting duty leave.")
