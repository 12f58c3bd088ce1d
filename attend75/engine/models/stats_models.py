# attend75/engine/models/stats_models.py

from pydantic import BaseModel, Field
from enum import Enum
from typing import Optional


class RiskLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class AttendanceAdvice(BaseModel):
    """
    Skip/attend recommendation for one subject.
    """
    percentage: float
    is_above_threshold: bool
    classes_to_skip: int = Field(..., ge=0)
    classes_to_attend: int = Field(..., ge=0)
    weeks_to_target: Optional[int] = Field(None, description="Weeks of full attendance needed, when the weekly load is known.")
    message: str


class AttendanceStats(BaseModel):
    """
    Derived per-subject statistics. Never stored; always projected from the current records.
    """
    subject_id: str
    classes_held: int = 0
    classes_attended: int = 0
    attendance_percentage: float = 0.0
    is_at_risk: bool = False
    present_count: int = 0
    absent_count: int = 0
    duty_leave_count: int = 0
    physical_classes_attended: int = Field(0, description="Present only, duty leave never counted.")
    physical_attendance_percentage: float = 0.0


class OverallStats(BaseModel):
    """Totals across every subject in the ledger."""
    total_records: int = 0
    total_present: int = 0
    total_absent: int = 0
    total_duty_leave: int = 0
    total_classes_held: int = 0
    total_classes_attended: int = 0
    attendance_percentage: float = 0.0
    physical_attendance_percentage: float = 0.0
