# attend75/engine/models/ledger_models.py

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

# Alias so the "date" field on AttendanceRecord does not shadow the type.
CalendarDay = date


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    DUTY_LEAVE = "duty-leave"


class LedgerModel(BaseModel):
    """
    Base for every row kept in the ledger.

    Field names are the snake_case column names of the remote tables;
    the camelCase aliases are what the JSON export/import format uses.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_row(self, user_id: Optional[UUID] = None) -> dict:
        """Row map for the remote store, scoped to the given user."""
        row = self.model_dump()
        if user_id is not None:
            row["user_id"] = user_id
        return row

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Subject(LedgerModel):
    """
    A tracked course. Maps to the 'subjects' table.
    """
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    days_of_week: List[int] = Field(default_factory=list, description="0=Sunday ... 6=Saturday")
    required_attendance: float = Field(75.0, ge=0, le=100)
    initial_classes_held: int = Field(0, ge=0, description="Classes held before tracking started")
    initial_classes_attended: int = Field(0, ge=0, description="Classes attended before tracking started")
    classes_held: int = Field(0, ge=0, description="Cumulative, recomputed by the ledger")
    classes_attended: int = Field(0, ge=0, description="Cumulative, recomputed by the ledger")
    start_month: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$")
    end_month: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}$")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("name")
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Subject name must not be blank.")
        return v

    @field_validator("days_of_week")
    def normalise_days(cls, v):
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"Invalid day of week: {day}. Must be 0 (Sunday) to 6 (Saturday).")
        return sorted(set(v))

    @model_validator(mode="after")
    def check_initial_counts(self):
        if self.initial_classes_attended > self.initial_classes_held:
            raise ValueError("Initial classes attended cannot exceed initial classes held.")
        return self


class LectureSlot(LedgerModel):
    """
    A recurring weekly occurrence of a subject. Maps to the 'lecture_slots' table.
    """
    id: UUID = Field(default_factory=uuid4)
    subject_id: UUID
    day_of_week: int = Field(..., ge=0, le=6, description="0=Sunday ... 6=Saturday")
    start_time: time
    duration_hours: int = Field(1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @computed_field
    @property
    def end_time(self) -> time:
        start = datetime.combine(date.min, self.start_time.replace(tzinfo=None))
        return (start + timedelta(hours=self.duration_hours)).time()


class AttendanceRecord(LedgerModel):
    """
    One attendance mark. Maps to the 'attendance_logs' table.
    A record without a lecture slot is a legacy whole-day record.
    """
    id: UUID = Field(default_factory=uuid4)
    subject_id: UUID
    lecture_slot_id: Optional[UUID] = None
    date: CalendarDay
    status: AttendanceStatus
    hours_logged: int = Field(1, ge=1)
    duty_requested: bool = False
    duty_approved: bool = False
    duty_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> Tuple[UUID, CalendarDay, Optional[UUID]]:
        """Uniqueness key: (subject, date, slot); slot is None for legacy records."""
        return (self.subject_id, self.date, self.lecture_slot_id)


class UserSettings(LedgerModel):
    """
    Per-user preferences. Maps to the 'user_settings' table (one row per user).
    """
    default_required_attendance: float = Field(75.0, ge=0, le=100)
    include_duty_leaves: bool = True
    show_warning_at: float = Field(80.0, ge=0, le=100)
    show_critical_at: float = Field(75.0, ge=0, le=100)
    auto_mark_weekends: bool = False
    notifications_enabled: bool = True
    reminder_time: str = Field("09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_thresholds(self):
        if self.show_critical_at > self.show_warning_at:
            raise ValueError("Critical threshold must be less than or equal to warning threshold.")
        return self
