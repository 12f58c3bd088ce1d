from pydantic import BaseModel, Field
from datetime import time
from typing import List, Optional
from uuid import UUID


class SubjectCreateRequest(BaseModel):
    """Request model for adding a subject."""
    name: str = Field(..., min_length=1, description="Display name, e.g. 'Linear Algebra'.")
    days_of_week: List[int] = Field(default_factory=list, description="0=Sunday ... 6=Saturday")
    required_attendance: Optional[float] = Field(None, description="Target percentage; defaults to the user's setting.")
    initial_classes_held: int = Field(0, description="Classes held before tracking started.")
    initial_classes_attended: int = Field(0, description="Classes attended before tracking started.")
    start_month: Optional[str] = Field(None, description="YYYY-MM")
    end_month: Optional[str] = Field(None, description="YYYY-MM; the subject is removed once this month has passed.")


class SubjectUpdateRequest(BaseModel):
    """Request model for changing a subject. Only the fields sent are changed."""
    name: Optional[str] = None
    days_of_week: Optional[List[int]] = None
    required_attendance: Optional[float] = None
    initial_classes_held: Optional[int] = None
    initial_classes_attended: Optional[int] = None
    start_month: Optional[str] = None
    end_month: Optional[str] = None


class LectureSlotInput(BaseModel):
    """One slot of a subject's weekly timetable. Send the id to keep an existing slot."""
    id: Optional[UUID] = None
    day_of_week: int = Field(..., description="0=Sunday ... 6=Saturday")
    start_time: time
    duration_hours: int = 1
