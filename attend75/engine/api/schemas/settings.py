from pydantic import BaseModel
from typing import Optional


class SettingsUpdateRequest(BaseModel):
    """Request model for changing user settings. Only the fields sent are changed."""
    default_required_attendance: Optional[float] = None
    include_duty_leaves: Optional[bool] = None
    show_warning_at: Optional[float] = None
    show_critical_at: Optional[float] = None
    auto_mark_weekends: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    reminder_time: Optional[str] = None
