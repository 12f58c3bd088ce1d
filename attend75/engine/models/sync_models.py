# attend75/engine/models/sync_models.py

from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from .ledger_models import AttendanceRecord, LectureSlot, Subject, UserSettings, utc_now


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    SYNCING = "syncing"
    SYNCED = "synced"
    OFFLINE = "offline"
    MIGRATING = "migrating"


class WriteStatus(str, Enum):
    COMMITTED = "committed"
    SAVED_LOCALLY = "saved_locally"
    QUEUED = "queued"
    FAILED = "failed"


class LedgerSnapshot(BaseModel):
    """
    The whole ledger of one user. This is what the local store keeps for guests
    and what guest migration uploads.
    """
    user_id: Optional[UUID] = Field(None, description="None while the user is a guest.")
    subjects: List[Subject] = Field(default_factory=list)
    lecture_slots: List[LectureSlot] = Field(default_factory=list)
    attendance_records: List[AttendanceRecord] = Field(default_factory=list)
    settings: UserSettings = Field(default_factory=UserSettings)
    saved_at: datetime = Field(default_factory=utc_now)

    def is_empty(self) -> bool:
        return not (self.subjects or self.lecture_slots or self.attendance_records)


class ChangeEvent(BaseModel):
    """
    A row-level change pushed by the remote store's real-time channel.
    """
    event_type: str = Field(..., description="INSERT, UPDATE or DELETE")
    table: str
    row: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[UUID] = None


class LedgerChange(BaseModel):
    """Emitted by the ledger after a mutation has completed."""
    kind: str = Field(..., description="created, updated, deleted or replaced")
    entity: str = Field(..., description="subject, lecture_slot, attendance_record, settings or ledger")
    ids: List[str] = Field(default_factory=list)


class CascadeResult(BaseModel):
    """Rows removed together with a subject."""
    subject_id: UUID
    lecture_slot_ids: List[UUID] = Field(default_factory=list)
    attendance_record_ids: List[UUID] = Field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.lecture_slot_ids) + len(self.attendance_record_ids)


class SlotChanges(BaseModel):
    created: List[LectureSlot] = Field(default_factory=list)
    updated: List[LectureSlot] = Field(default_factory=list)
    deleted: List[UUID] = Field(default_factory=list)
    removed_record_ids: List[UUID] = Field(default_factory=list)


class WriteResult(BaseModel):
    """
    Outcome of an optimistic write. The ledger already reflects the change
    whatever the status is; FAILED means the durable copy does not.
    """
    status: WriteStatus
    operation: str
    entity_ids: List[str] = Field(default_factory=list, description="Ids of the rows the write touched")
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (WriteStatus.COMMITTED, WriteStatus.SAVED_LOCALLY)


class SyncResult(BaseModel):
    ok: bool
    state: SessionState
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class MigrationResult(BaseModel):
    ok: bool
    subjects_migrated: int = 0
    lecture_slots_migrated: int = 0
    records_migrated: int = 0
    subjects_merged: int = 0
    records_skipped: int = 0
    settings_migrated: bool = False
    rows_attempted: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class SignInResult(BaseModel):
    sync: SyncResult
    migration: Optional[MigrationResult] = None
