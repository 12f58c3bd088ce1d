import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError

from ..db.remote_store import (
    ATTENDANCE_LOGS, LECTURE_SLOTS, SUBJECTS, USER_SETTINGS, BatchWrite, RemoteStore
)
from ..models.ledger_models import AttendanceRecord, LectureSlot, Subject, UserSettings
from ..models.sync_models import LedgerSnapshot, MigrationResult
from .errors import MigrationPartialFailure, ServiceError

logger = logging.getLogger(__name__)

RECORD_CONFLICT_KEYS = ("subject_id", "date", "lecture_slot_id")
LEGACY_RECORD_CONFLICT_KEYS = ("subject_id", "date")
LEGACY_RECORD_CONFLICT_WHERE = "lecture_slot_id IS NULL"


def record_conflict_target(record: AttendanceRecord) -> Tuple[Tuple[str, ...], Optional[str]]:
    """Conflict columns (and partial index predicate) matching the record's uniqueness key."""
    if record.lecture_slot_id is None:
        return LEGACY_RECORD_CONFLICT_KEYS, LEGACY_RECORD_CONFLICT_WHERE
    return RECORD_CONFLICT_KEYS, None


def _is_newer(local: datetime, remote: Optional[datetime]) -> bool:
    return remote is None or local > remote


def _is_untouched_default(settings: UserSettings) -> bool:
    defaults = UserSettings()
    return settings.model_dump(exclude={"updated_at"}) == defaults.model_dump(exclude={"updated_at"})


class GuestMigration:
    """
    Transfers a guest ledger into an authenticated account.

    Every guest row is re-keyed to the user and to fresh ids, merged with
    what the account already holds, and written in a single remote
    transaction so the account never ends up with half of the guest data.
    """

    def __init__(self, remote: RemoteStore):
        self._remote = remote

    async def _fetch_remote(self, user_id: UUID):
        subjects, slots, records, settings = await asyncio.gather(
            self._remote.fetch_rows(SUBJECTS, user_id),
            self._remote.fetch_rows(LECTURE_SLOTS, user_id),
            self._remote.fetch_rows(ATTENDANCE_LOGS, user_id),
            self._remote.fetch_settings(user_id),
        )
        return (
            [Subject.model_validate(r) for r in subjects],
            [LectureSlot.model_validate(r) for r in slots],
            [AttendanceRecord.model_validate(r) for r in records],
            UserSettings.model_validate(settings) if settings else None,
        )

    def plan(self,
             snapshot: LedgerSnapshot,
             user_id: UUID,
             remote_subjects: List[Subject],
             remote_slots: List[LectureSlot],
             remote_records: List[AttendanceRecord],
             remote_settings: Optional[UserSettings]) -> Tuple[List[BatchWrite], MigrationResult]:
        """
        Builds the batch without touching the remote store.

        Subjects are matched by case-insensitive name and the newer copy wins.
        Slots on a matched subject reuse the remote slot at the same weekday
        and start time. A record whose key already exists remotely is only
        written when the guest copy is newer.
        """
        writes: List[BatchWrite] = []
        result = MigrationResult(ok=False)

        subjects_by_name = {s.name.lower(): s for s in remote_subjects}
        subject_ids: Dict[UUID, UUID] = {}
        for subject in snapshot.subjects:
            match = subjects_by_name.get(subject.name.lower())
            if match is None:
                new_id = uuid4()
                writes.append(BatchWrite("insert", SUBJECTS, subject.model_copy(update={"id": new_id}).to_row(user_id)))
                result.subjects_migrated += 1
            else:
                new_id = match.id
                result.subjects_merged += 1
                if _is_newer(subject.updated_at, match.updated_at):
                    merged = subject.model_copy(update={"id": match.id, "created_at": match.created_at})
                    writes.append(BatchWrite("upsert", SUBJECTS, merged.to_row(user_id), ("id",)))
            subject_ids[subject.id] = new_id

        slots_by_time = {(s.subject_id, s.day_of_week, s.start_time): s for s in remote_slots}
        slot_ids: Dict[UUID, UUID] = {}
        for slot in snapshot.lecture_slots:
            subject_id = subject_ids.get(slot.subject_id)
            if subject_id is None:
                continue
            existing = slots_by_time.get((subject_id, slot.day_of_week, slot.start_time))
            if existing is not None:
                slot_ids[slot.id] = existing.id
                continue
            new_id = uuid4()
            slot_ids[slot.id] = new_id
            moved = slot.model_copy(update={"id": new_id, "subject_id": subject_id})
            writes.append(BatchWrite("insert", LECTURE_SLOTS, moved.to_row(user_id)))
            result.lecture_slots_migrated += 1

        records_by_key = {r.key: r for r in remote_records}
        for record in snapshot.attendance_records:
            subject_id = subject_ids.get(record.subject_id)
            if subject_id is None:
                continue
            slot_id = None
            if record.lecture_slot_id is not None:
                slot_id = slot_ids.get(record.lecture_slot_id)
                if slot_id is None:
                    continue
            moved = record.model_copy(update={"id": uuid4(), "subject_id": subject_id, "lecture_slot_id": slot_id})
            existing = records_by_key.get(moved.key)
            if existing is not None and not _is_newer(record.updated_at, existing.updated_at):
                result.records_skipped += 1
                continue
            keys, where = record_conflict_target(moved)
            writes.append(BatchWrite("upsert", ATTENDANCE_LOGS, moved.to_row(user_id), keys, where))
            result.records_migrated += 1

        # The account's settings row is created with defaults at sign-up; an untouched one never wins.
        if remote_settings is None or _is_untouched_default(remote_settings) \
                or _is_newer(snapshot.settings.updated_at, remote_settings.updated_at):
            writes.append(BatchWrite("upsert", USER_SETTINGS, snapshot.settings.to_row(user_id), ("user_id",)))
            result.settings_migrated = True

        result.rows_attempted = len(writes)
        return writes, result

    async def migrate(self, snapshot: LedgerSnapshot, user_id: UUID) -> MigrationResult:
        """
        Raises:
            MigrationPartialFailure: if the account could not be read or the batch failed.
                Nothing has been written in that case.
        """
        logger.info(
            f"Migrating guest data to user {user_id}: {len(snapshot.subjects)} subjects, "
            f"{len(snapshot.lecture_slots)} slots, {len(snapshot.attendance_records)} records."
        )
        try:
            remote = await self._fetch_remote(user_id)
        except (ServiceError, PydanticValidationError) as e:
            raise MigrationPartialFailure(f"Could not read the account before migrating: {e}", 0, e) from e

        writes, result = self.plan(snapshot, user_id, *remote)
        try:
            await self._remote.apply_batch(writes)
        except ServiceError as e:
            logger.error(f"Guest migration batch of {len(writes)} rows failed.", exc_info=True)
            raise MigrationPartialFailure(
                f"Guest data could not be transferred ({len(writes)} rows attempted): {e}", len(writes), e
            ) from e

        result.ok = True
        logger.info(
            f"Guest migration complete: {result.subjects_migrated} new subjects, {result.subjects_merged} merged, "
            f"{result.records_migrated} records, {result.records_skipped} skipped."
        )
        return result
