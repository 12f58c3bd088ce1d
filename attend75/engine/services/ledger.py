import logging
from datetime import date, time
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError

from ..models.ledger_models import (
    AttendanceRecord, AttendanceStatus, LectureSlot, Subject, UserSettings, utc_now
)
from ..models.stats_models import AttendanceAdvice, AttendanceStats, OverallStats, RiskLevel
from ..models.sync_models import CascadeResult, LedgerChange, LedgerSnapshot, SlotChanges
from ..modules import analytics
from ..modules.dates import DayLike, month_key, parse_day, weekday_index
from .errors import ValidationError

logger = logging.getLogger(__name__)

RecordKey = Tuple[UUID, date, Optional[UUID]]
ChangeListener = Callable[[LedgerChange], None]

# Derived or identity fields that callers may not set through update_subject.
_PROTECTED_SUBJECT_FIELDS = {"id", "classes_held", "classes_attended", "created_at", "updated_at"}


def _describe(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
        for err in error.errors()
    )


def _build(model_cls, data: dict):
    """Validates a model, turning pydantic errors into the service-level ValidationError."""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model_cls.__name__}: {_describe(e)}") from e


def _as_uuid(value: Union[UUID, str, None], what: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Malformed {what} id: {value!r}")


def _as_day(value: DayLike) -> date:
    try:
        return parse_day(value)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _as_status(value: Union[AttendanceStatus, str]) -> AttendanceStatus:
    try:
        return AttendanceStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in AttendanceStatus)
        raise ValidationError(f"Invalid attendance status: {value!r}. Must be one of {allowed}.")


class AttendanceLedger:
    """
    In-memory authoritative snapshot of one user's subjects, lecture slots,
    attendance records and settings.

    Every mutation validates its input first and raises ValidationError
    without touching state; once it has been applied, listeners receive a
    LedgerChange. Derived counters are recomputed from the full record set
    on every mutation.
    """

    def __init__(self, snapshot: Optional[LedgerSnapshot] = None):
        self._user_id: Optional[UUID] = None
        self._subjects: Dict[UUID, Subject] = {}
        self._slots: Dict[UUID, LectureSlot] = {}
        self._records: Dict[UUID, AttendanceRecord] = {}
        self._record_index: Dict[RecordKey, UUID] = {}
        self._settings = UserSettings()
        self._listeners: List[ChangeListener] = []
        if snapshot is not None:
            self.load(snapshot)

    # ===== Read-only views =====

    @property
    def user_id(self) -> Optional[UUID]:
        return self._user_id

    @property
    def is_guest(self) -> bool:
        return self._user_id is None

    @property
    def subjects(self) -> List[Subject]:
        return list(self._subjects.values())

    @property
    def lecture_slots(self) -> List[LectureSlot]:
        return list(self._slots.values())

    @property
    def records(self) -> List[AttendanceRecord]:
        return list(self._records.values())

    @property
    def settings(self) -> UserSettings:
        return self._settings

    def __len__(self) -> int:
        return len(self._subjects) + len(self._slots) + len(self._records)

    def get_subject(self, subject_id: Union[UUID, str]) -> Optional[Subject]:
        return self._subjects.get(_as_uuid(subject_id, "subject"))

    def get_lecture_slot(self, slot_id: Union[UUID, str]) -> Optional[LectureSlot]:
        return self._slots.get(_as_uuid(slot_id, "lecture slot"))

    def get_record(self, record_id: Union[UUID, str]) -> Optional[AttendanceRecord]:
        return self._records.get(_as_uuid(record_id, "attendance record"))

    def records_for_subject(self, subject_id: Union[UUID, str]) -> List[AttendanceRecord]:
        sid = _as_uuid(subject_id, "subject")
        return [r for r in self._records.values() if r.subject_id == sid]

    def slots_for_subject(self, subject_id: Union[UUID, str]) -> List[LectureSlot]:
        sid = _as_uuid(subject_id, "subject")
        slots = [s for s in self._slots.values() if s.subject_id == sid]
        return sorted(slots, key=lambda s: (s.day_of_week, s.start_time))

    # ===== Change events =====

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Registers a listener; returns a callable that removes it again."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, kind: str, entity: str, ids: Iterable = ()):
        change = LedgerChange(kind=kind, entity=entity, ids=[str(i) for i in ids])
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.error(f"Ledger listener failed on {kind} {entity}.", exc_info=True)

    # ===== Whole-ledger operations =====

    def load(self, snapshot: LedgerSnapshot):
        """Replaces the entire ledger with the snapshot (no partial merge)."""
        self._user_id = snapshot.user_id
        self._subjects = {s.id: s for s in snapshot.subjects}
        self._slots = {s.id: s for s in snapshot.lecture_slots}
        self._settings = snapshot.settings
        self._set_records(snapshot.attendance_records)
        self._purge_orphans()
        self._recompute_all()
        logger.info(
            f"Ledger loaded for {'guest' if snapshot.user_id is None else snapshot.user_id}: "
            f"{len(self._subjects)} subjects, {len(self._slots)} slots, {len(self._records)} records."
        )
        self._emit("replaced", "ledger")

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            user_id=self._user_id,
            subjects=self.subjects,
            lecture_slots=self.lecture_slots,
            attendance_records=self.records,
            settings=self._settings,
        )

    def clear(self, user_id: Optional[UUID] = None):
        self.load(LedgerSnapshot(user_id=user_id))

    def set_user(self, user_id: Optional[UUID]):
        self._user_id = user_id

    def _set_records(self, records: Iterable[AttendanceRecord]):
        # The uniqueness key decides; a later record for the same key replaces the earlier one.
        by_key: Dict[RecordKey, AttendanceRecord] = {}
        for record in records:
            by_key[record.key] = record
        self._records = {r.id: r for r in by_key.values()}
        self._record_index = {r.key: r.id for r in by_key.values()}

    def _purge_orphans(self) -> Tuple[List[UUID], List[UUID]]:
        orphan_slots = [sid for sid, s in self._slots.items() if s.subject_id not in self._subjects]
        for sid in orphan_slots:
            del self._slots[sid]
        orphan_records = [rid for rid, r in self._records.items() if r.subject_id not in self._subjects]
        for rid in orphan_records:
            self._drop_record(rid)
        if orphan_slots or orphan_records:
            logger.info(f"Purged {len(orphan_slots)} orphaned slots and {len(orphan_records)} orphaned records.")
        return orphan_slots, orphan_records

    def _drop_record(self, record_id: UUID):
        record = self._records.pop(record_id, None)
        if record is not None and self._record_index.get(record.key) == record_id:
            del self._record_index[record.key]

    # ===== Slice replacement (used by the real-time merge) =====

    def replace_subjects(self, subjects: Iterable[Subject]):
        self._subjects = {s.id: s for s in subjects}
        self._purge_orphans()
        self._recompute_all()
        self._emit("replaced", "subject", self._subjects.keys())

    def replace_lecture_slots(self, slots: Iterable[LectureSlot]):
        self._slots = {s.id: s for s in slots}
        self._purge_orphans()
        self._emit("replaced", "lecture_slot", self._slots.keys())

    def replace_records(self, records: Iterable[AttendanceRecord]):
        self._set_records(records)
        self._purge_orphans()
        self._recompute_all()
        self._emit("replaced", "attendance_record", self._records.keys())

    def replace_settings(self, settings: UserSettings):
        include_changed = settings.include_duty_leaves != self._settings.include_duty_leaves
        self._settings = settings
        if include_changed:
            self._recompute_all()
        self._emit("replaced", "settings")

    def acknowledge_record(self, server_record: AttendanceRecord) -> Optional[AttendanceRecord]:
        """
        Adopts the identity and timestamps the server assigned to a record we
        wrote optimistically. The ledger size never changes.
        """
        local_id = self._record_index.get(server_record.key)
        if local_id is None:
            return None
        local = self._records[local_id]
        if local_id == server_record.id and local.updated_at == server_record.updated_at:
            return local
        adopted = local.model_copy(update={
            "id": server_record.id,
            "created_at": server_record.created_at,
            "updated_at": server_record.updated_at,
        })
        del self._records[local_id]
        self._records[adopted.id] = adopted
        self._record_index[adopted.key] = adopted.id
        self._emit("updated", "attendance_record", [adopted.id])
        return adopted

    # ===== Subjects =====

    def _require_subject(self, subject_id: Union[UUID, str]) -> Subject:
        sid = _as_uuid(subject_id, "subject")
        subject = self._subjects.get(sid)
        if subject is None:
            raise ValidationError(f"Subject {sid} does not exist.")
        return subject

    def add_subject(self,
                    name: str,
                    days_of_week: Iterable[int] = (),
                    required_attendance: Optional[float] = None,
                    initial_classes_held: int = 0,
                    initial_classes_attended: int = 0,
                    start_month: Optional[str] = None,
                    end_month: Optional[str] = None,
                    subject_id: Optional[UUID] = None) -> Subject:
        """Adds a subject; the target defaults to the user's default required attendance."""
        if required_attendance is None:
            required_attendance = self._settings.default_required_attendance
        subject = _build(Subject, {
            "id": subject_id or uuid4(),
            "name": name,
            "days_of_week": list(days_of_week),
            "required_attendance": required_attendance,
            "initial_classes_held": initial_classes_held,
            "initial_classes_attended": initial_classes_attended,
            "start_month": start_month,
            "end_month": end_month,
        })
        if subject.id in self._subjects:
            raise ValidationError(f"Subject {subject.id} already exists.")

        self._subjects[subject.id] = subject
        subject = self._recompute(subject.id)
        self._emit("created", "subject", [subject.id])
        return subject

    def update_subject(self, subject_id: Union[UUID, str], **changes) -> Subject:
        current = self._require_subject(subject_id)
        protected = _PROTECTED_SUBJECT_FIELDS.intersection(changes)
        if protected:
            raise ValidationError(f"Fields cannot be changed directly: {', '.join(sorted(protected))}")

        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = utc_now()
        updated = _build(Subject, data)

        self._subjects[updated.id] = updated
        updated = self._recompute(updated.id)
        self._emit("updated", "subject", [updated.id])
        return updated

    def delete_subject(self, subject_id: Union[UUID, str]) -> CascadeResult:
        """Removes a subject together with its lecture slots and attendance records."""
        subject = self._require_subject(subject_id)

        slot_ids = [sid for sid, s in self._slots.items() if s.subject_id == subject.id]
        record_ids = [rid for rid, r in self._records.items() if r.subject_id == subject.id]
        for sid in slot_ids:
            del self._slots[sid]
        for rid in record_ids:
            self._drop_record(rid)
        del self._subjects[subject.id]

        logger.info(f"Subject '{subject.name}' deleted with {len(slot_ids)} slots and {len(record_ids)} records.")
        self._emit("deleted", "subject", [subject.id, *slot_ids, *record_ids])
        return CascadeResult(subject_id=subject.id, lecture_slot_ids=slot_ids, attendance_record_ids=record_ids)

    def put_subject(self, subject: Subject) -> Subject:
        """Inserts or replaces a whole subject, e.g. when re-applying a pending write."""
        if not isinstance(subject, Subject):
            raise ValidationError("put_subject expects a Subject.")
        existed = subject.id in self._subjects
        self._subjects[subject.id] = subject
        subject = self._recompute(subject.id)
        self._emit("updated" if existed else "created", "subject", [subject.id])
        return subject

    def expired_subject_ids(self, today: Optional[date] = None) -> List[UUID]:
        """Subjects whose end month lies before the current month."""
        current_month = month_key(today or date.today())
        return [s.id for s in self._subjects.values() if s.end_month and s.end_month < current_month]

    # ===== Lecture slots =====

    def add_lecture_slot(self,
                         subject_id: Union[UUID, str],
                         day_of_week: int,
                         start_time: Union[time, str],
                         duration_hours: int = 1,
                         slot_id: Optional[UUID] = None) -> LectureSlot:
        subject = self._require_subject(subject_id)
        slot = _build(LectureSlot, {
            "id": slot_id or uuid4(),
            "subject_id": subject.id,
            "day_of_week": day_of_week,
            "start_time": start_time,
            "duration_hours": duration_hours,
        })
        if slot.id in self._slots:
            raise ValidationError(f"Lecture slot {slot.id} already exists.")
        self._slots[slot.id] = slot
        self._emit("created", "lecture_slot", [slot.id])
        return slot

    def put_lecture_slot(self, slot: LectureSlot) -> LectureSlot:
        self._require_subject(slot.subject_id)
        existed = slot.id in self._slots
        self._slots[slot.id] = slot
        self._emit("updated" if existed else "created", "lecture_slot", [slot.id])
        return slot

    def set_lecture_slots(self, subject_id: Union[UUID, str], slots: Iterable[Union[LectureSlot, dict]]) -> SlotChanges:
        """
        Replaces a subject's weekly timetable. Slots whose id is already known
        are updated in place so existing attendance stays linked; unknown ones
        are created; slots left out are deleted along with their records.
        """
        subject = self._require_subject(subject_id)
        current = {sid: s for sid, s in self._slots.items() if s.subject_id == subject.id}

        incoming: List[LectureSlot] = []
        for raw in slots:
            data = raw.model_dump() if isinstance(raw, LectureSlot) else dict(raw)
            data["subject_id"] = subject.id
            data.pop("end_time", None)
            slot_id = data.get("id")
            if slot_id is not None and _as_uuid(slot_id, "lecture slot") in current:
                data["id"] = _as_uuid(slot_id, "lecture slot")
                data["created_at"] = current[data["id"]].created_at
                data["updated_at"] = utc_now()
            else:
                # A new slot keeps a caller-chosen id unless another subject already uses it.
                known = slot_id is not None and _as_uuid(slot_id, "lecture slot") in self._slots
                data["id"] = uuid4() if slot_id is None or known else _as_uuid(slot_id, "lecture slot")
                data.pop("created_at", None)
                data.pop("updated_at", None)
            incoming.append(_build(LectureSlot, data))

        incoming_ids = {s.id for s in incoming}
        changes = SlotChanges(
            created=[s for s in incoming if s.id not in current],
            updated=[s for s in incoming if s.id in current],
            deleted=[sid for sid in current if sid not in incoming_ids],
        )

        for sid in changes.deleted:
            del self._slots[sid]
            attached = [rid for rid, r in self._records.items() if r.lecture_slot_id == sid]
            for rid in attached:
                self._drop_record(rid)
            changes.removed_record_ids.extend(attached)
        for slot in incoming:
            self._slots[slot.id] = slot

        self._recompute(subject.id)
        self._emit("updated", "lecture_slot", [*incoming_ids, *changes.deleted])
        return changes

    def lecture_slots_for_date(self, day: DayLike) -> List[LectureSlot]:
        """Slots held on the given day, ordered by start time then subject name."""
        weekday = weekday_index(_as_day(day))
        slots = [
            s for s in self._slots.values()
            if s.day_of_week == weekday and s.subject_id in self._subjects
        ]
        return sorted(slots, key=lambda s: (s.start_time, self._subjects[s.subject_id].name.lower()))

    def subjects_for_date(self, day: DayLike) -> List[Subject]:
        """
        Subjects that meet on the given day. Lecture slots decide; when no
        slot falls on that day, days_of_week is used instead.
        """
        parsed = _as_day(day)
        with_slots = {s.subject_id for s in self.lecture_slots_for_date(parsed)}
        if with_slots:
            return [s for s in self._subjects.values() if s.id in with_slots]
        weekday = weekday_index(parsed)
        return [s for s in self._subjects.values() if weekday in s.days_of_week]

    # ===== Attendance records =====

    def find_record(self,
                    subject_id: Union[UUID, str],
                    day: DayLike,
                    lecture_slot_id: Union[UUID, str, None] = None) -> Optional[AttendanceRecord]:
        sid = _as_uuid(subject_id, "subject")
        slot = _as_uuid(lecture_slot_id, "lecture slot") if lecture_slot_id is not None else None
        record_id = self._record_index.get((sid, _as_day(day), slot))
        return self._records.get(record_id) if record_id else None

    def status_on(self,
                  subject_id: Union[UUID, str],
                  day: DayLike,
                  lecture_slot_id: Union[UUID, str, None] = None) -> Optional[AttendanceStatus]:
        record = self.find_record(subject_id, day, lecture_slot_id)
        return record.status if record else None

    def upsert_record(self,
                      subject_id: Union[UUID, str],
                      day: DayLike,
                      status: Union[AttendanceStatus, str],
                      lecture_slot_id: Union[UUID, str, None] = None,
                      hours_logged: Optional[int] = None,
                      duty_requested: bool = False,
                      duty_approved: bool = False,
                      duty_reason: Optional[str] = None,
                      record_id: Optional[UUID] = None) -> AttendanceRecord:
        """
        Writes the attendance for (subject, day, slot). An existing record for
        the same key is replaced, keeping its id and creation time.
        """
        subject = self._require_subject(subject_id)
        parsed_day = _as_day(day)
        parsed_status = _as_status(status)

        slot = None
        if lecture_slot_id is not None:
            slot = self._slots.get(_as_uuid(lecture_slot_id, "lecture slot"))
            if slot is None:
                raise ValidationError(f"Lecture slot {lecture_slot_id} does not exist.")
            if slot.subject_id != subject.id:
                raise ValidationError(f"Lecture slot {slot.id} does not belong to subject {subject.id}.")

        if hours_logged is None:
            hours_logged = slot.duration_hours if slot else 1

        key = (subject.id, parsed_day, slot.id if slot else None)
        existing = self._records.get(self._record_index.get(key)) if key in self._record_index else None

        new_id = None
        if existing is None and record_id is not None:
            new_id = _as_uuid(record_id, "attendance record")
            if new_id in self._records:
                raise ValidationError(f"Attendance record id {new_id} is already used by another class.")

        data = {
            "id": existing.id if existing else (new_id or uuid4()),
            "subject_id": subject.id,
            "lecture_slot_id": slot.id if slot else None,
            "date": parsed_day,
            "status": parsed_status,
            "hours_logged": hours_logged,
            "duty_requested": duty_requested,
            "duty_approved": duty_approved,
            "duty_reason": duty_reason,
        }
        if existing:
            data["created_at"] = existing.created_at
        record = _build(AttendanceRecord, data)

        self._records[record.id] = record
        self._record_index[record.key] = record.id
        self._recompute(subject.id)
        self._emit("updated" if existing else "created", "attendance_record", [record.id])
        return record

    def delete_record(self, record_id: Union[UUID, str]) -> AttendanceRecord:
        rid = _as_uuid(record_id, "attendance record")
        record = self._records.get(rid)
        if record is None:
            raise ValidationError(f"Attendance record {rid} does not exist.")
        self._drop_record(rid)
        self._recompute(record.subject_id)
        self._emit("deleted", "attendance_record", [rid])
        return record

    # ----- Duty leave workflow -----

    def request_duty_leave(self,
                           subject_id: Union[UUID, str],
                           day: DayLike,
                           reason: str,
                           lecture_slot_id: Union[UUID, str, None] = None) -> AttendanceRecord:
        """Marks the class absent with a pending duty-leave request."""
        if not reason or not reason.strip():
            raise ValidationError("A duty leave request needs a reason.")
        existing = self.find_record(subject_id, day, lecture_slot_id)
        return self.upsert_record(
            subject_id, day, AttendanceStatus.ABSENT,
            lecture_slot_id=lecture_slot_id,
            hours_logged=existing.hours_logged if existing else None,
            duty_requested=True,
            duty_approved=False,
            duty_reason=reason.strip(),
        )

    def approve_duty_leave(self,
                           subject_id: Union[UUID, str],
                           day: DayLike,
                           lecture_slot_id: Union[UUID, str, None] = None) -> AttendanceRecord:
        existing = self.find_record(subject_id, day, lecture_slot_id)
        if existing is None:
            raise ValidationError("There is no attendance record to approve duty leave for.")
        return self.upsert_record(
            subject_id, day, AttendanceStatus.DUTY_LEAVE,
            lecture_slot_id=lecture_slot_id,
            hours_logged=existing.hours_logged,
            duty_requested=True,
            duty_approved=True,
            duty_reason=existing.duty_reason,
        )

    def cancel_duty_request(self,
                            subject_id: Union[UUID, str],
                            day: DayLike,
                            lecture_slot_id: Union[UUID, str, None] = None) -> AttendanceRecord:
        existing = self.find_record(subject_id, day, lecture_slot_id)
        if existing is None:
            raise ValidationError("There is no duty leave request to cancel.")
        return self.upsert_record(
            subject_id, day, AttendanceStatus.ABSENT,
            lecture_slot_id=lecture_slot_id,
            hours_logged=existing.hours_logged,
        )

    def list_absent_records(self, subject_id: Union[UUID, str, None] = None) -> List[AttendanceRecord]:
        """Absences without an approved duty leave, i.e. candidates for a request."""
        sid = _as_uuid(subject_id, "subject") if subject_id is not None else None
        return [
            r for r in self._records.values()
            if r.status == AttendanceStatus.ABSENT and not r.duty_approved
            and (sid is None or r.subject_id == sid)
        ]

    def list_approved_duty_leaves(self) -> List[AttendanceRecord]:
        return [r for r in self._records.values() if r.status == AttendanceStatus.DUTY_LEAVE and r.duty_approved]

    # ===== Settings =====

    def update_settings(self, **changes) -> UserSettings:
        unknown = set(changes) - set(UserSettings.model_fields) - {"updated_at"}
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        data = self._settings.model_dump()
        data.update(changes)
        data["updated_at"] = utc_now()
        self.replace_settings(_build(UserSettings, data))
        return self._settings

    # ===== Derived statistics =====

    def _counts(self, subject: Subject) -> Tuple[int, int, int, int, int]:
        present = absent = duty = 0
        for r in self._records.values():
            if r.subject_id != subject.id:
                continue
            if r.status == AttendanceStatus.PRESENT:
                present += 1
            elif r.status == AttendanceStatus.DUTY_LEAVE:
                duty += 1
            else:
                absent += 1
        held = subject.initial_classes_held + present + absent + duty
        attended = subject.initial_classes_attended + present
        if self._settings.include_duty_leaves:
            attended += duty
        return held, attended, present, absent, duty

    def _recompute(self, subject_id: UUID) -> Subject:
        subject = self._subjects[subject_id]
        held, attended, _, _, _ = self._counts(subject)
        if subject.classes_held != held or subject.classes_attended != attended:
            subject = subject.model_copy(update={"classes_held": held, "classes_attended": attended})
            self._subjects[subject_id] = subject
        return subject

    def _recompute_all(self):
        for subject_id in list(self._subjects):
            self._recompute(subject_id)

    def stats_for(self, subject_id: Union[UUID, str]) -> AttendanceStats:
        """Projection over the current records; an unknown subject yields zero stats."""
        subject = self._subjects.get(_as_uuid(subject_id, "subject"))
        if subject is None:
            return AttendanceStats(subject_id=str(subject_id))

        held, attended, present, absent, duty = self._counts(subject)
        physical = subject.initial_classes_attended + present
        current = analytics.percentage(attended, held)
        return AttendanceStats(
            subject_id=str(subject.id),
            classes_held=held,
            classes_attended=attended,
            attendance_percentage=current,
            is_at_risk=current < subject.required_attendance,
            present_count=present,
            absent_count=absent,
            duty_leave_count=duty,
            physical_classes_attended=physical,
            physical_attendance_percentage=analytics.percentage(physical, held),
        )

    def overall_stats(self) -> OverallStats:
        records = self._records.values()
        held = attended = physical = 0
        for subject in self._subjects.values():
            stats = self.stats_for(subject.id)
            held += stats.classes_held
            attended += stats.classes_attended
            physical += stats.physical_classes_attended
        return OverallStats(
            total_records=len(self._records),
            total_present=sum(1 for r in records if r.status == AttendanceStatus.PRESENT),
            total_absent=sum(1 for r in records if r.status == AttendanceStatus.ABSENT),
            total_duty_leave=sum(1 for r in records if r.status == AttendanceStatus.DUTY_LEAVE),
            total_classes_held=held,
            total_classes_attended=attended,
            attendance_percentage=analytics.percentage(attended, held),
            physical_attendance_percentage=analytics.percentage(physical, held),
        )

    def weekly_occurrences(self, subject_id: Union[UUID, str]) -> int:
        subject = self._require_subject(subject_id)
        slots = self.slots_for_subject(subject.id)
        return len(slots) if slots else len(subject.days_of_week)

    def advice_for(self, subject_id: Union[UUID, str]) -> AttendanceAdvice:
        subject = self._require_subject(subject_id)
        stats = self.stats_for(subject.id)
        return analytics.advise(
            stats.classes_attended,
            stats.classes_held,
            self.weekly_occurrences(subject.id),
            subject.required_attendance,
        )

    def risk_for(self, subject_id: Union[UUID, str]) -> RiskLevel:
        stats = self.stats_for(self._require_subject(subject_id).id)
        return analytics.risk_level(
            stats.attendance_percentage,
            self._settings.show_warning_at,
            self._settings.show_critical_at,
        )
