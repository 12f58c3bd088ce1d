import pytest
import uuid
from datetime import date, time

from attend75.engine.services.ledger import AttendanceLedger
from attend75.engine.services.errors import ValidationError
from attend75.engine.models.ledger_models import AttendanceRecord, AttendanceStatus, LectureSlot, Subject
from attend75.engine.models.stats_models import RiskLevel
from attend75.engine.models.sync_models import LedgerSnapshot

MONDAY = date(2024, 1, 1)
TUESDAY = date(2024, 1, 2)

# --- Test Fixtures ---

@pytest.fixture
def ledger() -> AttendanceLedger:
    return AttendanceLedger()

@pytest.fixture
def maths(ledger) -> Subject:
    return ledger.add_subject("Maths", days_of_week=[1, 3])

@pytest.fixture
def changes(ledger):
    """Collects every change event the ledger emits."""
    received = []
    ledger.subscribe(received.append)
    return received

# --- Test Scenarios ---


class TestSubjects:

    def test_add_subject_uses_default_target_from_settings(self, ledger):
        ledger.update_settings(default_required_attendance=80)
        subject = ledger.add_subject("Physics")
        assert subject.required_attendance == 80

    def test_days_are_sorted_and_deduplicated(self, ledger):
        subject = ledger.add_subject("Physics", days_of_week=[5, 1, 5, 3])
        assert subject.days_of_week == [1, 3, 5]

    def test_blank_name_is_rejected_without_state_change(self, ledger):
        with pytest.raises(ValidationError):
            ledger.add_subject("   ")
        assert ledger.subjects == []

    def test_invalid_target_is_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.add_subject("Physics", required_attendance=120)

    def test_initial_attended_cannot_exceed_held(self, ledger):
        with pytest.raises(ValidationError):
            ledger.add_subject("Physics", initial_classes_held=5, initial_classes_attended=6)

    def test_update_subject(self, ledger, maths):
        updated = ledger.update_subject(maths.id, name="Mathematics", required_attendance=70)
        assert updated.id == maths.id
        assert updated.name == "Mathematics"
        assert ledger.get_subject(maths.id).required_attendance == 70

    def test_update_subject_cannot_touch_counters(self, ledger, maths):
        with pytest.raises(ValidationError, match="classes_held"):
            ledger.update_subject(maths.id, classes_held=10)

    def test_update_unknown_subject(self, ledger):
        with pytest.raises(ValidationError, match="does not exist"):
            ledger.update_subject(uuid.uuid4(), name="Nope")

    def test_delete_subject_cascades(self, ledger, maths, changes):
        """Scenario: a subject with 2 slots and 5 records removes 7 dependent rows."""
        other = ledger.add_subject("History")
        slot_a = ledger.add_lecture_slot(maths.id, 1, time(9, 0))
        slot_b = ledger.add_lecture_slot(maths.id, 3, time(11, 0))
        ledger.upsert_record(maths.id, MONDAY, "present", lecture_slot_id=slot_a.id)
        ledger.upsert_record(maths.id, date(2024, 1, 8), "absent", lecture_slot_id=slot_a.id)
        ledger.upsert_record(maths.id, date(2024, 1, 3), "present", lecture_slot_id=slot_b.id)
        ledger.upsert_record(maths.id, date(2024, 1, 10), "present")
        ledger.upsert_record(maths.id, date(2024, 1, 11), "duty-leave")
        ledger.upsert_record(other.id, MONDAY, "present")

        result = ledger.delete_subject(maths.id)

        assert result.removed_count == 7
        assert set(result.lecture_slot_ids) == {slot_a.id, slot_b.id}
        assert len(result.attendance_record_ids) == 5
        assert ledger.get_subject(maths.id) is None
        assert ledger.lecture_slots == []
        assert [r.subject_id for r in ledger.records] == [other.id]
        assert changes[-1].kind == "deleted"
        assert str(maths.id) in changes[-1].ids

    def test_expired_subjects(self, ledger):
        old = ledger.add_subject("Old", end_month="2024-03")
        ledger.add_subject("Current", end_month="2024-05")
        ledger.add_subject("Open ended")
        assert ledger.expired_subject_ids(today=date(2024, 5, 20)) == [old.id]


class TestRecords:

    def test_double_upsert_keeps_one_record(self, ledger, maths):
        first = ledger.upsert_record(maths.id, MONDAY, AttendanceStatus.PRESENT)
        second = ledger.upsert_record(maths.id, MONDAY, AttendanceStatus.ABSENT)

        assert len(ledger.records) == 1
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert ledger.status_on(maths.id, MONDAY) == AttendanceStatus.ABSENT

    def test_record_id_of_another_class_is_rejected(self, ledger, maths):
        monday = ledger.upsert_record(maths.id, MONDAY, "present")

        with pytest.raises(ValidationError, match="already used"):
            ledger.upsert_record(maths.id, "2024-01-08", "absent", record_id=monday.id)

        assert [r.id for r in ledger.records] == [monday.id]
        assert ledger.status_on(maths.id, MONDAY) == AttendanceStatus.PRESENT
        assert ledger.status_on(maths.id, "2024-01-08") is None

    def test_record_id_is_kept_for_a_new_class(self, ledger, maths):
        record_id = uuid.uuid4()
        record = ledger.upsert_record(maths.id, MONDAY, "present", record_id=str(record_id))
        assert record.id == record_id

    def test_slot_and_legacy_records_are_distinct(self, ledger, maths):
        slot = ledger.add_lecture_slot(maths.id, 1, time(9, 0))
        ledger.upsert_record(maths.id, MONDAY, "present", lecture_slot_id=slot.id)
        ledger.upsert_record(maths.id, MONDAY, "absent")
        assert len(ledger.records) == 2
        assert ledger.status_on(maths.id, MONDAY, slot.id) == AttendanceStatus.PRESENT
        assert ledger.status_on(maths.id, MONDAY) == AttendanceStatus.ABSENT

    def test_hours_default_to_slot_duration(self, ledger, maths):
        slot = ledger.add_lecture_slot(maths.id, 1, "14:00", duration_hours=2)
        record = ledger.upsert_record(maths.id, MONDAY, "present", lecture_slot_id=slot.id)
        assert record.hours_logged == 2
        assert slot.end_time == time(16, 0)

    def test_date_strings_are_accepted(self, ledger, maths):
        record = ledger.upsert_record(maths.id, "2024-01-01T10:30:00Z", "present")
        assert record.date == MONDAY

    @pytest.mark.parametrize("kwargs, message", [
        ({"status": "late"}, "Invalid attendance status"),
        ({"day": "2024-13-01"}, "Malformed date"),
        ({"hours_logged": 0}, "hours_logged"),
    ])
    def test_malformed_input_is_rejected(self, ledger, maths, kwargs, message):
        args = {"day": MONDAY, "status": "present"}
        args.update(kwargs)
        with pytest.raises(ValidationError, match=message):
            ledger.upsert_record(maths.id, **args)
        assert ledger.records == []

    def test_unknown_subject_is_rejected(self, ledger):
        with pytest.raises(ValidationError, match="does not exist"):
            ledger.upsert_record(uuid.uuid4(), MONDAY, "present")

    def test_slot_of_another_subject_is_rejected(self, ledger, maths):
        other = ledger.add_subject("History")
        slot = ledger.add_lecture_slot(other.id, 1, time(9, 0))
        with pytest.raises(ValidationError, match="does not belong"):
            ledger.upsert_record(maths.id, MONDAY, "present", lecture_slot_id=slot.id)

    def test_delete_record(self, ledger, maths):
        record = ledger.upsert_record(maths.id, MONDAY, "present")
        ledger.delete_record(record.id)
        assert ledger.records == []
        assert ledger.get_subject(maths.id).classes_held == 0


class TestCountersAndStats:

    def _mark(self, ledger, subject, statuses):
        for offset, status in enumerate(statuses):
            ledger.upsert_record(subject.id, date(2024, 1, 1 + offset), status)

    def test_counters_include_duty_leave_by_default(self, ledger, maths):
        self._mark(ledger, maths, ["present", "present", "present", "absent", "duty-leave"])
        subject = ledger.get_subject(maths.id)
        assert subject.classes_held == 5
        assert subject.classes_attended == 4

    def test_excluding_duty_leave_recomputes_counters(self, ledger, maths):
        self._mark(ledger, maths, ["present", "present", "present", "absent", "duty-leave"])
        ledger.update_settings(include_duty_leaves=False)
        assert ledger.get_subject(maths.id).classes_attended == 3

    def test_initial_counts_are_added(self, ledger):
        subject = ledger.add_subject("Chemistry", initial_classes_held=10, initial_classes_attended=8)
        self._mark(ledger, subject, ["present", "absent", "duty-leave", "present", "present"])
        stats = ledger.stats_for(subject.id)
        assert stats.classes_held == 15
        assert stats.classes_attended == 12
        assert stats.physical_classes_attended == 11
        assert stats.present_count == 3
        assert stats.absent_count == 1
        assert stats.duty_leave_count == 1

    def test_stats_at_risk(self, ledger, maths):
        self._mark(ledger, maths, ["present", "absent"])
        stats = ledger.stats_for(maths.id)
        assert stats.attendance_percentage == 50.0
        assert stats.is_at_risk is True

    def test_stats_for_unknown_subject_are_zero(self, ledger):
        stats = ledger.stats_for(uuid.uuid4())
        assert stats.classes_held == 0
        assert stats.attendance_percentage == 0.0
        assert stats.is_at_risk is False

    def test_overall_stats(self, ledger, maths):
        other = ledger.add_subject("History")
        self._mark(ledger, maths, ["present", "absent"])
        self._mark(ledger, other, ["present", "duty-leave"])
        overall = ledger.overall_stats()
        assert overall.total_records == 4
        assert overall.total_present == 2
        assert overall.total_absent == 1
        assert overall.total_duty_leave == 1
        assert overall.total_classes_held == 4
        assert overall.total_classes_attended == 3
        assert overall.attendance_percentage == 75.0
        assert overall.physical_attendance_percentage == 50.0

    def test_advice_and_risk(self, ledger):
        subject = ledger.add_subject("Biology", days_of_week=[1, 3], initial_classes_held=40, initial_classes_attended=32)
        advice = ledger.advice_for(subject.id)
        assert advice.classes_to_skip == 2
        assert ledger.risk_for(subject.id) == RiskLevel.OK

    def test_weekly_occurrences_prefer_slots(self, ledger, maths):
        assert ledger.weekly_occurrences(maths.id) == 2
        ledger.add_lecture_slot(maths.id, 1, time(9, 0))
        assert ledger.weekly_occurrences(maths.id) == 1


class TestTimetable:

    def test_slots_for_date_are_ordered(self, ledger):
        physics = ledger.add_subject("Physics")
        algebra = ledger.add_subject("algebra")
        late_physics = ledger.add_lecture_slot(physics.id, 1, time(9, 0))
        early_physics = ledger.add_lecture_slot(physics.id, 1, time(8, 0))
        algebra_slot = ledger.add_lecture_slot(algebra.id, 1, time(9, 0))
        ledger.add_lecture_slot(algebra.id, 2, time(9, 0))

        slots = ledger.lecture_slots_for_date(MONDAY)

        assert [s.id for s in slots] == [early_physics.id, algebra_slot.id, late_physics.id]

    def test_sunday_is_day_zero(self, ledger, maths):
        slot = ledger.add_lecture_slot(maths.id, 0, time(10, 0))
        assert ledger.lecture_slots_for_date(date(2023, 12, 31)) == [slot]

    def test_subjects_for_date_falls_back_to_days_of_week(self, ledger, maths):
        assert ledger.subjects_for_date(MONDAY) == [maths]
        assert ledger.subjects_for_date(TUESDAY) == []

    def test_set_lecture_slots_diffs_by_id(self, ledger, maths):
        kept = ledger.add_lecture_slot(maths.id, 1, time(9, 0))
        dropped = ledger.add_lecture_slot(maths.id, 3, time(9, 0))
        ledger.upsert_record(maths.id, MONDAY, "present", lecture_slot_id=kept.id)
        ledger.upsert_record(maths.id, date(2024, 1, 3), "absent", lecture_slot_id=dropped.id)

        result = ledger.set_lecture_slots(maths.id, [
            {"id": kept.id, "day_of_week": 1, "start_time": "10:00", "duration_hours": 2},
            {"day_of_week": 5, "start_time": "12:00"},
        ])

        assert [s.id for s in result.updated] == [kept.id]
        assert len(result.created) == 1
        assert result.deleted == [dropped.id]
        assert len(result.removed_record_ids) == 1
        assert ledger.get_lecture_slot(kept.id).start_time == time(10, 0)
        assert ledger.get_lecture_slot(dropped.id) is None
        assert ledger.status_on(maths.id, MONDAY, kept.id) == AttendanceStatus.PRESENT
        assert ledger.get_subject(maths.id).classes_held == 1

    def test_set_lecture_slots_is_all_or_nothing(self, ledger, maths):
        slot = ledger.add_lecture_slot(maths.id, 1, time(9, 0))
        with pytest.raises(ValidationError):
            ledger.set_lecture_slots(maths.id, [{"day_of_week": 9, "start_time": "10:00"}])
        assert ledger.lecture_slots == [slot]


class TestDutyLeave:

    def test_request_approve_cancel(self, ledger, maths):
        requested = ledger.request_duty_leave(maths.id, MONDAY, "Sports meet")
        assert requested.status == AttendanceStatus.ABSENT
        assert requested.duty_requested is True
        assert requested.duty_approved is False
        assert ledger.list_absent_records() == [requested]

        approved = ledger.approve_duty_leave(maths.id, MONDAY)
        assert approved.id == requested.id
        assert approved.status == AttendanceStatus.DUTY_LEAVE
        assert approved.duty_approved is True
        assert approved.duty_reason == "Sports meet"
        assert ledger.list_approved_duty_leaves() == [approved]
        assert ledger.list_absent_records() == []

        cancelled = ledger.cancel_duty_request(maths.id, MONDAY)
        assert cancelled.status == AttendanceStatus.ABSENT
        assert cancelled.duty_requested is False
        assert cancelled.duty_approved is False
        assert cancelled.duty_reason is None

    def test_approve_without_record(self, ledger, maths):
        with pytest.raises(ValidationError, match="no attendance record"):
            ledger.approve_duty_leave(maths.id, MONDAY)

    def test_request_needs_reason(self, ledger, maths):
        with pytest.raises(ValidationError, match="reason"):
            ledger.request_duty_leave(maths.id, MONDAY, "  ")


class TestSettings:

    def test_invalid_thresholds_leave_settings_untouched(self, ledger):
        before = ledger.settings
        with pytest.raises(ValidationError):
            ledger.update_settings(show_warning_at=70, show_critical_at=75)
        assert ledger.settings == before

    def test_unknown_setting(self, ledger):
        with pytest.raises(ValidationError, match="Unknown settings"):
            ledger.update_settings(theme="dark")

    def test_reminder_time_format(self, ledger):
        with pytest.raises(ValidationError):
            ledger.update_settings(reminder_time="25:00")
        assert ledger.update_settings(reminder_time="07:30").reminder_time == "07:30"


class TestSnapshotsAndEvents:

    def test_load_deduplicates_and_purges_orphans(self, ledger):
        subject = Subject(name="Maths")
        orphan_slot = LectureSlot(subject_id=uuid.uuid4(), day_of_week=1, start_time=time(9, 0))
        first = AttendanceRecord(subject_id=subject.id, date=MONDAY, status="present")
        second = AttendanceRecord(subject_id=subject.id, date=MONDAY, status="absent")

        ledger.load(LedgerSnapshot(subjects=[subject], lecture_slots=[orphan_slot], attendance_records=[first, second]))

        assert ledger.lecture_slots == []
        assert len(ledger.records) == 1
        assert ledger.status_on(subject.id, MONDAY) == AttendanceStatus.ABSENT
        assert ledger.get_subject(subject.id).classes_held == 1

    def test_snapshot_round_trip(self, ledger, maths):
        ledger.upsert_record(maths.id, MONDAY, "present")
        copy = AttendanceLedger(ledger.snapshot())
        assert copy.subjects == ledger.subjects
        assert copy.records == ledger.records

    def test_events_follow_mutations(self, ledger, changes):
        subject = ledger.add_subject("Maths")
        ledger.upsert_record(subject.id, MONDAY, "present")
        ledger.upsert_record(subject.id, MONDAY, "absent")
        assert [(c.kind, c.entity) for c in changes] == [
            ("created", "subject"),
            ("created", "attendance_record"),
            ("updated", "attendance_record"),
        ]

    def test_no_event_for_rejected_mutation(self, ledger, changes):
        with pytest.raises(ValidationError):
            ledger.add_subject("")
        assert changes == []

    def test_failing_listener_does_not_break_mutation(self, ledger):
        def broken(change):
            raise RuntimeError("listener bug")
        ledger.subscribe(broken)
        subject = ledger.add_subject("Maths")
        assert ledger.get_subject(subject.id) is not None

    def test_unsubscribe(self, ledger):
        received = []
        unsubscribe = ledger.subscribe(received.append)
        unsubscribe()
        ledger.add_subject("Maths")
        assert received == []

    def test_acknowledge_record_adopts_server_identity(self, ledger, maths):
        local = ledger.upsert_record(maths.id, MONDAY, "present")
        server = local.model_copy(update={"id": uuid.uuid4()})

        adopted = ledger.acknowledge_record(server)

        assert adopted.id == server.id
        assert len(ledger.records) == 1
        assert ledger.get_record(local.id) is None
        assert ledger.find_record(maths.id, MONDAY).id == server.id
