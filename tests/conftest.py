# tests/conftest.py
import asyncio
import sys
from datetime import date, time

import pytest

from attend75.engine.services.ledger import AttendanceLedger

# This is the crucial fix for Windows asyncio issues with pytest.
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def sample_ledger() -> AttendanceLedger:
    """
    A guest ledger with two subjects: 'Maths' with a Monday slot and three
    records (present, absent, duty-leave), and 'History' with no records.
    """
    ledger = AttendanceLedger()
    maths = ledger.add_subject("Maths", days_of_week=[1])
    ledger.add_subject("History", days_of_week=[2], initial_classes_held=4, initial_classes_attended=3)
    slot = ledger.add_lecture_slot(maths.id, 1, time(9, 0))
    ledger.upsert_record(maths.id, date(2024, 1, 1), "present", lecture_slot_id=slot.id)
    ledger.upsert_record(maths.id, date(2024, 1, 8), "absent", lecture_slot_id=slot.id)
    ledger.upsert_record(maths.id, date(2024, 1, 15), "duty-leave", lecture_slot_id=slot.id)
    return ledger
