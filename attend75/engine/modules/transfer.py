# attend75/engine/modules/transfer.py

import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import ValidationError as PydanticValidationError

from ..models.ledger_models import AttendanceRecord, LectureSlot, LedgerModel, Subject, UserSettings, utc_now
from ..models.sync_models import LedgerSnapshot
from ..services.errors import ImportFailed
from . import analytics
from .dates import parse_day

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
CSV_HEADER = ["Date", "Subject", "Status", "Attendance %", "Classes Held", "Classes Attended"]

# Older exports wrote the baseline counts under these names.
_INITIAL_HELD_ALIASES = ("initialClassesHeld", "initial_classes_held", "initialHoursHeld", "initial_hours_held", "classesHeld")
_INITIAL_ATTENDED_ALIASES = (
    "initialClassesAttended", "initial_classes_attended", "initialHoursAttended", "initial_hours_attended", "classesAttended"
)
# Derived or computed fields that an import must never take from the document.
_DERIVED_KEYS = ("classesHeld", "classes_held", "classesAttended", "classes_attended", "endTime", "end_time")


def export_json(snapshot: LedgerSnapshot) -> Dict[str, Any]:
    """Builds the version 1.0 export document with camelCase keys."""
    return {
        "version": EXPORT_VERSION,
        "subjects": [s.to_json_dict() for s in snapshot.subjects],
        "lectureSlots": [s.to_json_dict() for s in snapshot.lecture_slots],
        "attendanceRecords": [r.to_json_dict() for r in snapshot.attendance_records],
        "settings": snapshot.settings.to_json_dict(),
        "exportDate": utc_now().isoformat(),
    }


def _first_present(item: dict, keys: Tuple[str, ...]):
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _map_subject(item: dict) -> dict:
    mapped = dict(item)
    held = _first_present(item, _INITIAL_HELD_ALIASES)
    attended = _first_present(item, _INITIAL_ATTENDED_ALIASES)
    for key in _INITIAL_HELD_ALIASES + _INITIAL_ATTENDED_ALIASES + _DERIVED_KEYS:
        mapped.pop(key, None)
    mapped["initial_classes_held"] = held or 0
    mapped["initial_classes_attended"] = attended or 0
    return mapped


def _map_slot(item: dict) -> dict:
    mapped = dict(item)
    for key in _DERIVED_KEYS:
        mapped.pop(key, None)
    return mapped


def _map_record(item: dict) -> dict:
    mapped = dict(item)
    if mapped.get("date") is not None:
        mapped["date"] = parse_day(mapped["date"])
    return mapped


def _read_items(document: dict, key: str, model_cls: Type[LedgerModel], mapper) -> Tuple[List[Any], int]:
    raw = document.get(key) or []
    if not isinstance(raw, list):
        raise ImportFailed(f"Import failed: '{key}' must be a list.")
    items, skipped = [], 0
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            skipped += 1
            continue
        try:
            items.append(model_cls.model_validate(mapper(item)))
        except (PydanticValidationError, ValueError) as e:
            skipped += 1
            logger.warning(f"Skipping {key}[{index}] during import: {e}")
    return items, skipped


def import_json(document: Union[str, bytes, Dict[str, Any]]) -> LedgerSnapshot:
    """
    Reads an export document into a LedgerSnapshot.

    Mapping is best effort: camelCase or snake_case keys, legacy names for the
    baseline counts, defaults for missing optional fields. Entries that cannot
    be read are skipped and logged. A version other than 1.0 is logged and
    the import continues.

    Raises:
        ImportFailed: if the document is not a readable export.
    """
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ImportFailed(f"Import failed: the file is not valid JSON ({e}).") from e

    if not isinstance(document, dict):
        raise ImportFailed("Import failed: expected a JSON object at the top level.")
    if not any(key in document for key in ("subjects", "lectureSlots", "attendanceRecords", "settings")):
        raise ImportFailed("Import failed: the document contains no attendance data.")

    version = document.get("version")
    if version != EXPORT_VERSION:
        logger.warning(f"Import version mismatch: expected {EXPORT_VERSION}, got {version!r}. Continuing.")

    subjects, skipped_subjects = _read_items(document, "subjects", Subject, _map_subject)
    slots, skipped_slots = _read_items(document, "lectureSlots", LectureSlot, _map_slot)
    records, skipped_records = _read_items(document, "attendanceRecords", AttendanceRecord, _map_record)

    settings = UserSettings()
    raw_settings = document.get("settings")
    if isinstance(raw_settings, dict):
        try:
            settings = UserSettings.model_validate(raw_settings)
        except PydanticValidationError as e:
            logger.warning(f"Imported settings are invalid, keeping defaults: {e}")

    logger.info(
        f"Imported {len(subjects)} subjects, {len(slots)} slots and {len(records)} records "
        f"(skipped {skipped_subjects + skipped_slots + skipped_records})."
    )
    return LedgerSnapshot(
        subjects=subjects,
        lecture_slots=slots,
        attendance_records=records,
        settings=settings,
    )


def export_csv(snapshot: LedgerSnapshot) -> Optional[str]:
    """
    Renders one row per attendance record, grouped by subject.
    Returns None if the export fails; the failure is only logged.
    """
    try:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)

        for subject in snapshot.subjects:
            pct = f"{round(analytics.percentage(subject.classes_attended, subject.classes_held))}%"
            records = sorted(
                (r for r in snapshot.attendance_records if r.subject_id == subject.id),
                key=lambda r: r.date,
            )
            if not records:
                writer.writerow(["", subject.name, "No records", pct, subject.classes_held, subject.classes_attended])
                continue
            for record in records:
                writer.writerow([
                    record.date.strftime("%d-%m-%Y"),
                    subject.name,
                    record.status.value,
                    pct,
                    subject.classes_held,
                    subject.classes_attended,
                ])
        return buffer.getvalue()
    except Exception:
        logger.error("CSV export failed.", exc_info=True)
        return None
