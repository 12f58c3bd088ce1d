import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from ..db.local_store import LocalStore
from ..db.remote_store import (
    ATTENDANCE_LOGS, LECTURE_SLOTS, SUBJECTS, USER_SETTINGS, RealtimeSubscription, RemoteStore
)
from ..models.ledger_models import AttendanceRecord, AttendanceStatus, LectureSlot, Subject, UserSettings
from ..models.sync_models import (
    CascadeResult, ChangeEvent, LedgerSnapshot, MigrationResult, SessionState,
    SignInResult, SlotChanges, SyncResult, WriteResult, WriteStatus
)
from ..modules import transfer
from ..modules.dates import DayLike
from .errors import (
    ConflictError, LocalStoreError, MigrationPartialFailure, NotAuthenticated, RemoteUnavailable, ServiceError,
    ValidationError
)
from .guest_migration import GuestMigration, record_conflict_target
from .ledger import AttendanceLedger

logger = logging.getLogger(__name__)


class PendingWrite:
    """A remote write that has been applied to the ledger but not confirmed by the server."""

    def __init__(self,
                 operation: str,
                 send: Callable[[], Awaitable[Any]],
                 reapply: Optional[Callable[[], Any]] = None,
                 entity_ids: Iterable = ()):
        self.operation = operation
        self.send = send
        self.reapply = reapply
        self.entity_ids = [str(i) for i in entity_ids]
        self.attempts = 0
        self.last_error: Optional[BaseException] = None

    def result(self, status: WriteStatus, error: Optional[BaseException] = None) -> WriteResult:
        error = error or (self.last_error if status == WriteStatus.FAILED else None)
        return WriteResult(
            status=status,
            operation=self.operation,
            entity_ids=self.entity_ids,
            attempts=self.attempts,
            error_kind=_error_kind(error) if error else None,
            error_message=str(error) if error else None,
        )

    def __repr__(self):
        return f"PendingWrite({self.operation!r}, attempts={self.attempts})"


def _error_kind(error: BaseException) -> str:
    if isinstance(error, ServiceError):
        return error.kind
    if isinstance(error, asyncio.TimeoutError):
        return RemoteUnavailable.kind
    return type(error).__name__


class SyncCoordinator:
    """
    Keeps the ledger, the remote store and the local store consistent.

    Intents are applied to the ledger first and persisted afterwards: to the
    local store for guests, to the remote store when synced, and to the
    pending queue otherwise. Remote failures never raise out of an intent;
    they come back as a WriteResult and the write stays queued.
    """

    def __init__(self,
                 ledger: AttendanceLedger,
                 remote: RemoteStore,
                 local: LocalStore,
                 write_timeout: float = 10.0,
                 migration: Optional[GuestMigration] = None):
        self._ledger = ledger
        self._remote = remote
        self._local = local
        self._write_timeout = write_timeout
        self._migration = migration or GuestMigration(remote)
        self._state = SessionState.UNAUTHENTICATED
        self._user_id: Optional[UUID] = None
        self._pending: List[PendingWrite] = []
        self._draining = False
        self._subscription: Optional[RealtimeSubscription] = None
        # Set once the account has been fetched for the current user.
        self._baseline_pulled = False

    # ===== Session state =====

    @property
    def ledger(self) -> AttendanceLedger:
        return self._ledger

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user_id(self) -> Optional[UUID]:
        return self._user_id

    @property
    def pending(self) -> List[PendingWrite]:
        return list(self._pending)

    @property
    def realtime_connected(self) -> bool:
        return self._subscription is not None and self._subscription.is_alive()

    def _set_state(self, state: SessionState):
        if state != self._state:
            logger.info(f"Session state {self._state.value} -> {state.value}")
            self._state = state

    def _sync_result(self, ok: bool, error: Optional[BaseException] = None) -> SyncResult:
        return SyncResult(
            ok=ok,
            state=self._state,
            error_kind=_error_kind(error) if error else None,
            error_message=str(error) if error else None,
        )

    async def _timed(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self._write_timeout)

    # ===== Guest session =====

    async def start_guest_session(self):
        """Loads the guest ledger kept on this device, or starts empty."""
        self._set_state(SessionState.UNAUTHENTICATED)
        self._user_id = None
        snapshot = None
        try:
            snapshot = await self._local.get_snapshot()
        except LocalStoreError:
            logger.error("Could not load the guest ledger; starting empty.", exc_info=True)
        self._ledger.load(snapshot.model_copy(update={"user_id": None}) if snapshot else LedgerSnapshot())

    # ===== Sign in / out =====

    async def sign_in(self, user_id: UUID, migrate_guest_data: bool = True) -> SignInResult:
        """
        Moves from guest mode to an authenticated session. Guest data, if any,
        is migrated before the initial pull so the pull already contains it.
        """
        migration = None
        guest_snapshot = self._ledger.snapshot() if self._ledger.is_guest else None
        await self.disconnect_realtime()
        self._user_id = user_id
        self._pending.clear()
        self._baseline_pulled = False

        if migrate_guest_data and guest_snapshot is not None and not guest_snapshot.is_empty():
            self._set_state(SessionState.MIGRATING)
            migration = await self._run_migration(guest_snapshot, user_id)

        self._ledger.set_user(user_id)
        sync = await self.initial_pull()
        if sync.ok:
            await self.connect_realtime()
        return SignInResult(sync=sync, migration=migration)

    async def _run_migration(self, snapshot: LedgerSnapshot, user_id: UUID) -> MigrationResult:
        try:
            result = await self._migration.migrate(snapshot, user_id)
        except MigrationPartialFailure as e:
            # The guest copy stays on the device so the migration can be retried.
            try:
                await self._local.save_snapshot(snapshot)
            except LocalStoreError:
                logger.error("Could not retain the guest ledger after a failed migration.", exc_info=True)
            return MigrationResult(
                ok=False, rows_attempted=e.rows_attempted, error_kind=e.kind, error_message=str(e)
            )

        try:
            await self._local.clear_snapshot()
        except LocalStoreError:
            logger.warning("Migrated guest ledger could not be removed from the local store.", exc_info=True)
        return result

    async def retry_migration(self) -> MigrationResult:
        """Re-runs a failed guest migration from the copy kept in the local store."""
        if self._user_id is None:
            error = NotAuthenticated("Sign in before migrating guest data.")
            return MigrationResult(ok=False, error_kind=error.kind, error_message=str(error))
        try:
            snapshot = await self._local.get_snapshot()
        except LocalStoreError as e:
            return MigrationResult(ok=False, error_kind=e.kind, error_message=str(e))
        if snapshot is None or snapshot.is_empty():
            return MigrationResult(ok=True)

        self._set_state(SessionState.MIGRATING)
        result = await self._run_migration(snapshot, self._user_id)
        await self.initial_pull()
        return result

    async def sign_out(self):
        await self.disconnect_realtime()
        if self._pending:
            logger.warning(f"Signing out with {len(self._pending)} unsent writes; they are discarded.")
        self._pending.clear()
        self._user_id = None
        self._baseline_pulled = False
        self._ledger.clear()
        self._set_state(SessionState.UNAUTHENTICATED)
        try:
            await self._local.clear_settings()
        except LocalStoreError:
            logger.warning("Cached settings could not be cleared on sign-out.", exc_info=True)

    # ===== Initial pull =====

    async def _fetch_table(self, table: str, model_cls) -> list:
        rows = await self._remote.fetch_rows(table, self._user_id)
        items = []
        for row in rows:
            try:
                items.append(model_cls.model_validate(row))
            except PydanticValidationError as e:
                logger.warning(f"Skipping unreadable {table} row {row.get('id')}: {e}")
        return items

    async def initial_pull(self) -> SyncResult:
        """
        Replaces the ledger with the account's remote data. Writes still
        pending from before the pull are re-applied on top and re-sent.
        """
        if self._user_id is None:
            return self._sync_result(False, NotAuthenticated("Initial pull needs a signed-in user."))

        self._set_state(SessionState.SYNCING)
        try:
            subjects, slots, records, settings_row = await self._timed(asyncio.gather(
                self._fetch_table(SUBJECTS, Subject),
                self._fetch_table(LECTURE_SLOTS, LectureSlot),
                self._fetch_table(ATTENDANCE_LOGS, AttendanceRecord),
                self._remote.fetch_settings(self._user_id),
            ))
        except (ServiceError, asyncio.TimeoutError) as e:
            logger.error(f"Initial pull for user {self._user_id} failed.", exc_info=True)
            self._set_state(SessionState.OFFLINE)
            return self._sync_result(False, e)

        settings = None
        if settings_row:
            try:
                settings = UserSettings.model_validate(settings_row)
            except PydanticValidationError:
                logger.warning("Remote settings row is unreadable; using defaults.")
        create_settings = settings is None
        settings = settings or UserSettings()

        self._ledger.load(LedgerSnapshot(
            user_id=self._user_id,
            subjects=subjects,
            lecture_slots=slots,
            attendance_records=records,
            settings=settings,
        ))
        self._reapply_pending()
        self._set_state(SessionState.SYNCED)
        self._baseline_pulled = True

        if create_settings:
            self._pending.append(self._settings_write(settings))
        await self._drain()

        for subject_id in self._ledger.expired_subject_ids():
            logger.info(f"Removing expired subject {subject_id}.")
            await self.delete_subject(subject_id)

        try:
            await self._local.save_settings(self._ledger.settings)
        except LocalStoreError:
            logger.warning("Settings could not be cached locally.", exc_info=True)

        return self._sync_result(True)

    # ===== Pending queue =====

    def _reapply_pending(self):
        for write in list(self._pending):
            if write.reapply is None:
                continue
            try:
                write.reapply()
            except ValidationError as e:
                logger.warning(f"Dropping pending {write.operation}: it no longer applies ({e}).")
                self._pending.remove(write)

    async def _drain(self) -> bool:
        """Sends queued writes in order. Stops at the first failure and goes offline."""
        if self._draining:
            return False
        self._draining = True
        try:
            while self._pending:
                write = self._pending[0]
                try:
                    await self._timed(write.send())
                except ConflictError as e:
                    write.attempts += 1
                    write.last_error = e
                    logger.error(f"Pending {write.operation} conflicts with a remote row and is dropped: {e}")
                    self._pending.pop(0)
                    continue
                except (ServiceError, asyncio.TimeoutError) as e:
                    write.attempts += 1
                    write.last_error = e
                    if write.attempts > 1:
                        logger.warning(f"{write.operation} failed {write.attempts} times; kept for retry.", exc_info=True)
                    else:
                        logger.warning(f"{write.operation} failed; kept for retry.", exc_info=True)
                    self._set_state(SessionState.OFFLINE)
                    return False
                self._pending.pop(0)
        finally:
            self._draining = False

        if self._state == SessionState.OFFLINE and self._baseline_pulled:
            self._set_state(SessionState.SYNCED)
        return True

    async def retry_pending(self) -> SyncResult:
        """Re-sends queued writes; the session returns to SYNCED once the queue is empty."""
        if self._user_id is None:
            return self._sync_result(False, NotAuthenticated("No session to synchronise."))
        if self._state in (SessionState.SYNCING, SessionState.MIGRATING):
            return self._sync_result(False)
        if not self._baseline_pulled:
            # Nothing has been fetched for this user yet; the pull re-sends the queue itself.
            return await self.initial_pull()
        if not self._pending:
            if self._state == SessionState.OFFLINE:
                self._set_state(SessionState.SYNCED)
            return self._sync_result(True)

        logger.info(f"Retrying {len(self._pending)} pending writes.")
        ok = await self._drain()
        last_error = None if ok or not self._pending else self._pending[0].last_error
        return self._sync_result(ok, last_error)

    async def _persist(self, write: PendingWrite) -> WriteResult:
        state = self._state
        if state == SessionState.UNAUTHENTICATED:
            try:
                await self._local.save_snapshot(self._ledger.snapshot())
            except LocalStoreError as e:
                logger.error(f"Guest {write.operation} could not be saved locally.", exc_info=True)
                return write.result(WriteStatus.FAILED, e)
            return write.result(WriteStatus.SAVED_LOCALLY)

        if state in (SessionState.OFFLINE, SessionState.SYNCING, SessionState.MIGRATING):
            self._pending.append(write)
            return write.result(WriteStatus.QUEUED)

        if state == SessionState.SYNCED:
            self._pending.append(write)
            if self._draining:
                return write.result(WriteStatus.QUEUED)
            await self._drain()
            if write in self._pending and write.last_error is None:
                return write.result(WriteStatus.QUEUED)
            if write in self._pending or isinstance(write.last_error, ConflictError):
                return write.result(WriteStatus.FAILED)
            write.attempts += 1
            return write.result(WriteStatus.COMMITTED)

        raise ValueError(f"Unhandled session state: {state}")

    # ===== Remote write builders =====

    def _record_write(self, operation: str, record: AttendanceRecord) -> PendingWrite:
        user_id = self._user_id

        async def send():
            keys, where = record_conflict_target(record)
            stored = await self._remote.upsert_row(ATTENDANCE_LOGS, record.to_row(user_id), keys, where)
            if not stored:
                return
            try:
                acknowledged = AttendanceRecord.model_validate(stored)
            except PydanticValidationError as e:
                logger.warning(f"Server row for record {record.id} is unreadable; keeping the local copy: {e}")
                return
            self._ledger.acknowledge_record(acknowledged)

        def reapply():
            self._ledger.upsert_record(
                record.subject_id, record.date, record.status,
                lecture_slot_id=record.lecture_slot_id,
                hours_logged=record.hours_logged,
                duty_requested=record.duty_requested,
                duty_approved=record.duty_approved,
                duty_reason=record.duty_reason,
                record_id=record.id,
            )
        return PendingWrite(operation, send, reapply, [record.id])

    def _subject_write(self, operation: str, subject: Subject) -> PendingWrite:
        user_id = self._user_id

        async def send():
            await self._remote.upsert_row(SUBJECTS, subject.to_row(user_id), ("id",))

        return PendingWrite(operation, send, lambda: self._ledger.put_subject(subject), [subject.id])

    def _settings_write(self, settings: UserSettings) -> PendingWrite:
        user_id = self._user_id

        async def send():
            await self._remote.upsert_row(USER_SETTINGS, settings.to_row(user_id), ("user_id",))
            try:
                await self._local.save_settings(settings)
            except LocalStoreError:
                logger.warning("Settings could not be cached locally.", exc_info=True)

        return PendingWrite("update_settings", send, lambda: self._ledger.replace_settings(settings))

    # ===== Optimistic intents =====

    async def mark_attendance(self,
                              subject_id: Union[UUID, str],
                              day: DayLike,
                              status: Union[AttendanceStatus, str],
                              lecture_slot_id: Union[UUID, str, None] = None,
                              hours_logged: Optional[int] = None) -> WriteResult:
        record = self._ledger.upsert_record(
            subject_id, day, status, lecture_slot_id=lecture_slot_id, hours_logged=hours_logged
        )
        return await self._persist(self._record_write("mark_attendance", record))

    async def request_duty_leave(self, subject_id, day: DayLike, reason: str, lecture_slot_id=None) -> WriteResult:
        record = self._ledger.request_duty_leave(subject_id, day, reason, lecture_slot_id)
        return await self._persist(self._record_write("request_duty_leave", record))

    async def approve_duty_leave(self, subject_id, day: DayLike, lecture_slot_id=None) -> WriteResult:
        record = self._ledger.approve_duty_leave(subject_id, day, lecture_slot_id)
        return await self._persist(self._record_write("approve_duty_leave", record))

    async def cancel_duty_request(self, subject_id, day: DayLike, lecture_slot_id=None) -> WriteResult:
        record = self._ledger.cancel_duty_request(subject_id, day, lecture_slot_id)
        return await self._persist(self._record_write("cancel_duty_request", record))

    async def add_subject(self, name: str, **fields) -> WriteResult:
        subject = self._ledger.add_subject(name, **fields)
        return await self._persist(self._subject_write("add_subject", subject))

    async def update_subject(self, subject_id: Union[UUID, str], **changes) -> WriteResult:
        subject = self._ledger.update_subject(subject_id, **changes)
        return await self._persist(self._subject_write("update_subject", subject))

    async def delete_subject(self, subject_id: Union[UUID, str]) -> WriteResult:
        """Removes the subject locally at once; the remote cascade is scheduled as one pending write."""
        cascade: CascadeResult = self._ledger.delete_subject(subject_id)
        user_id = self._user_id

        async def send():
            await self._remote.delete_rows(ATTENDANCE_LOGS, cascade.attendance_record_ids, user_id)
            await self._remote.delete_rows(LECTURE_SLOTS, cascade.lecture_slot_ids, user_id)
            await self._remote.delete_rows(SUBJECTS, [cascade.subject_id], user_id)

        def reapply():
            if self._ledger.get_subject(cascade.subject_id) is not None:
                self._ledger.delete_subject(cascade.subject_id)

        ids = [cascade.subject_id, *cascade.lecture_slot_ids, *cascade.attendance_record_ids]
        return await self._persist(PendingWrite("delete_subject", send, reapply, ids))

    async def set_lecture_slots(self, subject_id: Union[UUID, str], slots: Iterable[Union[LectureSlot, dict]]) -> WriteResult:
        changes: SlotChanges = self._ledger.set_lecture_slots(subject_id, slots)
        kept = [*changes.created, *changes.updated]
        sid = self._ledger.get_subject(subject_id).id
        user_id = self._user_id

        async def send():
            await self._remote.delete_rows(ATTENDANCE_LOGS, changes.removed_record_ids, user_id)
            await self._remote.delete_rows(LECTURE_SLOTS, changes.deleted, user_id)
            for slot in kept:
                await self._remote.upsert_row(LECTURE_SLOTS, slot.to_row(user_id), ("id",))

        return await self._persist(
            PendingWrite("set_lecture_slots", send, lambda: self._ledger.set_lecture_slots(sid, kept), [s.id for s in kept])
        )

    async def update_settings(self, **changes) -> WriteResult:
        settings = self._ledger.update_settings(**changes)
        return await self._persist(self._settings_write(settings))

    # ===== Real-time merge =====

    async def handle_change(self, event: ChangeEvent):
        """
        Merges a remote change by re-fetching the affected table and replacing
        that slice of the ledger, then re-applies writes the server has not
        confirmed yet.
        """
        if self._user_id is None or event.user_id != self._user_id:
            return
        if self._state in (SessionState.SYNCING, SessionState.MIGRATING):
            logger.debug(f"Ignoring {event.table} change during {self._state.value}; the pull covers it.")
            return

        try:
            if event.table == SUBJECTS:
                self._ledger.replace_subjects(await self._timed(self._fetch_table(SUBJECTS, Subject)))
            elif event.table == LECTURE_SLOTS:
                self._ledger.replace_lecture_slots(await self._timed(self._fetch_table(LECTURE_SLOTS, LectureSlot)))
            elif event.table == ATTENDANCE_LOGS:
                self._ledger.replace_records(await self._timed(self._fetch_table(ATTENDANCE_LOGS, AttendanceRecord)))
            elif event.table == USER_SETTINGS:
                row = await self._timed(self._remote.fetch_settings(self._user_id))
                if row:
                    self._ledger.replace_settings(UserSettings.model_validate(row))
            else:
                logger.debug(f"Ignoring change on unknown table '{event.table}'.")
                return
        except (ServiceError, asyncio.TimeoutError, PydanticValidationError):
            logger.warning(f"Could not merge remote {event.event_type} on {event.table}.", exc_info=True)
            return

        self._reapply_pending()

    async def connect_realtime(self) -> bool:
        if self._user_id is None:
            return False
        if self.realtime_connected:
            return True
        try:
            self._subscription = await self._remote.subscribe(self._user_id, self.handle_change)
        except ServiceError:
            logger.warning("Real-time subscription could not be established.", exc_info=True)
            self._subscription = None
            return False
        return True

    async def disconnect_realtime(self):
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception:
            logger.warning("Error while closing the real-time subscription.", exc_info=True)

    async def ensure_realtime(self) -> bool:
        """Re-establishes a dropped subscription for a signed-in user."""
        if self._user_id is None or self.realtime_connected:
            return self.realtime_connected
        if self._subscription is not None:
            logger.info("Real-time subscription dropped; reconnecting.")
            await self.disconnect_realtime()
        return await self.connect_realtime()

    # ===== Import / export =====

    def export_json(self) -> Dict[str, Any]:
        return transfer.export_json(self._ledger.snapshot())

    def export_csv(self) -> Optional[str]:
        return transfer.export_csv(self._ledger.snapshot())

    async def import_json(self, document: Union[str, bytes, Dict[str, Any]]) -> WriteResult:
        """
        Imports an export document. A guest ledger is replaced by it; for a
        signed-in user it is merged into the account the same way guest data
        is migrated, followed by a fresh pull.

        Raises:
            ImportFailed: if the document cannot be read.
        """
        snapshot = transfer.import_json(document)

        if self._user_id is None:
            self._ledger.load(snapshot)
            return await self._persist(PendingWrite("import_json", _noop))

        try:
            await self._migration.migrate(snapshot, self._user_id)
        except MigrationPartialFailure as e:
            return WriteResult(status=WriteStatus.FAILED, operation="import_json", attempts=1,
                               error_kind=e.kind, error_message=str(e))
        sync = await self.initial_pull()
        if not sync.ok:
            return WriteResult(status=WriteStatus.FAILED, operation="import_json", attempts=1,
                               error_kind=sync.error_kind, error_message=sync.error_message)
        return WriteResult(status=WriteStatus.COMMITTED, operation="import_json", attempts=1)


async def _noop():
    return None
