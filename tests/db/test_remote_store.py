import pytest
import pytest_asyncio
import asyncio
import json
import uuid
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import asyncpg

from attend75.engine.db.remote_store import (
    ATTENDANCE_LOGS, LECTURE_SLOTS, SUBJECTS, USER_SETTINGS, BatchWrite, RealtimeSubscription, RemoteStore
)
from attend75.engine.services.errors import ConflictError, RemoteUnavailable
from attend75.engine.models.ledger_models import AttendanceRecord, AttendanceStatus, Subject

USER_ID = uuid.uuid4()
CHANNEL = "attend75_changes"

# --- Test Fixtures ---

@pytest_asyncio.fixture
async def store_instance():
    """A RemoteStore over a mocked asyncpg pool; every acquire() yields the same connection."""
    connection = AsyncMock()
    connection.transaction = MagicMock()
    connection.is_closed = MagicMock(return_value=False)
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = connection
    return RemoteStore(pool, channel=CHANNEL), pool, connection


@pytest_asyncio.fixture
async def listening_store():
    """A RemoteStore whose pool hands out a connection for LISTEN."""
    connection = AsyncMock()
    connection.is_closed = MagicMock(return_value=False)
    pool = MagicMock()
    pool.acquire = AsyncMock(return_value=connection)
    pool.release = AsyncMock()
    return RemoteStore(pool, channel=CHANNEL), pool, connection


def notification(table=SUBJECTS, user_id=USER_ID, event_type="INSERT"):
    return json.dumps({"event_type": event_type, "table": table, "user_id": str(user_id), "row": {"id": str(uuid.uuid4())}})

# --- Test Scenarios ---


@pytest.mark.asyncio
class TestReads:

    async def test_fetch_rows_is_scoped_to_the_user(self, store_instance):
        store, _, connection = store_instance
        connection.fetch.return_value = [{"id": 1, "name": "Maths"}]

        rows = await store.fetch_rows(SUBJECTS, USER_ID)

        assert rows == [{"id": 1, "name": "Maths"}]
        query, user_id = connection.fetch.call_args.args
        assert query == "SELECT * FROM subjects WHERE user_id = $1 ORDER BY created_at;"
        assert user_id == USER_ID

    async def test_settings_have_no_creation_order(self, store_instance):
        store, _, connection = store_instance
        connection.fetch.return_value = []

        await store.fetch_rows(USER_SETTINGS, USER_ID)

        assert connection.fetch.call_args.args[0] == "SELECT * FROM user_settings WHERE user_id = $1;"

    async def test_fetch_settings_missing_row(self, store_instance):
        store, _, connection = store_instance
        connection.fetchrow.return_value = None

        assert await store.fetch_settings(USER_ID) is None

    async def test_unknown_table_is_rejected(self, store_instance):
        store, _, _ = store_instance

        with pytest.raises(ValueError, match="Unknown table"):
            await store.fetch_rows("users", USER_ID)

    async def test_network_failure_is_remote_unavailable(self, store_instance):
        store, _, connection = store_instance
        connection.fetch.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(RemoteUnavailable) as exc_info:
            await store.fetch_rows(SUBJECTS, USER_ID)
        assert exc_info.value.kind == "remote_unavailable"


@pytest.mark.asyncio
class TestWrites:

    async def test_upsert_legacy_record(self, store_instance):
        store, _, connection = store_instance
        record = AttendanceRecord(subject_id=uuid.uuid4(), date=date(2024, 1, 1), status=AttendanceStatus.DUTY_LEAVE)
        connection.fetchrow.return_value = {"id": record.id}
        row = {**record.to_row(USER_ID), "bogus": "dropped"}

        stored = await store.upsert_row(ATTENDANCE_LOGS, row, ("subject_id", "date"), "lecture_slot_id IS NULL")

        assert stored == {"id": record.id}
        query, *values = connection.fetchrow.call_args.args
        assert query.startswith("INSERT INTO attendance_logs (id, subject_id, lecture_slot_id, date, status,")
        assert "ON CONFLICT (subject_id, date) WHERE lecture_slot_id IS NULL DO UPDATE SET" in query
        assert "status = EXCLUDED.status" in query
        assert "id = EXCLUDED.id" not in query
        assert "created_at = EXCLUDED" not in query
        assert "subject_id = EXCLUDED" not in query
        assert query.endswith("RETURNING *;")
        assert "duty-leave" in values
        assert "dropped" not in values

    async def test_upsert_without_updatable_columns(self, store_instance):
        store, _, connection = store_instance
        connection.fetchrow.return_value = None

        assert await store.upsert_row(USER_SETTINGS, {"user_id": USER_ID}, ("user_id",)) is None
        assert "DO NOTHING" in connection.fetchrow.call_args.args[0]

    async def test_unique_violation_is_conflict(self, store_instance):
        store, _, connection = store_instance
        connection.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key value")

        with pytest.raises(ConflictError):
            await store.upsert_row(SUBJECTS, Subject(name="Maths").to_row(USER_ID), ("id",))

    async def test_insert_rows(self, store_instance):
        store, _, connection = store_instance
        subjects = [Subject(name="Maths").to_row(USER_ID), Subject(name="History").to_row(USER_ID)]

        await store.insert_rows(SUBJECTS, subjects)

        query, args = connection.executemany.call_args.args
        assert query.startswith("INSERT INTO subjects (")
        assert query.endswith(");")
        assert [a[1] for a in args] == ["Maths", "History"]

    async def test_update_row(self, store_instance):
        store, _, connection = store_instance
        subject = Subject(name="Maths")
        connection.execute.return_value = "UPDATE 1"

        status = await store.update_row(SUBJECTS, {"id": subject.id, "user_id": USER_ID, "name": "Algebra"})

        assert status == "UPDATE 1"
        query, *args = connection.execute.call_args.args
        assert query == "UPDATE subjects SET name = $3 WHERE id = $1 AND user_id = $2;"
        assert args == [subject.id, USER_ID, "Algebra"]

    async def test_delete_rows(self, store_instance):
        store, _, connection = store_instance
        ids = [uuid.uuid4(), uuid.uuid4()]
        connection.execute.return_value = "DELETE 2"

        assert await store.delete_rows(LECTURE_SLOTS, ids, USER_ID) == "DELETE 2"
        query, sent_ids, user_id = connection.execute.call_args.args
        assert query == "DELETE FROM lecture_slots WHERE id = ANY($1::uuid[]) AND user_id = $2;"
        assert sent_ids == ids
        assert user_id == USER_ID

    async def test_delete_nothing_skips_the_database(self, store_instance):
        store, pool, _ = store_instance

        assert await store.delete_rows(SUBJECTS, [], USER_ID) == "DELETE 0"
        pool.acquire.assert_not_called()

    async def test_apply_batch_runs_in_one_transaction(self, store_instance):
        store, _, connection = store_instance
        subject = Subject(name="Maths")
        record = AttendanceRecord(subject_id=subject.id, date=date(2024, 1, 1), status="present")
        writes = [
            BatchWrite("insert", SUBJECTS, subject.to_row(USER_ID)),
            BatchWrite("upsert", ATTENDANCE_LOGS, record.to_row(USER_ID), ("subject_id", "date"), "lecture_slot_id IS NULL"),
        ]

        assert await store.apply_batch(writes) == 2

        connection.transaction.assert_called_once()
        connection.transaction.return_value.__aenter__.assert_awaited_once()
        queries = [c.args[0] for c in connection.execute.await_args_list]
        assert queries[0].startswith("INSERT INTO subjects")
        assert "ON CONFLICT" not in queries[0]
        assert "ON CONFLICT (subject_id, date) WHERE lecture_slot_id IS NULL" in queries[1]

    async def test_apply_batch_failure_is_remote_unavailable(self, store_instance):
        store, _, connection = store_instance
        connection.execute.side_effect = asyncpg.PostgresError("relation does not exist")

        with pytest.raises(RemoteUnavailable):
            await store.apply_batch([BatchWrite("insert", SUBJECTS, Subject(name="Maths").to_row(USER_ID))])


@pytest.mark.asyncio
class TestRealtime:

    async def test_notifications_for_the_user_reach_the_callback(self, listening_store):
        store, _, connection = listening_store
        callback = MagicMock(return_value=None)

        await store.subscribe(USER_ID, callback)
        channel, listener = connection.add_listener.call_args.args
        listener(connection, 1, CHANNEL, notification(table=ATTENDANCE_LOGS))

        assert channel == CHANNEL
        event = callback.call_args.args[0]
        assert event.table == ATTENDANCE_LOGS
        assert event.user_id == USER_ID
        assert event.event_type == "INSERT"

    async def test_other_users_and_malformed_payloads_are_dropped(self, listening_store):
        store, _, connection = listening_store
        callback = MagicMock(return_value=None)

        await store.subscribe(USER_ID, callback)
        listener = connection.add_listener.call_args.args[1]
        listener(connection, 1, CHANNEL, notification(user_id=uuid.uuid4()))
        listener(connection, 1, CHANNEL, "not json")
        listener(connection, 1, CHANNEL, json.dumps({"event_type": "INSERT"}))

        callback.assert_not_called()

    async def test_coroutine_callbacks_are_scheduled(self, listening_store):
        store, _, connection = listening_store
        callback = AsyncMock()

        await store.subscribe(USER_ID, callback)
        listener = connection.add_listener.call_args.args[1]
        listener(connection, 1, CHANNEL, notification())
        await asyncio.sleep(0)

        callback.assert_awaited_once()

    async def test_close_releases_the_connection(self, listening_store):
        store, pool, connection = listening_store

        subscription = await store.subscribe(USER_ID, MagicMock())
        assert isinstance(subscription, RealtimeSubscription)
        assert subscription.is_alive() is True

        await subscription.close()
        await subscription.close()

        assert subscription.is_alive() is False
        connection.remove_listener.assert_awaited_once()
        pool.release.assert_awaited_once_with(connection)

    async def test_failed_listen_returns_the_connection(self, listening_store):
        store, pool, connection = listening_store
        connection.add_listener.side_effect = ConnectionResetError("reset")

        with pytest.raises(RemoteUnavailable):
            await store.subscribe(USER_ID, MagicMock())
        pool.release.assert_awaited_once_with(connection)

    async def test_failing_coroutine_callback_is_logged(self, listening_store, caplog):
        store, _, connection = listening_store
        callback = AsyncMock(side_effect=RuntimeError("merge blew up"))

        await store.subscribe(USER_ID, callback)
        listener = connection.add_listener.call_args.args[1]
        listener(connection, 1, CHANNEL, notification())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        callback.assert_awaited_once()
        assert "Real-time change handler failed" in caplog.text
        assert "merge blew up" in caplog.text

    async def test_close_cancels_running_callbacks(self, listening_store):
        store, _, connection = listening_store
        started = asyncio.Event()
        cancelled = []

        async def slow_callback(event):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(event.table)
                raise

        subscription = await store.subscribe(USER_ID, slow_callback)
        listener = connection.add_listener.call_args.args[1]
        listener(connection, 1, CHANNEL, notification())
        await started.wait()

        await subscription.close()

        assert cancelled == [SUBJECTS]

    async def test_notifications_after_close_are_ignored(self, listening_store):
        store, _, connection = listening_store
        callback = MagicMock(return_value=None)

        subscription = await store.subscribe(USER_ID, callback)
        listener = connection.add_listener.call_args.args[1]
        await subscription.close()
        listener(connection, 1, CHANNEL, notification())

        callback.assert_not_called()
