import asyncio
import functools
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Union
from uuid import UUID

import asyncpg

from ..models.sync_models import ChangeEvent
from ..services.errors import ConflictError, RemoteUnavailable

logger = logging.getLogger(__name__)

SUBJECTS = "subjects"
LECTURE_SLOTS = "lecture_slots"
ATTENDANCE_LOGS = "attendance_logs"
USER_SETTINGS = "user_settings"

# Writable columns per table. Anything else in a row map is dropped before it reaches SQL.
TABLE_COLUMNS: Dict[str, tuple] = {
    SUBJECTS: (
        "id", "user_id", "name", "days_of_week", "required_attendance",
        "initial_classes_held", "initial_classes_attended", "classes_held", "classes_attended",
        "start_month", "end_month", "created_at", "updated_at",
    ),
    LECTURE_SLOTS: (
        "id", "user_id", "subject_id", "day_of_week", "start_time", "duration_hours",
        "created_at", "updated_at",
    ),
    ATTENDANCE_LOGS: (
        "id", "user_id", "subject_id", "lecture_slot_id", "date", "status", "hours_logged",
        "duty_requested", "duty_approved", "duty_reason", "created_at", "updated_at",
    ),
    USER_SETTINGS: (
        "user_id", "default_required_attendance", "include_duty_leaves", "show_warning_at",
        "show_critical_at", "auto_mark_weekends", "notifications_enabled", "reminder_time", "updated_at",
    ),
}

ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class BatchWrite(NamedTuple):
    """One statement of a transactional batch."""
    action: str  # "insert" or "upsert"
    table: str
    row: Dict[str, Any]
    conflict_keys: Sequence[str] = ()
    conflict_where: Optional[str] = None


def _remote_errors(func):
    """Surfaces driver and network failures as RemoteUnavailable (unique violations as ConflictError)."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Remote row conflict in {func.__name__}: {e}") from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise RemoteUnavailable(f"Remote store error in {func.__name__}: {e}") from e
    return wrapper


def _check_table(table: str) -> tuple:
    columns = TABLE_COLUMNS.get(table)
    if columns is None:
        raise ValueError(f"Unknown table: {table}")
    return columns


def _clean(table: str, row: Dict[str, Any]) -> Dict[str, Any]:
    columns = _check_table(table)
    return {
        key: (value.value if isinstance(value, Enum) else value)
        for key, value in row.items() if key in columns
    }


def _build_insert(table: str, row: Dict[str, Any]):
    columns = list(row)
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
    return query, [row[c] for c in columns]


def _build_upsert(table: str, row: Dict[str, Any], conflict_keys: Sequence[str], conflict_where: Optional[str]):
    query, values = _build_insert(table, row)
    immutable = {"id", "created_at", *conflict_keys}
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in row if c not in immutable)
    target = f"({', '.join(conflict_keys)})"
    if conflict_where:
        target += f" WHERE {conflict_where}"
    action = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
    return f"{query} ON CONFLICT {target} {action} RETURNING *;", values


class RealtimeSubscription:
    """
    A LISTEN registration on a connection held out of the pool for as long
    as the subscription lives. Notifications for other users are dropped;
    coroutine callbacks run as tasks owned by the subscription.
    """

    def __init__(self, pool: asyncpg.Pool, connection: asyncpg.Connection, channel: str,
                 user_id: UUID, callback: ChangeCallback):
        self._pool = pool
        self._connection = connection
        self._channel = channel
        self._user_id = user_id
        self._callback = callback
        self._listener = self.on_notification
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def is_alive(self) -> bool:
        return not self._closed and not self._connection.is_closed()

    def on_notification(self, conn, pid, channel, payload):
        if self._closed:
            return
        try:
            data = json.loads(payload)
            event = ChangeEvent(
                event_type=data.get("event_type", "UPDATE"),
                table=data["table"],
                row=data.get("row") or {},
                user_id=data.get("user_id"),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Ignoring malformed notification on '{channel}': {payload!r}")
            return
        if event.user_id != self._user_id:
            return
        result = self._callback(event)
        if asyncio.iscoroutine(result):
            task = asyncio.get_running_loop().create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Real-time change handler failed on '{self._channel}': {error!r}", exc_info=error)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        try:
            if not self._connection.is_closed():
                await self._connection.remove_listener(self._channel, self._listener)
        finally:
            await self._pool.release(self._connection)
        logger.info(f"Real-time subscription on '{self._channel}' closed.")


class RemoteStore:
    """
    asyncpg access to the durable per-user tables.
    Every query is scoped to a user id; row maps use the snake_case column names.
    """

    def __init__(self, pool: asyncpg.Pool, channel: str = "attend75_changes"):
        self._pool = pool
        self._channel = channel

    # ===== Reads =====

    @_remote_errors
    async def fetch_rows(self, table: str, user_id: UUID) -> List[Dict[str, Any]]:
        """All rows of a table that belong to the user, oldest first."""
        _check_table(table)
        order = " ORDER BY created_at" if "created_at" in TABLE_COLUMNS[table] else ""
        query = f"SELECT * FROM {table} WHERE user_id = $1{order};"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, user_id)
            return [dict(record) for record in records]

    @_remote_errors
    async def fetch_settings(self, user_id: UUID) -> Optional[Dict[str, Any]]:
        query = f"SELECT * FROM {USER_SETTINGS} WHERE user_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, user_id)
            return dict(record) if record else None

    # ===== Writes =====

    @_remote_errors
    async def insert_rows(self, table: str, rows: Iterable[Dict[str, Any]]):
        rows = [_clean(table, row) for row in rows]
        if not rows:
            return
        query, _ = _build_insert(table, rows[0])
        columns = list(rows[0])
        async with self._pool.acquire() as connection:
            await connection.executemany(query + ";", [[row.get(c) for c in columns] for row in rows])

    @_remote_errors
    async def upsert_row(self,
                         table: str,
                         row: Dict[str, Any],
                         conflict_keys: Sequence[str],
                         conflict_where: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Inserts the row or updates the one that collides on conflict_keys.
        Returns the stored row as the server sees it (its id may differ from ours).
        """
        query, values = _build_upsert(table, _clean(table, row), conflict_keys, conflict_where)
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, *values)
            return dict(record) if record else None

    @_remote_errors
    async def update_row(self, table: str, row: Dict[str, Any], key: str = "id") -> str:
        row = _clean(table, row)
        if key not in row or "user_id" not in row:
            raise ValueError(f"update_row needs '{key}' and 'user_id' in the row.")
        columns = [c for c in row if c not in (key, "user_id", "created_at")]
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=3))
        query = f"UPDATE {table} SET {assignments} WHERE {key} = $1 AND user_id = $2;"
        async with self._pool.acquire() as connection:
            return await connection.execute(query, row[key], row["user_id"], *[row[c] for c in columns])

    @_remote_errors
    async def delete_rows(self, table: str, ids: Iterable[UUID], user_id: UUID) -> str:
        ids = list(ids)
        _check_table(table)
        if not ids:
            return "DELETE 0"
        query = f"DELETE FROM {table} WHERE id = ANY($1::uuid[]) AND user_id = $2;"
        async with self._pool.acquire() as connection:
            return await connection.execute(query, ids, user_id)

    @_remote_errors
    async def apply_batch(self, writes: Sequence[BatchWrite]) -> int:
        """Runs every write in one transaction; nothing is kept if any of them fails."""
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                for write in writes:
                    row = _clean(write.table, write.row)
                    if write.action == "upsert":
                        query, values = _build_upsert(write.table, row, write.conflict_keys, write.conflict_where)
                    else:
                        query, values = _build_insert(write.table, row)
                    await connection.execute(query, *values)
        logger.info(f"Applied batch of {len(writes)} writes in one transaction.")
        return len(writes)

    # ===== Real-time channel =====

    @_remote_errors
    async def subscribe(self, user_id: UUID, callback: ChangeCallback) -> RealtimeSubscription:
        """
        Listens for row-change notifications and forwards the ones that belong
        to user_id. Coroutine callbacks are scheduled on the running loop.
        """
        connection = await self._pool.acquire()
        subscription = RealtimeSubscription(self._pool, connection, self._channel, user_id, callback)
        try:
            await connection.add_listener(self._channel, subscription.on_notification)
        except BaseException:
            await self._pool.release(connection)
            raise
        logger.info(f"Listening on '{self._channel}' for user {user_id}.")
        return subscription
