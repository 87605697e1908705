from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from textwrap import dedent
from typing import Any, TypeVar

from pydantic import BaseModel

from tgclaw.models import Chat, Message, ScheduledTask, TaskRunLog
from tgclaw.scheduling import now_iso

GROUP_SYNC_SENTINEL = "__group_sync__"


class ThreadSafeConnection:
    """Thin wrapper around :class:`sqlite3.Connection` that serialises access
    with a :class:`threading.Lock`.

    All public methods that touch the underlying connection acquire the lock
    first, making it safe to share a single instance between the event loop
    and any helper threads (e.g. the CLI running a blocking command).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, sql: str, parameters: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, parameters)

    def executescript(self, sql_script: str) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executescript(sql_script)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Acquire lock, yield raw connection, commit on success / rollback on error.

        The lock is held for the entire transaction so that multiple
        statements execute atomically.
        """
        self._lock.acquire()
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


DbConnection = sqlite3.Connection | ThreadSafeConnection

ModelT = TypeVar("ModelT", bound=BaseModel)


def _rows_to(model: type[ModelT], rows: list[sqlite3.Row]) -> list[ModelT]:
    return [model(**row) for row in rows]


def init_db(db_path: Path) -> ThreadSafeConnection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(str(db_path), check_same_thread=False)
    raw.row_factory = sqlite3.Row
    db = ThreadSafeConnection(raw)

    db.executescript(
        dedent("""\
        CREATE TABLE IF NOT EXISTS chats (
            chat_id TEXT PRIMARY KEY,
            name TEXT,
            last_message_time TEXT
        );

        CREATE TABLE IF NOT EXISTS messages (
            id TEXT,
            chat_id TEXT,
            sender TEXT,
            sender_name TEXT,
            content TEXT,
            timestamp TEXT,
            is_from_me INTEGER,
            PRIMARY KEY (id, chat_id),
            FOREIGN KEY (chat_id) REFERENCES chats(chat_id)
        );

        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            group_folder TEXT NOT NULL,
            chat_id TEXT NOT NULL,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_value TEXT NOT NULL,
            context_mode TEXT DEFAULT 'isolated',
            next_run TEXT,
            last_run TEXT,
            last_result TEXT,
            status TEXT DEFAULT 'active',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS task_run_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL,
            status TEXT NOT NULL,
            result TEXT,
            error TEXT,
            FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
        );

        CREATE INDEX IF NOT EXISTS idx_timestamp ON messages(timestamp);
        CREATE INDEX IF NOT EXISTS idx_next_run ON scheduled_tasks(next_run);
        CREATE INDEX IF NOT EXISTS idx_status ON scheduled_tasks(status);
        CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);
    """)
    )

    db.commit()
    return db


# --- chats -----------------------------------------------------------------


def store_chat_metadata(
    db: DbConnection, chat_id: str, timestamp: str, name: str | None = None
) -> None:
    """Record that *chat_id* was active at *timestamp*.

    Called for every chat the bot sees, registered or not, so that the main
    group can discover chats worth registering.  No message content is stored.
    """
    if name:
        db.execute(
            dedent("""\
            INSERT INTO chats (chat_id, name, last_message_time) VALUES (?, ?, ?)
            ON CONFLICT(chat_id) DO UPDATE SET
                name = excluded.name,
                last_message_time = MAX(last_message_time, excluded.last_message_time)
        """),
            (chat_id, name, timestamp),
        )
    else:
        db.execute(
            dedent("""\
            INSERT INTO chats (chat_id, name, last_message_time) VALUES (?, ?, ?)
            ON CONFLICT(chat_id) DO UPDATE SET
                last_message_time = MAX(last_message_time, excluded.last_message_time)
        """),
            (chat_id, chat_id, timestamp),
        )
    db.commit()


def update_chat_name(db: DbConnection, chat_id: str, name: str) -> None:
    db.execute(
        dedent("""\
        INSERT INTO chats (chat_id, name, last_message_time) VALUES (?, ?, ?)
        ON CONFLICT(chat_id) DO UPDATE SET name = excluded.name
    """),
        (chat_id, name, now_iso()),
    )
    db.commit()


def get_all_chats(db: DbConnection) -> list[Chat]:
    rows = db.execute(
        dedent("""\
        SELECT chat_id, name, last_message_time FROM chats
        WHERE chat_id != ?
        ORDER BY last_message_time DESC
    """),
        (GROUP_SYNC_SENTINEL,),
    ).fetchall()
    return _rows_to(Chat, rows)


def get_last_group_sync(db: DbConnection) -> str | None:
    row = db.execute(
        "SELECT last_message_time FROM chats WHERE chat_id = ?",
        (GROUP_SYNC_SENTINEL,),
    ).fetchone()
    return row["last_message_time"] if row else None


def set_last_group_sync(db: DbConnection) -> None:
    db.execute(
        "INSERT OR REPLACE INTO chats (chat_id, name, last_message_time) VALUES (?, ?, ?)",
        (GROUP_SYNC_SENTINEL, GROUP_SYNC_SENTINEL, now_iso()),
    )
    db.commit()


# --- messages --------------------------------------------------------------


def store_message(db: DbConnection, msg: Message) -> None:
    db.execute(
        dedent("""\
        INSERT OR REPLACE INTO messages
            (id, chat_id, sender, sender_name, content, timestamp, is_from_me)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """),
        (
            msg.id,
            msg.chat_id,
            msg.sender,
            msg.sender_name,
            msg.content,
            msg.timestamp,
            int(msg.is_from_me),
        ),
    )
    db.commit()


def get_new_messages(
    db: DbConnection, chat_ids: list[str], since: str, reply_prefix: str
) -> list[Message]:
    """Messages newer than *since* in any of *chat_ids*, oldest first.

    Messages starting with *reply_prefix* are our own replies echoed back and
    are left out.
    """
    if not chat_ids:
        return []
    placeholders = ", ".join("?" for _ in chat_ids)
    rows = db.execute(
        dedent(f"""\
        SELECT * FROM messages
        WHERE timestamp > ? AND chat_id IN ({placeholders})
            AND substr(content, 1, ?) != ?
        ORDER BY timestamp
    """),
        (since, *chat_ids, len(reply_prefix), reply_prefix),
    ).fetchall()
    return _rows_to(Message, rows)


def get_messages_since(
    db: DbConnection, chat_id: str, since: str, reply_prefix: str
) -> list[Message]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM messages
        WHERE chat_id = ? AND timestamp > ? AND substr(content, 1, ?) != ?
        ORDER BY timestamp
    """),
        (chat_id, since, len(reply_prefix), reply_prefix),
    ).fetchall()
    return _rows_to(Message, rows)


# --- scheduled tasks -------------------------------------------------------


def create_task(
    db: DbConnection,
    *,
    task_id: str,
    group_folder: str,
    chat_id: str,
    prompt: str,
    schedule_type: str,
    schedule_value: str,
    next_run: str | None,
    context_mode: str = "isolated",
) -> None:
    db.execute(
        dedent("""\
        INSERT INTO scheduled_tasks
            (id, group_folder, chat_id, prompt, schedule_type, schedule_value,
             context_mode, next_run, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """),
        (
            task_id,
            group_folder,
            chat_id,
            prompt,
            schedule_type,
            schedule_value,
            context_mode,
            next_run,
            "active",
            now_iso(),
        ),
    )
    db.commit()


def get_task(db: DbConnection, task_id: str) -> ScheduledTask | None:
    row = db.execute(
        "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
    ).fetchone()
    return ScheduledTask(**row) if row else None


def get_tasks_for_group(db: DbConnection, group_folder: str) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC",
        (group_folder,),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def get_all_tasks(db: DbConnection) -> list[ScheduledTask]:
    rows = db.execute(
        "SELECT * FROM scheduled_tasks ORDER BY created_at DESC"
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task(db: DbConnection, task_id: str, **updates: object) -> None:
    fields = []
    values = []

    for key in ["prompt", "schedule_type", "schedule_value", "next_run", "status"]:
        if key in updates:
            fields.append(f"{key} = ?")
            values.append(updates[key])

    if not fields:
        return

    values.append(task_id)
    db.execute(f"UPDATE scheduled_tasks SET {', '.join(fields)} WHERE id = ?", values)
    db.commit()


def delete_task(db: DbConnection, task_id: str) -> None:
    # Run logs reference the task, so they go first.
    if isinstance(db, ThreadSafeConnection):
        with db.transaction() as conn:
            conn.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    else:
        db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        db.commit()


def get_due_tasks(db: DbConnection, now: str | None = None) -> list[ScheduledTask]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
        ORDER BY next_run
    """),
        (now or now_iso(),),
    ).fetchall()
    return _rows_to(ScheduledTask, rows)


def update_task_after_run(
    db: DbConnection,
    task_id: str,
    next_run: str | None,
    last_result: str,
    last_run: str | None = None,
) -> None:
    db.execute(
        dedent("""\
        UPDATE scheduled_tasks
        SET next_run = ?, last_run = ?, last_result = ?,
            status = CASE WHEN ? IS NULL THEN 'completed' ELSE status END
        WHERE id = ?
    """),
        (next_run, last_run or now_iso(), last_result, next_run, task_id),
    )
    db.commit()


def log_task_run(
    db: DbConnection,
    *,
    task_id: str,
    run_at: str,
    duration_ms: int,
    status: str,
    result: str | None = None,
    error: str | None = None,
) -> int:
    cursor = db.execute(
        dedent("""\
        INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
        VALUES (?, ?, ?, ?, ?, ?)
    """),
        (task_id, run_at, duration_ms, status, result, error),
    )
    db.commit()
    return cursor.lastrowid


def get_task_run_logs(
    db: DbConnection, task_id: str, limit: int = 10
) -> list[TaskRunLog]:
    rows = db.execute(
        dedent("""\
        SELECT * FROM task_run_logs
        WHERE task_id = ?
        ORDER BY run_at DESC, id DESC
        LIMIT ?
    """),
        (task_id, limit),
    ).fetchall()
    return _rows_to(TaskRunLog, rows)
