"""SQLite-backed data store for the email-to-task pipeline.

Holds inbound messages, work items, suggestions, tasks, and per-user settings
overrides in one database so that a work item's terminal transition and the
suggestions/tasks it produced commit in a single transaction.

Work item status changes are conditional updates (``... WHERE status = ?``).
A claim either moves a row from ``pending`` to ``processing`` or affects zero
rows, so two drains sharing the database never process the same item.
"""

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from magpie.schemas.email import InboundMessage
from magpie.schemas.queue import ErrorKind, QueueStats, WorkItem, WorkItemStatus
from magpie.schemas.tasks import Suggestion, SuggestionStatus, Task, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=30)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    user_id         TEXT NOT NULL,
    message_id      TEXT NOT NULL,
    received_at     TEXT NOT NULL,
    message_json    TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (user_id, message_id)
);

CREATE TABLE IF NOT EXISTS work_items (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    user_id         TEXT NOT NULL,
    message_id      TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    error_message   TEXT,
    error_kind      TEXT,
    retry_count     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    claimed_at      TEXT,
    processed_at    TEXT,
    UNIQUE (user_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items (user_id, status, seq);

CREATE TABLE IF NOT EXISTS suggestions (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    work_item_id    TEXT,
    message_id      TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    confidence      REAL NOT NULL,
    task_id         TEXT,
    created_at      TEXT NOT NULL,
    suggestion_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_suggestions_status ON suggestions (user_id, status);

CREATE TABLE IF NOT EXISTS tasks (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    category        TEXT NOT NULL,
    ai_generated    INTEGER NOT NULL DEFAULT 0,
    scheduled       INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    task_json       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks (user_id, status);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id         TEXT PRIMARY KEY,
    overrides_json  TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
"""

_UPSERT_MESSAGE = """
INSERT INTO messages (user_id, message_id, received_at, message_json, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT (user_id, message_id) DO UPDATE SET
    received_at = excluded.received_at,
    message_json = excluded.message_json,
    updated_at = excluded.updated_at
"""

_INSERT_WORK_ITEM = """
INSERT OR IGNORE INTO work_items (id, user_id, message_id, status, created_at)
VALUES (?, ?, ?, 'pending', ?)
"""

_SELECT_WORK_ITEM = "SELECT * FROM work_items WHERE id = ?"
_SELECT_OLDEST_PENDING = """
SELECT id FROM work_items WHERE user_id = ? AND status = 'pending' ORDER BY seq ASC LIMIT 1
"""
_CLAIM = """
UPDATE work_items SET status = 'processing', claimed_at = ?
WHERE id = ? AND status = 'pending'
"""
_RECLAIM_STALE = """
UPDATE work_items
SET status = 'failed', error_message = ?, error_kind = 'transient', processed_at = ?
WHERE user_id = ? AND status = 'processing' AND (claimed_at IS NULL OR claimed_at < ?)
"""
_FAIL = """
UPDATE work_items SET status = 'failed', error_message = ?, error_kind = ?, processed_at = ?
WHERE id = ? AND status = 'processing'
"""
_COMPLETE = """
UPDATE work_items SET status = 'completed', error_message = NULL, error_kind = NULL, processed_at = ?
WHERE id = ? AND status = 'processing'
"""
_RESET_FAILED = """
UPDATE work_items
SET status = 'pending', retry_count = retry_count + 1, error_message = NULL, error_kind = NULL
WHERE user_id = ? AND status = 'failed' AND retry_count < ?
  AND (error_kind IS NULL OR error_kind != 'fatal')
"""

_INSERT_SUGGESTION = """
INSERT INTO suggestions
    (id, user_id, work_item_id, message_id, status, confidence, task_id, created_at, suggestion_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
_UPDATE_SUGGESTION = """
UPDATE suggestions SET status = ?, task_id = ?, suggestion_json = ? WHERE id = ? AND status = ?
"""

_INSERT_TASK = """
INSERT INTO tasks (id, user_id, status, category, ai_generated, scheduled, created_at, task_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""
_UPDATE_TASK = "UPDATE tasks SET status = ?, scheduled = ?, task_json = ? WHERE id = ?"


def _now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def _row_to_work_item(row: sqlite3.Row) -> WorkItem:
    return WorkItem(
        id=row["id"],
        user_id=row["user_id"],
        message_id=row["message_id"],
        status=WorkItemStatus(row["status"]),
        error_message=row["error_message"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        retry_count=row["retry_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
        claimed_at=datetime.fromisoformat(row["claimed_at"]) if row["claimed_at"] else None,
        processed_at=(
            datetime.fromisoformat(row["processed_at"]) if row["processed_at"] else None
        ),
    )


class PipelineStore:
    """SQLite store for messages, work items, suggestions, tasks, and settings.

    Usage::

        with PipelineStore("/path/to/pipeline.db") as store:
            store.upsert_message(user_id, message)
            item = store.enqueue_work_item(user_id, message.id)
            claimed = store.claim_next_pending(user_id)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._migrate()
        self._conn.commit()

    def _migrate(self) -> None:
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(work_items)")}
        if "claimed_at" not in columns:
            self._conn.execute("ALTER TABLE work_items ADD COLUMN claimed_at TEXT")

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "PipelineStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --- Messages ---

    def upsert_message(self, user_id: str, message: InboundMessage) -> None:
        """Insert or refresh a message by its provider id (natural key)."""
        with self._conn:
            self._conn.execute(
                _UPSERT_MESSAGE,
                (
                    user_id,
                    message.id,
                    message.received_at.isoformat(),
                    message.model_dump_json(),
                    _now().isoformat(),
                ),
            )

    def get_message(self, user_id: str, message_id: str) -> InboundMessage | None:
        row = self._conn.execute(
            "SELECT message_json FROM messages WHERE user_id = ? AND message_id = ?",
            (user_id, message_id),
        ).fetchone()
        if row is None:
            return None
        return InboundMessage.model_validate_json(row["message_json"])

    # --- Work items ---

    def enqueue_work_item(self, user_id: str, message_id: str) -> WorkItem | None:
        """Create a pending work item. Returns None if one already exists."""
        item_id = new_id()
        with self._conn:
            cursor = self._conn.execute(
                _INSERT_WORK_ITEM, (item_id, user_id, message_id, _now().isoformat())
            )
        if cursor.rowcount == 0:
            return None
        return self.get_work_item(item_id)

    def get_work_item(self, item_id: str) -> WorkItem | None:
        row = self._conn.execute(_SELECT_WORK_ITEM, (item_id,)).fetchone()
        if row is None:
            return None
        return _row_to_work_item(row)

    def find_work_item(self, user_id: str, message_id: str) -> WorkItem | None:
        row = self._conn.execute(
            "SELECT * FROM work_items WHERE user_id = ? AND message_id = ?",
            (user_id, message_id),
        ).fetchone()
        return _row_to_work_item(row) if row else None

    def list_work_items(
        self,
        user_id: str,
        *,
        status: WorkItemStatus | None = None,
        limit: int = 100,
    ) -> list[WorkItem]:
        """List work items in creation order."""
        if status is None:
            rows = self._conn.execute(
                "SELECT * FROM work_items WHERE user_id = ? ORDER BY seq ASC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM work_items WHERE user_id = ? AND status = ? ORDER BY seq ASC LIMIT ?",
                (user_id, status.value, limit),
            ).fetchall()
        return [_row_to_work_item(r) for r in rows]

    def claim(self, item_id: str) -> bool:
        """Atomically move one item from pending to processing, stamping the claim time."""
        with self._conn:
            cursor = self._conn.execute(_CLAIM, (_now().isoformat(), item_id))
        return cursor.rowcount == 1

    def claim_next_pending(self, user_id: str) -> WorkItem | None:
        """Claim the oldest pending item for a user, or None if there is none.

        A lost race (another drain claimed the candidate first) moves on to
        the next candidate.
        """
        while True:
            row = self._conn.execute(_SELECT_OLDEST_PENDING, (user_id,)).fetchone()
            if row is None:
                return None
            if self.claim(row["id"]):
                return self.get_work_item(row["id"])
            logger.debug("Lost claim on work item %s, trying next", row["id"])

    def mark_failed(self, item_id: str, error_message: str, kind: ErrorKind) -> WorkItem:
        """Transition a processing item to failed.

        Raises:
            ValueError: If the error message is empty or the item is not processing.
        """
        if not error_message or not error_message.strip():
            raise ValueError("A failed work item requires an error message")
        with self._conn:
            cursor = self._conn.execute(
                _FAIL, (error_message, kind.value, _now().isoformat(), item_id)
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Cannot fail work item {item_id}: not processing")
        logger.info("Work item %s failed (%s): %s", item_id, kind.value, error_message)
        return self.get_work_item(item_id)

    def complete_work_item(
        self,
        item_id: str,
        *,
        suggestions: list[Suggestion] = (),
        tasks: list[Task] = (),
    ) -> WorkItem:
        """Persist an item's suggestions and tasks and mark it completed, atomically.

        Raises:
            ValueError: If the item is not processing (nothing is written).
        """
        now = _now().isoformat()
        with self._conn:
            for task in tasks:
                self._insert_task(task)
            for suggestion in suggestions:
                self._insert_suggestion(suggestion)
            cursor = self._conn.execute(_COMPLETE, (now, item_id))
            if cursor.rowcount == 0:
                raise ValueError(f"Cannot complete work item {item_id}: not processing")
        return self.get_work_item(item_id)

    def reset_failed(self, user_id: str, max_retries: int) -> int:
        """Move eligible failed items back to pending, bumping retry_count.

        Items that already used ``max_retries`` retries, or failed fatally,
        stay failed.
        """
        with self._conn:
            cursor = self._conn.execute(_RESET_FAILED, (user_id, max_retries))
        return cursor.rowcount

    def reclaim_stale(
        self,
        user_id: str,
        older_than: timedelta = DEFAULT_STALE_AFTER,
        *,
        now: datetime | None = None,
    ) -> int:
        """Fail items stuck in processing whose claim is older than *older_than*.

        A drain that died mid-item (or could not record its failure) leaves the
        row in ``processing``. Marking it ``failed`` (transient) hands it back
        to ``reset_failed`` and the usual retry ceiling.
        """
        now = now or _now()
        cutoff = (now - older_than).isoformat()
        message = f"Abandoned while processing (claim older than {older_than})"
        with self._conn:
            cursor = self._conn.execute(
                _RECLAIM_STALE, (message, now.isoformat(), user_id, cutoff)
            )
        if cursor.rowcount:
            logger.warning("Reclaimed %d stale work item(s) for %s", cursor.rowcount, user_id)
        return cursor.rowcount

    # --- Suggestions ---

    def _insert_suggestion(self, suggestion: Suggestion) -> None:
        self._conn.execute(
            _INSERT_SUGGESTION,
            (
                suggestion.id,
                suggestion.user_id,
                suggestion.work_item_id,
                suggestion.message_id,
                suggestion.status.value,
                suggestion.confidence,
                suggestion.task_id,
                suggestion.created_at.isoformat(),
                suggestion.model_dump_json(),
            ),
        )

    def add_suggestion(self, suggestion: Suggestion) -> Suggestion:
        with self._conn:
            self._insert_suggestion(suggestion)
        return suggestion

    def get_suggestion(self, suggestion_id: str) -> Suggestion | None:
        row = self._conn.execute(
            "SELECT suggestion_json FROM suggestions WHERE id = ?", (suggestion_id,)
        ).fetchone()
        if row is None:
            return None
        return Suggestion.model_validate_json(row["suggestion_json"])

    def list_suggestions(
        self,
        user_id: str,
        *,
        status: SuggestionStatus | None = None,
        limit: int = 50,
    ) -> list[Suggestion]:
        """List suggestions, newest first."""
        if status is None:
            rows = self._conn.execute(
                "SELECT suggestion_json FROM suggestions WHERE user_id = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT suggestion_json FROM suggestions WHERE user_id = ? AND status = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (user_id, status.value, limit),
            ).fetchall()
        return [Suggestion.model_validate_json(r["suggestion_json"]) for r in rows]

    def set_suggestion_status(
        self,
        suggestion_id: str,
        status: SuggestionStatus,
        *,
        task: Task | None = None,
    ) -> Suggestion:
        """Move a pending suggestion to *status*, optionally inserting its task.

        The task insert and the status change commit together.

        Raises:
            ValueError: If the suggestion doesn't exist or isn't pending.
        """
        suggestion = self.get_suggestion(suggestion_id)
        if suggestion is None:
            raise ValueError(f"Suggestion not found: {suggestion_id}")
        if suggestion.status != SuggestionStatus.PENDING:
            raise ValueError(
                f"Cannot mark suggestion {suggestion_id} {status.value}: "
                f"current status is {suggestion.status.value}"
            )

        updated = suggestion.model_copy(
            update={
                "status": status,
                "task_id": task.id if task else suggestion.task_id,
                "updated_at": _now(),
            }
        )
        with self._conn:
            if task is not None:
                self._insert_task(task)
            cursor = self._conn.execute(
                _UPDATE_SUGGESTION,
                (
                    status.value,
                    updated.task_id,
                    updated.model_dump_json(),
                    suggestion_id,
                    SuggestionStatus.PENDING.value,
                ),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Suggestion {suggestion_id} changed concurrently")
        return updated

    # --- Tasks ---

    def _insert_task(self, task: Task) -> None:
        self._conn.execute(
            _INSERT_TASK,
            (
                task.id,
                task.user_id,
                task.status.value,
                task.category.value,
                int(task.ai_generated),
                int(task.scheduled_start is not None),
                task.created_at.isoformat(),
                task.model_dump_json(),
            ),
        )

    def get_task(self, task_id: str) -> Task | None:
        row = self._conn.execute(
            "SELECT task_json FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None
        return Task.model_validate_json(row["task_json"])

    def list_tasks(
        self,
        user_id: str,
        *,
        status: TaskStatus | None = None,
        limit: int = 100,
    ) -> list[Task]:
        if status is None:
            rows = self._conn.execute(
                "SELECT task_json FROM tasks WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT task_json FROM tasks WHERE user_id = ? AND status = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (user_id, status.value, limit),
            ).fetchall()
        return [Task.model_validate_json(r["task_json"]) for r in rows]

    def list_scheduled_tasks(self, user_id: str) -> list[Task]:
        """Open tasks that currently hold a scheduled slot."""
        rows = self._conn.execute(
            "SELECT task_json FROM tasks WHERE user_id = ? AND scheduled = 1 "
            "AND status IN ('pending', 'in_progress')",
            (user_id,),
        ).fetchall()
        return [Task.model_validate_json(r["task_json"]) for r in rows]

    def complete_task(self, task_id: str, *, actual_duration: int | None = None) -> Task:
        """Mark a task completed, recording how long it actually took.

        Raises:
            ValueError: If the task doesn't exist.
        """
        task = self.get_task(task_id)
        if task is None:
            raise ValueError(f"Task not found: {task_id}")
        updated = task.model_copy(
            update={
                "status": TaskStatus.COMPLETED,
                "actual_duration": actual_duration,
                "completed_at": _now(),
            }
        )
        with self._conn:
            self._conn.execute(
                _UPDATE_TASK,
                (
                    updated.status.value,
                    int(updated.scheduled_start is not None),
                    updated.model_dump_json(),
                    task_id,
                ),
            )
        return updated

    def average_completion_time(
        self,
        user_id: str,
        category: str,
        estimated_duration: int,
        *,
        sample: int = 10,
    ) -> float | None:
        """Average actual duration of completed tasks similar to the given one.

        Similar means same category with an estimate within 20% of the given one.
        """
        low, high = estimated_duration * 0.8, estimated_duration * 1.2
        durations: list[int] = []
        for task in self.list_tasks(user_id, status=TaskStatus.COMPLETED, limit=500):
            if task.category.value != category or task.actual_duration is None:
                continue
            if low <= task.estimated_duration <= high:
                durations.append(task.actual_duration)
            if len(durations) >= sample:
                break
        if not durations:
            return None
        return sum(durations) / len(durations)

    # --- Settings ---

    def get_settings_overrides(self, user_id: str) -> dict[str, Any]:
        row = self._conn.execute(
            "SELECT overrides_json FROM user_settings WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            return {}
        return json.loads(row["overrides_json"])

    def save_settings_overrides(self, user_id: str, overrides: dict[str, Any]) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO user_settings (user_id, overrides_json, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT (user_id) DO UPDATE SET "
                "overrides_json = excluded.overrides_json, updated_at = excluded.updated_at",
                (user_id, json.dumps(overrides), _now().isoformat()),
            )

    # --- Stats ---

    def stats(self, user_id: str) -> QueueStats:
        queue = {
            row[0]: row[1]
            for row in self._conn.execute(
                "SELECT status, COUNT(*) FROM work_items WHERE user_id = ? GROUP BY status",
                (user_id,),
            )
        }
        suggestions = {
            row[0]: row[1]
            for row in self._conn.execute(
                "SELECT status, COUNT(*) FROM suggestions WHERE user_id = ? GROUP BY status",
                (user_id,),
            )
        }
        ai_tasks = self._conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE user_id = ? AND ai_generated = 1", (user_id,)
        ).fetchone()[0]
        return QueueStats(queue=queue, suggestions=suggestions, ai_tasks=ai_tasks)
