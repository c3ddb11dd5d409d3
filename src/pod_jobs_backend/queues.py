"""
Work queues consumed by the external PDF workers.

Three independent queues exist, one per job type. Items are ordered by
priority tier first and insertion order second, so every queue is FIFO within
a tier; only synthesis producers use tiers other than ``normal``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple
from uuid import uuid4

from .database import SQLiteStore, _deserialize_datetime, _serialize_datetime
from .errors import InvalidInputError, QueueError
from .models import QUEUE_PRIORITY, JobType, Priority, QueueItem
from .utils import utcnow

logger = logging.getLogger(__name__)

VALIDATION_QUEUE = "pdf-validation"
CONVERSION_QUEUE = "pdf-conversion"
SYNTHESIS_QUEUE = "pdf-synthesis"

QUEUE_NAMES = (VALIDATION_QUEUE, CONVERSION_QUEUE, SYNTHESIS_QUEUE)

# Queue and task name for each job type, as the workers subscribe to them.
JOB_TYPE_ROUTES: Dict[JobType, Tuple[str, str]] = {
    JobType.VALIDATE: (VALIDATION_QUEUE, "validate-pdf"),
    JobType.CONVERT: (CONVERSION_QUEUE, "convert-pdf"),
    JobType.SYNTHESIZE: (SYNTHESIS_QUEUE, "synthesize-pdf"),
}

DEFAULT_PRIORITY = QUEUE_PRIORITY[Priority.NORMAL]

_WAITING = "waiting"
_CLAIMED = "claimed"
_DONE = "done"


class QueueDispatcher(Protocol):
    def enqueue(self, queue_name: str, task_name: str, payload: Dict[str, Any], priority: Optional[int] = None) -> str:
        """Add a work item and return its id; raise QueueError on failure."""
        ...

    def has_open_item(self, job_id: str) -> bool:
        """Whether a waiting or claimed item exists for the job."""
        ...

    def mark_done(self, job_id: str) -> int:
        """Close the items of a job that reached a final status; return how many."""
        ...

    def purge_done(self, older_than: datetime) -> int:
        """Delete closed items older than the cutoff; return how many."""
        ...


def _check_queue_name(queue_name: str) -> None:
    if queue_name not in QUEUE_NAMES:
        raise InvalidInputError("INVALID_QUEUE", f"Unknown queue: {queue_name}", {"queue": queue_name})


class SQLiteQueue(SQLiteStore):
    """
    Durable priority queue shared by the API and worker processes.

    Workers pull with :meth:`claim`; claiming is a conditional update so two
    workers polling the same queue can never receive the same item.
    """

    schema = (
        """
        CREATE TABLE IF NOT EXISTS queue_items (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT UNIQUE NOT NULL,
            queue_name TEXT NOT NULL,
            task_name TEXT NOT NULL,
            job_id TEXT,
            priority INTEGER NOT NULL,
            payload TEXT NOT NULL,
            state TEXT NOT NULL,
            enqueued_at TEXT NOT NULL,
            claimed_at TEXT,
            done_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_queue_items_order ON queue_items(queue_name, state, priority, seq)",
        "CREATE INDEX IF NOT EXISTS idx_queue_items_job ON queue_items(job_id)",
    )

    def enqueue(self, queue_name: str, task_name: str, payload: Dict[str, Any], priority: Optional[int] = None) -> str:
        _check_queue_name(queue_name)
        item_id = str(uuid4())
        effective_priority = DEFAULT_PRIORITY if priority is None else priority

        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO queue_items (id, queue_name, task_name, job_id, priority, payload, state, enqueued_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item_id,
                        queue_name,
                        task_name,
                        payload.get("jobId"),
                        effective_priority,
                        json.dumps(payload),
                        _WAITING,
                        _serialize_datetime(utcnow()),
                    ),
                )
        except sqlite3.Error as exc:
            raise QueueError("ENQUEUE_FAILED", f"Could not enqueue on {queue_name}: {exc}") from exc

        logger.info(f"Enqueued {task_name} item {item_id} on {queue_name} (priority {effective_priority})")
        return item_id

    def claim(self, queue_name: str) -> Optional[QueueItem]:
        """
        Hand the next waiting item of a queue to the calling worker.

        Returns:
            The claimed item, or None if the queue is empty
        """
        _check_queue_name(queue_name)

        while True:
            with self._get_connection() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM queue_items
                    WHERE queue_name = ? AND state = ?
                    ORDER BY priority ASC, seq ASC
                    LIMIT 1
                    """,
                    (queue_name, _WAITING),
                ).fetchone()
                if row is None:
                    return None

                cursor = conn.execute(
                    "UPDATE queue_items SET state = ?, claimed_at = ? WHERE seq = ? AND state = ?",
                    (_CLAIMED, _serialize_datetime(utcnow()), row["seq"], _WAITING),
                )
                if cursor.rowcount == 0:
                    # Another worker claimed it between SELECT and UPDATE.
                    continue

            logger.info(f"Claimed {row['task_name']} item {row['id']} from {queue_name}")
            return QueueItem(
                id=row["id"],
                queue_name=row["queue_name"],
                task_name=row["task_name"],
                job_id=row["job_id"],
                priority=row["priority"],
                payload=json.loads(row["payload"]),
                enqueued_at=_deserialize_datetime(row["enqueued_at"]),
            )

    def has_open_item(self, job_id: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM queue_items WHERE job_id = ? AND state IN (?, ?) LIMIT 1",
                (job_id, _WAITING, _CLAIMED),
            ).fetchone()
            return row is not None

    def mark_done(self, job_id: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE queue_items SET state = ?, done_at = ? WHERE job_id = ? AND state IN (?, ?)",
                (_DONE, _serialize_datetime(utcnow()), job_id, _WAITING, _CLAIMED),
            )
            return cursor.rowcount

    def purge_done(self, older_than: datetime) -> int:
        """Delete items closed before ``older_than``; return how many were removed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM queue_items WHERE state = ? AND done_at < ?",
                (_DONE, _serialize_datetime(older_than)),
            )
            removed = cursor.rowcount
        if removed:
            logger.info(f"Purged {removed} finished queue items")
        return removed

    def pending_counts(self) -> Dict[str, int]:
        """Number of waiting items per queue (every queue is listed)."""
        counts = {name: 0 for name in QUEUE_NAMES}
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT queue_name, COUNT(*) AS count FROM queue_items WHERE state = ? GROUP BY queue_name",
                (_WAITING,),
            ).fetchall()
        for row in rows:
            counts[row["queue_name"]] = row["count"]
        return counts
