"""Durable hand-off queue connecting the pipeline stages."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..errors import TransientIOError, ValidationError
from .database import EventEmitter, SQLiteRepository, utcnow_iso
from .events import emit_stage_event


LOGGER = logging.getLogger(__name__)


STAGE_STORE = "store"
STAGE_SUMMARIZE = "summarize"
STAGE_GENERATE_QUIZ = "generate_quiz"
STAGES = (STAGE_STORE, STAGE_SUMMARIZE, STAGE_GENERATE_QUIZ)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUSES = (STATUS_PENDING, STATUS_RUNNING, STATUS_SUCCEEDED, STATUS_FAILED)

_CLAIM_ATTEMPTS = 5

StageHandler = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


@dataclass
class WorkItem:
    id: str
    stage: str
    dedup_key: str
    payload: Dict[str, Any]
    status: str = STATUS_PENDING
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    duplicate: bool = field(default=False, compare=False)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WorkItem":
        return cls(
            id=row["id"],
            stage=row["stage"],
            dedup_key=row["dedup_key"],
            payload=json.loads(row["payload"]),
            status=row["status"],
            attempts=int(row["attempts"]),
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage,
            "dedup_key": self.dedup_key,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class WorkQueue(SQLiteRepository):
    """Work items persisted in SQLite and deduplicated by ``dedup_key``."""

    def __init__(self, database_file, *, event_emitter: Optional[EventEmitter] = None) -> None:
        super().__init__(database_file, event_emitter=event_emitter)

    def _select(self, connection: sqlite3.Connection, clause: str, params: Iterable[Any]) -> Optional[WorkItem]:
        cursor = self._execute(
            connection,
            f"SELECT * FROM work_items WHERE {clause}",
            tuple(params),
            action="work_items.lookup",
            table="work_items",
        )
        row = cursor.fetchone()
        return WorkItem.from_row(row) if row else None

    def get(self, item_id: str) -> Optional[WorkItem]:
        with self._connection() as connection:
            return self._select(connection, "id = ?", (item_id,))

    def enqueue(self, stage: str, dedup_key: str, payload: Mapping[str, Any]) -> WorkItem:
        """Add a work item unless one with the same ``dedup_key`` already exists.

        A redelivered trigger therefore resolves to the original item, which is returned
        with ``duplicate`` set.
        """

        if stage not in STAGES:
            raise ValidationError(f"Unknown pipeline stage '{stage}'")
        if not dedup_key:
            raise ValidationError("Work items require a deduplication key")

        with self._track_db_event(
            "enqueue_work_item", table="work_items", stage=stage, dedup_key=dedup_key
        ) as event:
            now = utcnow_iso()
            item = WorkItem(
                id=uuid.uuid4().hex,
                stage=stage,
                dedup_key=dedup_key,
                payload=dict(payload),
                created_at=now,
                updated_at=now,
            )
            with self._connection() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO work_items(id, stage, dedup_key, payload, status, attempts, "
                    "created_at, updated_at) VALUES (?, ?, ?, ?, ?, 0, ?, ?) "
                    "ON CONFLICT(dedup_key) DO NOTHING",
                    (
                        item.id,
                        stage,
                        dedup_key,
                        json.dumps(item.payload),
                        STATUS_PENDING,
                        now,
                        now,
                    ),
                    action="work_items.insert",
                    table="work_items",
                )
                if cursor.rowcount == 1:
                    event["result"] = "queued"
                    LOGGER.debug("Queued %s work item %s (%s)", stage, item.id, dedup_key)
                    return item
                existing = self._select(connection, "dedup_key = ?", (dedup_key,))
            if existing is None:
                raise TransientIOError(
                    f"Work item {dedup_key} conflicted on insert but could not be read back"
                )
            event["result"] = "duplicate"
            LOGGER.info("Work item for %s already queued; ignoring redelivery", dedup_key)
            existing.duplicate = True
            return existing

    def claim_next(self, stages: Optional[Iterable[str]] = None) -> Optional[WorkItem]:
        """Atomically move the oldest pending item to ``running`` and return it."""

        wanted = list(stages or [])
        clause = "status = ?"
        params: List[Any] = [STATUS_PENDING]
        if wanted:
            clause += f" AND stage IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)

        for _ in range(_CLAIM_ATTEMPTS):
            with self._connection() as connection:
                cursor = self._execute(
                    connection,
                    f"SELECT * FROM work_items WHERE {clause} ORDER BY created_at, rowid LIMIT 1",
                    params,
                    action="work_items.next_pending",
                    table="work_items",
                )
                row = cursor.fetchone()
                if row is None:
                    return None
                item = WorkItem.from_row(row)
                now = utcnow_iso()
                claimed = self._execute(
                    connection,
                    "UPDATE work_items SET status = ?, attempts = attempts + 1, updated_at = ? "
                    "WHERE id = ? AND status = ?",
                    (STATUS_RUNNING, now, item.id, STATUS_PENDING),
                    action="work_items.claim",
                    table="work_items",
                )
                if claimed.rowcount == 1:
                    item.status = STATUS_RUNNING
                    item.attempts += 1
                    item.updated_at = now
                    return item
        return None

    def _finish(
        self,
        item_id: str,
        status: str,
        *,
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._connection() as connection:
            self._execute(
                connection,
                "UPDATE work_items SET status = ?, result = ?, error = ?, updated_at = ? WHERE id = ?",
                (
                    status,
                    json.dumps(dict(result), default=str) if result is not None else None,
                    error,
                    utcnow_iso(),
                    item_id,
                ),
                action=f"work_items.{status}",
                table="work_items",
            )

    def complete(self, item_id: str, result: Optional[Mapping[str, Any]] = None) -> None:
        self._finish(item_id, STATUS_SUCCEEDED, result=result)

    def fail(self, item_id: str, error: str) -> None:
        self._finish(item_id, STATUS_FAILED, error=error)

    def requeue_failed(self, stage: Optional[str] = None, *, include_running: bool = False) -> int:
        """Return failed items (optionally stranded running ones) to ``pending``."""

        statuses = [STATUS_FAILED]
        if include_running:
            statuses.append(STATUS_RUNNING)
        clause = f"status IN ({', '.join('?' for _ in statuses)})"
        params: List[Any] = list(statuses)
        if stage:
            clause += " AND stage = ?"
            params.append(stage)
        with self._track_db_event("requeue_work_items", table="work_items", stage=stage) as event:
            with self._connection() as connection:
                cursor = self._execute(
                    connection,
                    f"UPDATE work_items SET status = ?, error = NULL, updated_at = ? WHERE {clause}",
                    [STATUS_PENDING, utcnow_iso(), *params],
                    action="work_items.requeue",
                    table="work_items",
                )
                count = max(cursor.rowcount, 0)
            event["rowcount"] = count
            if count:
                LOGGER.info("Requeued %s work item(s)", count)
            return count

    def list_items(
        self,
        *,
        status: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> List[WorkItem]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            if status not in STATUSES:
                raise ValidationError(f"Unknown work item status '{status}'")
            clauses.append("status = ?")
            params.append(status)
        if stage:
            clauses.append("stage = ?")
            params.append(stage)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                f"SELECT * FROM work_items{where} ORDER BY created_at, rowid",
                params,
                action="work_items.list",
                table="work_items",
            )
            return [WorkItem.from_row(row) for row in cursor.fetchall()]

    def pending_count(self) -> int:
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                "SELECT COUNT(*) FROM work_items WHERE status = ?",
                (STATUS_PENDING,),
                action="work_items.count_pending",
                table="work_items",
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0


class WorkDispatcher:
    """Route claimed work items to stage handlers and record their outcome."""

    def __init__(
        self,
        queue: WorkQueue,
        handlers: Optional[Mapping[str, StageHandler]] = None,
        *,
        max_workers: int = 2,
    ) -> None:
        self._queue = queue
        self._handlers: Dict[str, StageHandler] = dict(handlers or {})
        self._max_workers = max(1, int(max_workers))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    def register(self, stage: str, handler: StageHandler) -> None:
        if stage not in STAGES:
            raise ValidationError(f"Unknown pipeline stage '{stage}'")
        self._handlers[stage] = handler

    def process_next(self) -> Optional[WorkItem]:
        """Run one pending item. Handler failures are recorded, never raised."""

        if not self._handlers:
            return None
        item = self._queue.claim_next(self._handlers.keys())
        if item is None:
            return None

        handler = self._handlers[item.stage]
        correlation = {"work_item": item.id, "dedup_key": item.dedup_key}
        start = time.perf_counter()
        try:
            result = handler(dict(item.payload)) or {}
        except Exception as error:  # noqa: BLE001 - outcome is persisted on the item
            duration_ms = (time.perf_counter() - start) * 1000.0
            message = f"{error.__class__.__name__}: {error}"
            LOGGER.exception("Stage %s failed for work item %s", item.stage, item.id)
            self._queue.fail(item.id, message)
            item.status = STATUS_FAILED
            item.error = message
            emit_stage_event(
                item.stage,
                "failed",
                payload={"error": message, "attempts": item.attempts},
                correlation=correlation,
                duration_ms=duration_ms,
                level=logging.ERROR,
            )
            return item

        duration_ms = (time.perf_counter() - start) * 1000.0
        self._queue.complete(item.id, result)
        item.status = STATUS_SUCCEEDED
        item.result = dict(result)
        emit_stage_event(
            item.stage,
            str(result.get("outcome") or "succeeded"),
            payload={key: value for key, value in result.items() if key != "outcome"},
            correlation=correlation,
            duration_ms=duration_ms,
        )
        return item

    def run_until_idle(self, max_items: Optional[int] = None) -> int:
        """Process items until none are pending; return how many ran."""

        processed = 0
        while max_items is None or processed < max_items:
            if self.process_next() is None:
                break
            processed += 1
        return processed

    def submit(self, task: Optional[Callable[[], Any]] = None) -> Future:
        """Start a background drain (or *task*) and return without waiting for it."""

        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="lecture-pipeline-worker",
                )
            executor = self._executor
        return executor.submit(task or self.run_until_idle)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)


__all__ = [
    "STAGES",
    "STAGE_GENERATE_QUIZ",
    "STAGE_STORE",
    "STAGE_SUMMARIZE",
    "STATUSES",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "STATUS_RUNNING",
    "STATUS_SUCCEEDED",
    "StageHandler",
    "WorkDispatcher",
    "WorkItem",
    "WorkQueue",
]
