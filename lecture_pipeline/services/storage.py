"""Draft lecture persistence backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..config import DraftDefaults
from ..errors import ConflictError, NotFoundError, ValidationError
from .database import EventEmitter, SQLiteRepository, utcnow_iso
from .lifecycle import (
    DEFAULT_STATUS,
    ReviewStatus,
    parse_status,
    validate_rejection,
    validate_transition,
)


LOGGER = logging.getLogger(__name__)


_DRAFT_COLUMNS = (
    "id",
    "course_id",
    "lecture_id",
    "title",
    "content",
    "summary",
    "difficulty",
    "duration",
    "status",
    "file_name",
    "file_type",
    "version",
    "created_at",
    "updated_at",
)
_SELECT_DRAFT = f"SELECT {', '.join(_DRAFT_COLUMNS)} FROM drafts"

# Fields an upsert merges. ``summary`` is owned by the summarization stage.
_MERGED_TEXT_FIELDS = ("title", "content", "file_name", "file_type")

# Fields a narrow update or a review correction may touch.
EDITABLE_FIELDS = frozenset(
    {"title", "content", "summary", "difficulty", "duration", "file_name", "file_type"}
)

EVENT_INSERT = "INSERT"
EVENT_MODIFY = "MODIFY"
EVENT_REMOVE = "REMOVE"


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


@dataclass
class DraftRecord:
    id: str
    course_id: str
    lecture_id: str
    title: str
    content: str
    summary: str
    difficulty: str
    duration: str
    status: ReviewStatus
    file_name: str
    file_type: str
    version: int
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DraftRecord":
        values = {name: row[name] for name in _DRAFT_COLUMNS}
        values["status"] = parse_status(values["status"])
        values["version"] = int(values["version"])
        return cls(**values)

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> "DraftRecord":
        return cls.from_row(image)

    def to_image(self) -> Dict[str, Any]:
        """Return the record as a plain mapping, as written to the mutation stream."""

        image = asdict(self)
        image["status"] = self.status.value
        return image

    @property
    def composite_key(self) -> tuple[str, str]:
        return (self.course_id, self.lecture_id)


@dataclass
class DraftPayload:
    """A partial draft as produced by ingestion or any other writer."""

    course_id: str
    lecture_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    difficulty: Optional[str] = None
    duration: Optional[str] = None
    status: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None

    def __post_init__(self) -> None:
        self.course_id = str(self.course_id or "").strip()
        self.lecture_id = str(self.lecture_id or "").strip()
        if not self.course_id or not self.lecture_id:
            raise ValidationError("Both courseId and lectureId are required")
        if _has_value(self.status):
            self.status = parse_status(self.status).value

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DraftPayload":
        known = {name: mapping.get(name) for name in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class UpsertResult:
    previous: Optional[DraftRecord]
    current: DraftRecord
    operation: str

    @property
    def created(self) -> bool:
        return self.previous is None


@dataclass
class MutationEvent:
    seq: int
    draft_id: str
    event_type: str
    old_image: Optional[Dict[str, Any]]
    new_image: Optional[Dict[str, Any]]
    committed_at: str = field(default="")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MutationEvent":
        return cls(
            seq=int(row["seq"]),
            draft_id=row["draft_id"],
            event_type=row["event_type"],
            old_image=json.loads(row["old_image"]) if row["old_image"] else None,
            new_image=json.loads(row["new_image"]) if row["new_image"] else None,
            committed_at=row["committed_at"],
        )


class DraftStore(SQLiteRepository):
    """Durable store of draft lectures keyed by ``(course_id, lecture_id)``.

    Every committed write appends a before/after image to ``draft_mutations`` in the
    same transaction, which is what the change detector consumes.
    """

    def __init__(
        self,
        database_file,
        *,
        defaults: Optional[DraftDefaults] = None,
        max_attempts: int = 5,
        event_emitter: Optional[EventEmitter] = None,
    ) -> None:
        super().__init__(database_file, event_emitter=event_emitter)
        self._defaults = defaults or DraftDefaults()
        self._max_attempts = max(1, int(max_attempts))

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------
    def _select_by_key(
        self, connection: sqlite3.Connection, course_id: str, lecture_id: str
    ) -> Optional[DraftRecord]:
        cursor = self._execute(
            connection,
            f"{_SELECT_DRAFT} WHERE course_id = ? AND lecture_id = ?",
            (course_id, lecture_id),
            action="drafts.lookup_by_key",
            table="drafts",
        )
        row = cursor.fetchone()
        return DraftRecord.from_row(row) if row else None

    def _select_by_id(self, connection: sqlite3.Connection, draft_id: str) -> Optional[DraftRecord]:
        cursor = self._execute(
            connection,
            f"{_SELECT_DRAFT} WHERE id = ?",
            (draft_id,),
            action="drafts.get",
            table="drafts",
        )
        row = cursor.fetchone()
        return DraftRecord.from_row(row) if row else None

    def get(self, draft_id: str) -> Optional[DraftRecord]:
        LOGGER.debug("Fetching draft id=%s", draft_id)
        with self._track_db_event("get_draft", table="drafts", draft_id=draft_id) as event:
            with self._connection() as connection:
                record = self._select_by_id(connection, draft_id)
                event["found"] = record is not None
                return record

    def find_by_key(self, course_id: str, lecture_id: str) -> Optional[DraftRecord]:
        LOGGER.debug("Looking up draft course_id=%s lecture_id=%s", course_id, lecture_id)
        with self._track_db_event(
            "find_draft_by_key", table="drafts", course_id=course_id, lecture_id=lecture_id
        ) as event:
            with self._connection() as connection:
                record = self._select_by_key(connection, course_id, lecture_id)
                event["found"] = record is not None
                return record

    def list_drafts(
        self,
        *,
        course_id: Optional[str] = None,
        lecture_id: Optional[str] = None,
        status: Optional[ReviewStatus | str] = None,
    ) -> List[DraftRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if course_id:
            clauses.append("course_id = ?")
            params.append(course_id)
        if lecture_id:
            clauses.append("lecture_id = ?")
            params.append(lecture_id)
        if status is not None and status != "":
            clauses.append("status = ?")
            params.append(parse_status(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._track_db_event("list_drafts", table="drafts", filters=len(clauses)) as event:
            with self._connection() as connection:
                cursor = self._execute(
                    connection,
                    f"{_SELECT_DRAFT}{where} ORDER BY course_id, lecture_id",
                    params,
                    action="drafts.list",
                    table="drafts",
                )
                records = [DraftRecord.from_row(row) for row in cursor.fetchall()]
                event["rowcount"] = len(records)
                return records

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _merge(
        self,
        payload: DraftPayload,
        existing: Optional[DraftRecord],
        now: str,
    ) -> DraftRecord:
        def pick(name: str, default: str) -> str:
            incoming = getattr(payload, name)
            if _has_value(incoming):
                return str(incoming)
            if existing is not None and _has_value(getattr(existing, name)):
                return getattr(existing, name)
            return default

        if _has_value(payload.status):
            status = parse_status(payload.status)
        elif existing is not None:
            status = existing.status
        else:
            status = DEFAULT_STATUS
        if existing is not None:
            validate_transition(existing.status, status)

        text_fields = {name: pick(name, "") for name in _MERGED_TEXT_FIELDS}
        return DraftRecord(
            id=existing.id if existing is not None else uuid.uuid4().hex,
            course_id=payload.course_id,
            lecture_id=payload.lecture_id,
            summary=existing.summary if existing is not None else "",
            difficulty=pick("difficulty", self._defaults.difficulty),
            duration=pick("duration", self._defaults.duration),
            status=status,
            version=existing.version + 1 if existing is not None else 1,
            created_at=existing.created_at if existing is not None else now,
            updated_at=now,
            **text_fields,
        )

    def _insert(self, connection: sqlite3.Connection, record: DraftRecord) -> None:
        image = record.to_image()
        self._execute(
            connection,
            f"INSERT INTO drafts({', '.join(_DRAFT_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _DRAFT_COLUMNS)})",
            [image[name] for name in _DRAFT_COLUMNS],
            action="drafts.insert",
            table="drafts",
        )

    def _conditional_update(
        self,
        connection: sqlite3.Connection,
        record: DraftRecord,
        expected_version: int,
    ) -> bool:
        image = record.to_image()
        assigned = [name for name in _DRAFT_COLUMNS if name != "id"]
        cursor = self._execute(
            connection,
            "UPDATE drafts SET "
            + ", ".join(f"{name} = ?" for name in assigned)
            + " WHERE id = ? AND version = ?",
            [image[name] for name in assigned] + [record.id, expected_version],
            action="drafts.conditional_update",
            table="drafts",
        )
        return cursor.rowcount == 1

    def _append_mutation(
        self,
        connection: sqlite3.Connection,
        event_type: str,
        draft_id: str,
        old: Optional[DraftRecord],
        new: Optional[DraftRecord],
    ) -> None:
        self._execute(
            connection,
            "INSERT INTO draft_mutations(draft_id, event_type, old_image, new_image, committed_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                draft_id,
                event_type,
                json.dumps(old.to_image()) if old is not None else None,
                json.dumps(new.to_image()) if new is not None else None,
                utcnow_iso(),
            ),
            action="draft_mutations.append",
            table="draft_mutations",
        )

    def upsert(self, payload: DraftPayload | Mapping[str, Any]) -> UpsertResult:
        """Create or merge the draft identified by the payload's composite key.

        The lookup and the write are separated by a conditional check: an update only
        applies if the stored version is unchanged, and an insert is guarded by the
        unique composite key. A lost race re-reads and merges again.
        """

        if not isinstance(payload, DraftPayload):
            payload = DraftPayload.from_mapping(payload)

        with self._track_db_event(
            "upsert_draft",
            table="drafts",
            course_id=payload.course_id,
            lecture_id=payload.lecture_id,
        ) as event:
            for attempt in range(1, self._max_attempts + 1):
                with self._connection() as connection:
                    existing = self._select_by_key(connection, payload.course_id, payload.lecture_id)
                    merged = self._merge(payload, existing, utcnow_iso())
                    if existing is None:
                        try:
                            self._insert(connection, merged)
                        except sqlite3.IntegrityError:
                            LOGGER.debug(
                                "Concurrent insert for %s/%s detected (attempt %s)",
                                payload.course_id,
                                payload.lecture_id,
                                attempt,
                            )
                            continue
                        self._append_mutation(connection, EVENT_INSERT, merged.id, None, merged)
                        operation = "CREATE"
                    else:
                        if not self._conditional_update(connection, merged, existing.version):
                            LOGGER.debug(
                                "Version conflict for draft id=%s (attempt %s)",
                                existing.id,
                                attempt,
                            )
                            continue
                        self._append_mutation(connection, EVENT_MODIFY, merged.id, existing, merged)
                        operation = "UPDATE"
                event.update(
                    {"operation": operation, "draft_id": merged.id, "attempts": attempt}
                )
                LOGGER.info(
                    "%s draft %s/%s (id=%s, version=%s)",
                    "Created" if operation == "CREATE" else "Merged",
                    merged.course_id,
                    merged.lecture_id,
                    merged.id,
                    merged.version,
                )
                return UpsertResult(previous=existing, current=merged, operation=operation)

            raise ConflictError(
                f"Draft {payload.course_id}/{payload.lecture_id} kept changing during upsert; "
                f"gave up after {self._max_attempts} attempts"
            )

    def _apply_changes(
        self,
        *,
        locate,
        describe: str,
        changes: Mapping[str, Any],
        status: Optional[ReviewStatus] = None,
    ) -> DraftRecord:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        for attempt in range(1, self._max_attempts + 1):
            with self._connection() as connection:
                existing = locate(connection)
                if existing is None:
                    raise NotFoundError(f"Draft {describe} does not exist")
                new_status = existing.status if status is None else status
                validate_transition(existing.status, new_status)
                values = existing.to_image()
                values.update({key: "" if value is None else str(value) for key, value in changes.items()})
                values.update(
                    {
                        "status": new_status.value,
                        "version": existing.version + 1,
                        "updated_at": utcnow_iso(),
                    }
                )
                updated = DraftRecord.from_image(values)
                if not self._conditional_update(connection, updated, existing.version):
                    LOGGER.debug("Version conflict updating draft %s (attempt %s)", describe, attempt)
                    continue
                self._append_mutation(connection, EVENT_MODIFY, updated.id, existing, updated)
                return updated

        raise ConflictError(f"Draft {describe} kept changing; gave up after {self._max_attempts} attempts")

    def update_fields(self, course_id: str, lecture_id: str, **fields: Any) -> DraftRecord:
        """Update selected fields of an existing draft; never creates one."""

        with self._track_db_event(
            "update_draft_fields",
            table="drafts",
            course_id=course_id,
            lecture_id=lecture_id,
            fields=sorted(fields),
        ) as event:
            record = self._apply_changes(
                locate=lambda connection: self._select_by_key(connection, course_id, lecture_id),
                describe=f"{course_id}/{lecture_id}",
                changes=fields,
            )
            event["draft_id"] = record.id
            LOGGER.debug("Updated draft %s/%s fields=%s", course_id, lecture_id, sorted(fields))
            return record

    def set_status(
        self,
        draft_id: str,
        status: ReviewStatus | str,
        **corrections: Any,
    ) -> DraftRecord:
        """Apply a review decision (and optional corrections) to a draft."""

        target = parse_status(status, default=None)
        with self._track_db_event(
            "set_draft_status", table="drafts", draft_id=draft_id, status=target.value
        ):
            record = self._apply_changes(
                locate=lambda connection: self._select_by_id(connection, draft_id),
                describe=f"id={draft_id}",
                changes=corrections,
                status=target,
            )
            LOGGER.info("Draft id=%s status set to %s", draft_id, target.value)
            return record

    def delete(self, draft_id: str) -> DraftRecord:
        """Remove a draft that is still awaiting review (rejection)."""

        with self._track_db_event("delete_draft", table="drafts", draft_id=draft_id) as event:
            with self._connection() as connection:
                existing = self._select_by_id(connection, draft_id)
                if existing is None:
                    raise NotFoundError(f"Draft id={draft_id} does not exist")
                validate_rejection(existing.status)
                cursor = self._execute(
                    connection,
                    "DELETE FROM drafts WHERE id = ? AND version = ?",
                    (draft_id, existing.version),
                    action="drafts.delete",
                    table="drafts",
                )
                if cursor.rowcount != 1:
                    raise ConflictError(f"Draft id={draft_id} changed while being rejected")
                self._append_mutation(connection, EVENT_REMOVE, draft_id, existing, None)
                event["result"] = "deleted"
                LOGGER.info("Draft id=%s rejected and removed", draft_id)
                return existing

    # ------------------------------------------------------------------
    # Mutation stream
    # ------------------------------------------------------------------
    def iter_mutations(
        self,
        after_seq: int = 0,
        *,
        event_types: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[MutationEvent]:
        clauses = ["seq > ?"]
        params: List[Any] = [int(after_seq)]
        types = list(event_types or [])
        if types:
            clauses.append(f"event_type IN ({', '.join('?' for _ in types)})")
            params.extend(types)
        statement = (
            "SELECT seq, draft_id, event_type, old_image, new_image, committed_at "
            f"FROM draft_mutations WHERE {' AND '.join(clauses)} ORDER BY seq"
        )
        if limit is not None and limit >= 0:
            statement += " LIMIT ?"
            params.append(int(limit))
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                statement,
                params,
                action="draft_mutations.list",
                table="draft_mutations",
            )
            return [MutationEvent.from_row(row) for row in cursor.fetchall()]

    def last_mutation_seq(self) -> int:
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                "SELECT COALESCE(MAX(seq), 0) FROM draft_mutations",
                action="draft_mutations.max_seq",
                table="draft_mutations",
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0

    def get_cursor(self, name: str) -> int:
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                "SELECT position FROM stream_cursors WHERE name = ?",
                (name,),
                action="stream_cursors.get",
                table="stream_cursors",
            )
            row = cursor.fetchone()
            return int(row["position"]) if row else 0

    def advance_cursor(self, name: str, position: int) -> None:
        with self._connection() as connection:
            self._execute(
                connection,
                "INSERT INTO stream_cursors(name, position) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET position = MAX(position, excluded.position)",
                (name, int(position)),
                action="stream_cursors.advance",
                table="stream_cursors",
            )


__all__ = [
    "DraftPayload",
    "DraftRecord",
    "DraftStore",
    "EDITABLE_FIELDS",
    "EVENT_INSERT",
    "EVENT_MODIFY",
    "EVENT_REMOVE",
    "MutationEvent",
    "UpsertResult",
]
