"""Watches the draft mutation stream for approvals."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .events import emit_stream_event
from .lifecycle import is_approval_edge
from .storage import EVENT_MODIFY, DraftStore, MutationEvent
from .work_queue import STAGE_SUMMARIZE, WorkItem, WorkQueue


LOGGER = logging.getLogger(__name__)

DEFAULT_CURSOR = "change_detector"

StreamEvent = Union[MutationEvent, Mapping[str, Any]]


def summarize_dedup_key(draft_id: str, version: Any) -> str:
    return f"summarize:{draft_id}:{version}"


_IMAGE_KEY_ALIASES = {
    "courseId": "course_id",
    "lectureId": "lecture_id",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}


def _image(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, Mapping):
        return None
    return {_IMAGE_KEY_ALIASES.get(key, key): item for key, item in value.items()}


def _coerce(event: StreamEvent) -> MutationEvent:
    """Accept store mutations, plain mappings and stream records with ``OldImage``/``NewImage``."""

    if isinstance(event, MutationEvent):
        return event
    record = event.get("dynamodb")
    if not isinstance(record, Mapping):
        record = event
    old_image = _image(record.get("old_image", record.get("OldImage")))
    new_image = _image(record.get("new_image", record.get("NewImage")))
    draft_id = event.get("draft_id") or (new_image or old_image or {}).get("id") or ""
    return MutationEvent(
        seq=int(event.get("seq") or record.get("SequenceNumber") or 0),
        draft_id=str(draft_id),
        event_type=str(event.get("event_type") or event.get("eventName") or ""),
        old_image=old_image,
        new_image=new_image,
    )


class ChangeDetector:
    """Queue summarization exactly at the ``-> approved`` edge of a draft.

    Creation and removal events are ignored. A redelivered modification resolves to
    the same ``summarize:<id>:<version>`` work item and is therefore harmless.
    """

    def __init__(
        self,
        store: DraftStore,
        queue: WorkQueue,
        *,
        cursor_name: str = DEFAULT_CURSOR,
    ) -> None:
        self._store = store
        self._queue = queue
        self._cursor_name = cursor_name

    def handle(self, events: Iterable[StreamEvent]) -> List[WorkItem]:
        queued: List[WorkItem] = []
        for raw in events:
            event = _coerce(raw)
            if event.event_type != EVENT_MODIFY:
                emit_stream_event(
                    "ignored",
                    payload={"seq": event.seq, "event_type": event.event_type, "draft_id": event.draft_id},
                )
                continue
            if not is_approval_edge(event.old_image, event.new_image):
                emit_stream_event(
                    "no edge",
                    payload={"seq": event.seq, "draft_id": event.draft_id},
                )
                continue

            image = event.new_image or {}
            draft_id = str(image.get("id") or event.draft_id)
            item = self._queue.enqueue(
                STAGE_SUMMARIZE,
                summarize_dedup_key(draft_id, image.get("version")),
                {
                    "id": draft_id,
                    "course_id": image.get("course_id"),
                    "lecture_id": image.get("lecture_id"),
                    "title": image.get("title") or "",
                    "content": image.get("content") or "",
                },
            )
            emit_stream_event(
                "approval edge",
                payload={
                    "seq": event.seq,
                    "draft_id": draft_id,
                    "work_item": item.id,
                    "duplicate": item.duplicate,
                },
                level=logging.INFO,
            )
            if not item.duplicate:
                queued.append(item)
        return queued

    def poll(self, limit: Optional[int] = None) -> List[WorkItem]:
        """Consume unseen mutations from the store and advance the cursor."""

        position = self._store.get_cursor(self._cursor_name)
        events = self._store.iter_mutations(position, limit=limit)
        if not events:
            return []
        queued = self.handle(events)
        self._store.advance_cursor(self._cursor_name, events[-1].seq)
        LOGGER.debug(
            "Change detector consumed %s event(s) up to seq=%s; queued %s",
            len(events),
            events[-1].seq,
            len(queued),
        )
        return queued


__all__ = ["ChangeDetector", "DEFAULT_CURSOR", "StreamEvent", "summarize_dedup_key"]
