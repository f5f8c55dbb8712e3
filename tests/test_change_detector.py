import pytest

from lecture_pipeline.services.change_detector import ChangeDetector, summarize_dedup_key
from lecture_pipeline.services.storage import EVENT_MODIFY, DraftStore
from lecture_pipeline.services.work_queue import STAGE_SUMMARIZE, WorkQueue


@pytest.fixture()
def components(temp_config):
    store = DraftStore(temp_config.database_file)
    queue = WorkQueue(temp_config.database_file)
    return store, queue, ChangeDetector(store, queue)


def test_approval_edge_queues_summarization_once(components) -> None:
    store, queue, detector = components
    draft = store.upsert(
        {"course_id": "CS101", "lecture_id": "L1", "title": "Intro", "content": "Body"}
    ).current
    approved = store.set_status(draft.id, "approved")

    queued = detector.poll()

    assert len(queued) == 1
    item = queued[0]
    assert item.stage == STAGE_SUMMARIZE
    assert item.dedup_key == summarize_dedup_key(draft.id, approved.version)
    assert item.payload == {
        "id": draft.id,
        "course_id": "CS101",
        "lecture_id": "L1",
        "title": "Intro",
        "content": "Body",
    }
    assert detector.poll() == []


def test_edits_after_approval_do_not_retrigger(components) -> None:
    store, queue, detector = components
    draft = store.upsert({"course_id": "CS101", "lecture_id": "L1"}).current
    store.set_status(draft.id, "approved")
    detector.poll()

    store.upsert({"course_id": "CS101", "lecture_id": "L1", "status": "approved", "title": "New"})
    store.update_fields("CS101", "L1", summary="written")

    assert detector.poll() == []
    assert len(queue.list_items(stage=STAGE_SUMMARIZE)) == 1


def test_drafts_created_approved_are_ignored(components) -> None:
    store, queue, detector = components
    store.upsert({"course_id": "CS101", "lecture_id": "L1", "status": "approved"})

    assert detector.poll() == []
    assert queue.list_items() == []


def test_removals_are_ignored(components) -> None:
    store, queue, detector = components
    draft = store.upsert({"course_id": "CS101", "lecture_id": "L1"}).current
    store.delete(draft.id)

    assert detector.poll() == []
    assert queue.list_items() == []


def test_redelivered_events_are_deduplicated(components) -> None:
    store, queue, detector = components
    draft = store.upsert({"course_id": "CS101", "lecture_id": "L1"}).current
    store.set_status(draft.id, "approved")
    events = store.iter_mutations(event_types=[EVENT_MODIFY])

    first = detector.handle(events)
    again = detector.handle(events)

    assert len(first) == 1
    assert again == []
    assert len(queue.list_items(stage=STAGE_SUMMARIZE)) == 1


def test_handle_accepts_plain_mappings(components) -> None:
    _, queue, detector = components
    event = {
        "seq": 7,
        "draft_id": "abc",
        "eventName": "MODIFY",
        "old_image": {"id": "abc", "status": "pending_review", "version": 1},
        "new_image": {
            "id": "abc",
            "course_id": "CS101",
            "lecture_id": "L1",
            "status": "approved",
            "version": 2,
        },
    }

    queued = detector.handle([event])

    assert [item.dedup_key for item in queued] == ["summarize:abc:2"]
    assert queue.get(queued[0].id).payload["title"] == ""


def test_handle_reads_stream_record_images(components) -> None:
    _, queue, detector = components
    record = {
        "eventName": "MODIFY",
        "dynamodb": {
            "SequenceNumber": "12",
            "OldImage": {"id": "abc", "status": "pending_review", "version": 1},
            "NewImage": {
                "id": "abc",
                "courseId": "CS101",
                "lectureId": "L1",
                "title": "Intro",
                "content": "Body",
                "status": "approved",
                "version": 2,
            },
        },
    }

    queued = detector.handle([record, record])

    assert [item.dedup_key for item in queued] == ["summarize:abc:2"]
    payload = queue.get(queued[0].id).payload
    assert (payload["course_id"], payload["lecture_id"], payload["title"]) == ("CS101", "L1", "Intro")


def test_poll_advances_cursor_and_respects_limit(components) -> None:
    store, _, detector = components
    first = store.upsert({"course_id": "CS101", "lecture_id": "L1"}).current
    second = store.upsert({"course_id": "CS101", "lecture_id": "L2"}).current
    store.set_status(first.id, "approved")
    store.set_status(second.id, "approved")

    assert detector.poll(limit=3) != []
    assert store.get_cursor("change_detector") == 3

    remaining = detector.poll()
    assert [item.payload["lecture_id"] for item in remaining] == ["L2"]
    assert store.get_cursor("change_detector") == store.last_mutation_seq()
