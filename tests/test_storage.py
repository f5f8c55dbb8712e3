import threading

import pytest

from lecture_pipeline.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from lecture_pipeline.services.lifecycle import ReviewStatus
from lecture_pipeline.services.storage import (
    EVENT_INSERT,
    EVENT_MODIFY,
    EVENT_REMOVE,
    DraftPayload,
    DraftStore,
)


@pytest.fixture()
def store(temp_config) -> DraftStore:
    return DraftStore(temp_config.database_file, max_attempts=3)


def test_payload_requires_composite_key() -> None:
    with pytest.raises(ValidationError):
        DraftPayload(course_id="CS101", lecture_id="  ")
    with pytest.raises(ValidationError):
        DraftPayload.from_mapping({"lecture_id": "L1"})


def test_first_upsert_creates_draft_with_defaults(store: DraftStore) -> None:
    result = store.upsert({"course_id": "CS101", "lecture_id": "L1", "title": "Intro"})

    assert result.created is True
    assert result.operation == "CREATE"
    draft = result.current
    assert draft.title == "Intro"
    assert draft.content == ""
    assert draft.summary == ""
    assert draft.difficulty == "Medium"
    assert draft.duration == "30 minutes"
    assert draft.status is ReviewStatus.PENDING_REVIEW
    assert draft.version == 1
    assert draft.created_at == draft.updated_at


def test_repeated_upsert_is_idempotent_on_the_key(store: DraftStore) -> None:
    payload = DraftPayload(course_id="CS101", lecture_id="L1", title="Intro", content="Body")

    first = store.upsert(payload)
    second = store.upsert(payload)

    assert second.operation == "UPDATE"
    assert second.current.id == first.current.id
    assert second.current.title == "Intro"
    assert second.current.content == "Body"
    assert second.current.version == first.current.version + 1
    assert second.current.created_at == first.current.created_at
    assert len(store.list_drafts(course_id="CS101")) == 1


def test_merge_keeps_stored_values_for_missing_fields(store: DraftStore) -> None:
    store.upsert(
        {
            "course_id": "CS101",
            "lecture_id": "L1",
            "title": "Intro",
            "content": "Original body",
            "difficulty": "Hard",
            "duration": "45 minutes",
        }
    )

    merged = store.upsert(
        {"course_id": "CS101", "lecture_id": "L1", "content": "Revised body", "title": ""}
    ).current

    assert merged.title == "Intro"
    assert merged.content == "Revised body"
    assert merged.difficulty == "Hard"
    assert merged.duration == "45 minutes"


def test_upsert_never_overwrites_summary(store: DraftStore) -> None:
    created = store.upsert({"course_id": "CS101", "lecture_id": "L1", "content": "Body"}).current
    store.update_fields("CS101", "L1", summary="# Learning Objectives:\n- stay put")

    merged = store.upsert({"course_id": "CS101", "lecture_id": "L1", "content": "New body"}).current

    assert merged.id == created.id
    assert merged.summary.startswith("# Learning Objectives:")


def test_approved_draft_cannot_be_downgraded(store: DraftStore) -> None:
    store.upsert({"course_id": "CS101", "lecture_id": "L1", "status": "approved"})

    with pytest.raises(IllegalTransitionError):
        store.upsert({"course_id": "CS101", "lecture_id": "L1", "status": "pending_review"})

    # Omitting the status keeps the stored one.
    merged = store.upsert({"course_id": "CS101", "lecture_id": "L1", "title": "Kept"}).current
    assert merged.status is ReviewStatus.APPROVED


def test_unknown_status_is_rejected(store: DraftStore) -> None:
    with pytest.raises(ValidationError):
        store.upsert({"course_id": "CS101", "lecture_id": "L1", "status": "published"})


def test_update_fields_requires_existing_draft(store: DraftStore) -> None:
    with pytest.raises(NotFoundError):
        store.update_fields("CS101", "missing", summary="text")

    assert store.list_drafts() == []


def test_update_fields_rejects_unknown_fields(store: DraftStore) -> None:
    store.upsert({"course_id": "CS101", "lecture_id": "L1"})

    with pytest.raises(ValidationError):
        store.update_fields("CS101", "L1", status="approved")


def test_set_status_applies_corrections(store: DraftStore) -> None:
    draft = store.upsert({"course_id": "CS101", "lecture_id": "L1", "title": "Typo"}).current

    approved = store.set_status(draft.id, "approved", title="Fixed")

    assert approved.status is ReviewStatus.APPROVED
    assert approved.title == "Fixed"
    assert approved.version == draft.version + 1
    assert store.get(draft.id) == approved


def test_set_status_missing_draft(store: DraftStore) -> None:
    with pytest.raises(NotFoundError):
        store.set_status("nope", ReviewStatus.APPROVED)


def test_delete_only_before_approval(store: DraftStore) -> None:
    pending = store.upsert({"course_id": "CS101", "lecture_id": "L1"}).current
    approved = store.upsert(
        {"course_id": "CS101", "lecture_id": "L2", "status": "approved"}
    ).current

    removed = store.delete(pending.id)

    assert removed.id == pending.id
    assert store.get(pending.id) is None
    with pytest.raises(IllegalTransitionError):
        store.delete(approved.id)
    with pytest.raises(NotFoundError):
        store.delete(pending.id)


def test_every_write_appends_a_mutation(store: DraftStore) -> None:
    draft = store.upsert({"course_id": "CS101", "lecture_id": "L1", "title": "Intro"}).current
    store.set_status(draft.id, "approved")
    other = store.upsert({"course_id": "CS101", "lecture_id": "L2"}).current
    store.delete(other.id)

    events = store.iter_mutations()

    assert [event.event_type for event in events] == [
        EVENT_INSERT,
        EVENT_MODIFY,
        EVENT_INSERT,
        EVENT_REMOVE,
    ]
    assert events[0].old_image is None
    assert events[0].new_image["title"] == "Intro"
    assert events[1].old_image["status"] == "pending_review"
    assert events[1].new_image["status"] == "approved"
    assert events[3].new_image is None
    assert store.last_mutation_seq() == events[-1].seq

    modifies = store.iter_mutations(events[0].seq, event_types=[EVENT_MODIFY])
    assert [event.seq for event in modifies] == [events[1].seq]
    assert len(store.iter_mutations(limit=2)) == 2


def test_cursor_only_moves_forward(store: DraftStore) -> None:
    assert store.get_cursor("detector") == 0

    store.advance_cursor("detector", 5)
    store.advance_cursor("detector", 3)

    assert store.get_cursor("detector") == 5


def test_persistent_version_conflict_raises(store: DraftStore, monkeypatch) -> None:
    store.upsert({"course_id": "CS101", "lecture_id": "L1"})
    monkeypatch.setattr(store, "_conditional_update", lambda *args, **kwargs: False)

    with pytest.raises(ConflictError):
        store.upsert({"course_id": "CS101", "lecture_id": "L1", "title": "Lost"})


def test_concurrent_upserts_share_one_record(temp_config) -> None:
    store = DraftStore(temp_config.database_file, max_attempts=20)
    errors = []

    def writer(index: int) -> None:
        try:
            store.upsert({"course_id": "CS101", "lecture_id": "L1", "content": f"v{index}"})
        except Exception as error:  # pragma: no cover - surfaced by the assertion below
            errors.append(error)

    threads = [threading.Thread(target=writer, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    drafts = store.list_drafts()
    assert len(drafts) == 1
    assert drafts[0].version == 6
    assert len(store.iter_mutations()) == 6
