import sqlite3

import pytest

from lecture_pipeline.errors import NotFoundError, ValidationError
from lecture_pipeline.processing.generation import GenerationError
from lecture_pipeline.processing.summarization import (
    SUMMARY_MARKER,
    SummarizationWorker,
    build_summary_prompt,
    clean_summary,
    quiz_dedup_key,
)
from lecture_pipeline.services.metadata import estimate_duration
from lecture_pipeline.services.storage import DraftStore
from lecture_pipeline.services.work_queue import STAGE_GENERATE_QUIZ, WorkQueue


@pytest.fixture()
def store(temp_config) -> DraftStore:
    return DraftStore(temp_config.database_file)


@pytest.fixture()
def queue(temp_config) -> WorkQueue:
    return WorkQueue(temp_config.database_file)


def _approved_draft(store: DraftStore):
    draft = store.upsert(
        {
            "course_id": "CS101",
            "lecture_id": "L1",
            "title": "Variables",
            "content": "Variables hold values.",
            "duration": "45 minutes",
        }
    ).current
    return store.set_status(draft.id, "approved")


def test_clean_summary_drops_preamble() -> None:
    text = "Sure! Here you go.\n\n# Learning Objectives:\n- one"

    assert clean_summary(text) == "# Learning Objectives:\n- one"
    assert clean_summary("  no marker here ") == "no marker here"
    assert clean_summary(f"{SUMMARY_MARKER}\n- kept") == f"{SUMMARY_MARKER}\n- kept"


def test_summary_prompt_includes_lecture() -> None:
    prompt = build_summary_prompt("Variables", "Variables hold values.", max_words=500)

    assert "Lecture title: Variables" in prompt
    assert "Variables hold values." in prompt
    assert "approximately 500 words" in prompt
    assert SUMMARY_MARKER in prompt


def test_summary_is_written_and_quiz_is_queued(store, queue, generator) -> None:
    draft = _approved_draft(store)
    worker = SummarizationWorker(store, queue, generator)

    result = worker.run({"id": draft.id, "content": "stale copy from the event"})

    updated = store.get(draft.id)
    assert result["outcome"] == "summarized"
    assert updated.summary.startswith(SUMMARY_MARKER)
    assert updated.duration == estimate_duration(updated.summary)
    assert updated.content == "Variables hold values."
    assert "Variables hold values." in generator.summary_prompts[0]

    items = queue.list_items(stage=STAGE_GENERATE_QUIZ)
    assert len(items) == 1
    assert items[0].id == result["next_work_item"]
    assert items[0].dedup_key == quiz_dedup_key(draft.id, updated.version)
    assert items[0].payload["summary"] == updated.summary
    assert items[0].payload["title"] == "Variables"


def test_pending_draft_is_not_summarized(store, queue, generator) -> None:
    draft = store.upsert({"course_id": "CS101", "lecture_id": "L1", "content": "Body"}).current

    result = SummarizationWorker(store, queue, generator).run({"id": draft.id})

    assert result == {"outcome": "skipped", "reason": "pending_review", "draft_id": draft.id}
    assert generator.prompts == []
    assert queue.list_items() == []


def test_missing_draft_is_skipped(store, queue, generator) -> None:
    result = SummarizationWorker(store, queue, generator).run({"id": "gone"})

    assert result["outcome"] == "skipped"
    assert result["reason"] == "missing"
    assert generator.prompts == []


def test_payload_without_id_is_rejected(store, queue, generator) -> None:
    with pytest.raises(ValidationError):
        SummarizationWorker(store, queue, generator).run({"course_id": "CS101"})


def test_generation_failure_writes_nothing(store, queue, make_generator) -> None:
    draft = _approved_draft(store)
    worker = SummarizationWorker(store, queue, make_generator(fail=True))

    with pytest.raises(GenerationError):
        worker.run({"id": draft.id})

    unchanged = store.get(draft.id)
    assert unchanged.summary == ""
    assert unchanged.duration == "45 minutes"
    assert unchanged.version == draft.version
    assert queue.list_items() == []


def test_empty_generation_is_an_error(store, queue, make_generator) -> None:
    draft = _approved_draft(store)
    worker = SummarizationWorker(store, queue, make_generator(summary="   "))

    with pytest.raises(GenerationError):
        worker.run({"id": draft.id})


def test_draft_removed_during_generation_is_not_recreated(
    temp_config, store, queue, make_generator
) -> None:
    draft = _approved_draft(store)

    def remove_draft(prompt: str) -> None:
        connection = sqlite3.connect(temp_config.database_file)
        try:
            with connection:
                connection.execute("DELETE FROM drafts WHERE id = ?", (draft.id,))
        finally:
            connection.close()

    worker = SummarizationWorker(store, queue, make_generator(on_generate=remove_draft))

    with pytest.raises(NotFoundError):
        worker.run({"id": draft.id})

    assert store.list_drafts() == []
    assert queue.list_items() == []
