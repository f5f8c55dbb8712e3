import io
import json

import pytest

from lecture_pipeline.errors import ValidationError
from lecture_pipeline.services.ingestion import (
    KIND_JSON,
    KIND_PDF,
    KIND_PPTX,
    KIND_TEXT,
    IngestionWorker,
    key_from_locator,
    parse_json_artifact,
    resolve_kind,
)
from lecture_pipeline.services.storage import DraftStore
from lecture_pipeline.services.work_queue import STAGE_STORE, STATUS_PENDING, WorkQueue


@pytest.fixture()
def worker(temp_config):
    queue = WorkQueue(temp_config.database_file)
    store = DraftStore(temp_config.database_file)
    return IngestionWorker(queue, store), queue, store


def _json_bytes(document) -> bytes:
    return json.dumps(document).encode("utf-8")


@pytest.mark.parametrize(
    "locator, content_type, expected",
    [
        ("uploads/c/l/lecture.json", None, KIND_JSON),
        ("uploads/c/l/lecture.bin", "application/json; charset=utf-8", KIND_JSON),
        ("uploads/c/l/lecture.PDF", None, KIND_PDF),
        ("uploads/c/l/notes", "text/plain", KIND_TEXT),
        ("uploads\\c\\l\\notes.md", None, KIND_TEXT),
        ("uploads/c/l/slides.pptx", None, KIND_PPTX),
        ("uploads/c/l/deck", "application/vnd.ms-powerpoint", KIND_PPTX),
    ],
)
def test_resolve_kind(locator, content_type, expected) -> None:
    assert resolve_kind(locator, content_type) == expected


def test_resolve_kind_rejects_unknown_types() -> None:
    with pytest.raises(ValidationError):
        resolve_kind("uploads/c/l/slides.key", "application/x-iwork-keynote-sffkey")


def test_key_from_locator() -> None:
    assert key_from_locator("uploads/CS101/L3/notes.txt") == ("CS101", "L3")
    assert key_from_locator("/CS101/L3/notes.txt") == ("CS101", "L3")
    assert key_from_locator("notes.txt") == (None, None)


def test_parse_json_accepts_key_aliases() -> None:
    fields = parse_json_artifact(
        _json_bytes(
            {
                "courseID": "CS101",
                "lectureId": "L1",
                "title": "Intro",
                "fileName": "intro.json",
                "difficulty": "",
            }
        )
    )

    assert fields == {
        "course_id": "CS101",
        "lecture_id": "L1",
        "title": "Intro",
        "file_name": "intro.json",
    }


@pytest.mark.parametrize("data", [b"{not json", b"[1, 2]", b"\xff\xfe\x00"])
def test_parse_json_rejects_malformed_documents(data: bytes) -> None:
    with pytest.raises(ValidationError):
        parse_json_artifact(data)


def test_json_artifact_without_key_is_rejected(worker) -> None:
    ingestion, queue, _ = worker

    with pytest.raises(ValidationError):
        ingestion.ingest("lecture.json", _json_bytes({"courseId": "CS101", "title": "x"}))

    assert queue.list_items() == []


def test_json_body_key_wins_over_locator(worker) -> None:
    ingestion, _, _ = worker

    payload = ingestion.parse(
        "uploads/OTHER/L9/lecture.json",
        _json_bytes({"courseId": "CS101", "lectureId": "L1", "content": "Body text"}),
    )

    assert (payload.course_id, payload.lecture_id) == ("CS101", "L1")
    assert payload.difficulty in {"Easy", "Medium", "Hard"}


def test_text_artifact_takes_key_and_title(worker) -> None:
    ingestion, _, _ = worker

    payload = ingestion.parse(
        "uploads/CS101/L2/loops.md",
        "# Loops\n\nA for loop repeats work.".encode("utf-8"),
    )

    assert payload.course_id == "CS101"
    assert payload.lecture_id == "L2"
    assert payload.title == "Loops"
    assert payload.content.startswith("# Loops")
    assert payload.file_name == "loops.md"
    assert payload.file_type == "md"
    assert payload.status is None


def test_empty_text_artifact_is_rejected(worker) -> None:
    ingestion, _, _ = worker

    with pytest.raises(ValidationError):
        ingestion.parse("uploads/CS101/L2/empty.txt", b"  \n ")


def test_ingest_queues_one_store_item_per_delivery(worker) -> None:
    ingestion, queue, store = worker
    data = _json_bytes({"courseId": "CS101", "lectureId": "L1", "title": "Intro"})

    ingestion.ingest("lecture.json", data)
    ingestion.ingest("lecture.json", data)

    items = queue.list_items(stage=STAGE_STORE)
    assert len(items) == 2
    assert all(item.status == STATUS_PENDING for item in items)
    # Nothing is written to the store until the queue is processed.
    assert store.list_drafts() == []


def test_redelivered_upload_reuses_its_store_item(worker) -> None:
    ingestion, queue, _ = worker
    data = _json_bytes({"courseId": "CS101", "lectureId": "L1", "title": "Intro"})

    ingestion.ingest("lecture.json", data, delivery_id="evt-1")
    ingestion.ingest("lecture.json", data, delivery_id="evt-1")
    ingestion.ingest("lecture.json", data, delivery_id="evt-2")

    assert len(queue.list_items(stage=STAGE_STORE)) == 2


def test_store_handler_upserts(worker) -> None:
    ingestion, _, store = worker

    first = ingestion.store({"course_id": "CS101", "lecture_id": "L1", "title": "Intro"})
    second = ingestion.store({"course_id": "CS101", "lecture_id": "L1", "content": "Body"})

    assert first["outcome"] == "created"
    assert second["outcome"] == "updated"
    assert second["draft_id"] == first["draft_id"]
    assert second["version"] == 2
    draft = store.get(first["draft_id"])
    assert (draft.title, draft.content) == ("Intro", "Body")


def test_pdf_artifact_text_is_extracted(worker) -> None:
    fitz = pytest.importorskip("fitz")
    ingestion, _, _ = worker

    document = fitz.open()
    page = document.new_page()
    page.insert_text((72, 72), "Sorting Algorithms")
    page.insert_text((72, 100), "Bubble sort compares neighbouring items.")
    data = document.tobytes()
    document.close()

    payload = ingestion.parse("uploads/CS101/L4/sorting.pdf", data, "application/pdf")

    assert payload.title == "Sorting Algorithms"
    assert "Bubble sort" in payload.content
    assert payload.file_type == "pdf"


def test_corrupt_pdf_is_rejected(worker) -> None:
    pytest.importorskip("fitz")
    ingestion, _, _ = worker

    with pytest.raises(ValidationError):
        ingestion.parse("uploads/CS101/L4/broken.pdf", b"%PDF-1.4 not really", "application/pdf")


def _presentation_bytes(pptx, *, title: str = "Graph Search") -> bytes:
    from pptx.util import Inches

    presentation = pptx.Presentation()
    presentation.core_properties.title = title

    first = presentation.slides.add_slide(presentation.slide_layouts[1])
    first.shapes.title.text = "Breadth-first search"
    first.placeholders[1].text = "Visit neighbours level by level."

    second = presentation.slides.add_slide(presentation.slide_layouts[5])
    second.shapes.title.text = "Data structures"
    table = second.shapes.add_table(2, 2, Inches(1), Inches(2), Inches(4), Inches(1)).table
    table.cell(0, 0).text = "Queue"
    table.cell(0, 1).text = "FIFO"
    table.cell(1, 0).text = "Stack"
    table.cell(1, 1).text = "LIFO"

    buffer = io.BytesIO()
    presentation.save(buffer)
    return buffer.getvalue()


def test_pptx_artifact_text_is_extracted(worker) -> None:
    pptx = pytest.importorskip("pptx")
    ingestion, _, _ = worker

    payload = ingestion.parse("uploads/CS201/L5/graphs.pptx", _presentation_bytes(pptx))

    assert (payload.course_id, payload.lecture_id) == ("CS201", "L5")
    assert payload.title == "Graph Search"
    assert payload.content.startswith("Slide 1:\nBreadth-first search")
    assert "Visit neighbours level by level." in payload.content
    assert "Slide 2:\nData structures" in payload.content
    assert "| Queue | FIFO |" in payload.content
    assert payload.file_name == "graphs.pptx"
    assert payload.file_type == "pptx"


def test_pptx_title_falls_back_to_first_slide(worker) -> None:
    pptx = pytest.importorskip("pptx")
    ingestion, _, _ = worker

    payload = ingestion.parse("uploads/CS201/L5/graphs.pptx", _presentation_bytes(pptx, title=""))

    assert payload.title == "Breadth-first search"


def test_corrupt_pptx_is_rejected(worker) -> None:
    pytest.importorskip("pptx")
    ingestion, queue, _ = worker

    with pytest.raises(ValidationError):
        ingestion.ingest("uploads/CS201/L5/broken.pptx", b"PK not a deck")

    assert queue.list_items() == []
