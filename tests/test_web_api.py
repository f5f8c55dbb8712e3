from __future__ import annotations

import json

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from lecture_pipeline.web import create_app


LECTURE = {
    "courseId": "CS101",
    "lectureId": "L1",
    "title": "Intro",
    "content": "Variables hold values.",
}


@pytest.fixture()
def client(pipeline, temp_config):
    app = create_app(pipeline, config=temp_config, auto_dispatch=False)
    return TestClient(app)


def _upload(client, document=None, name="lecture.json", content_type="application/json", **form):
    data = json.dumps(document or LECTURE).encode("utf-8")
    return client.post(
        "/api/uploads",
        files={"file": (name, data, content_type)},
        data=form,
    )


def _stored_draft(client, pipeline):
    pipeline.run_until_idle()
    drafts = client.get("/api/drafts", params={"course_id": "CS101"}).json()["drafts"]
    assert len(drafts) == 1
    return drafts[0]


def test_health(client, temp_config) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": str(temp_config.database_file)}


def test_upload_is_queued_then_stored(client, pipeline) -> None:
    response = _upload(client)

    assert response.status_code == 202
    assert response.json() == {
        "locator": "lecture.json",
        "courseId": "CS101",
        "lectureId": "L1",
        "title": "Intro",
        "status": "queued",
    }
    assert client.get("/api/drafts").json() == {"drafts": []}

    draft = _stored_draft(client, pipeline)
    assert draft["status"] == "pending_review"
    assert draft["difficulty"] in {"Easy", "Medium", "Hard"}
    assert draft["summary"] == ""


def test_text_upload_uses_form_key(client, pipeline) -> None:
    response = client.post(
        "/api/uploads",
        files={"file": ("loops.md", b"# Loops\nA for loop repeats work.", "text/markdown")},
        data={"course_id": "CS101", "lecture_id": "L2"},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["locator"] == "uploads/CS101/L2/loops.md"
    assert body["title"] == "Loops"

    draft = _stored_draft(client, pipeline)
    assert draft["fileName"] == "loops.md"
    assert draft["fileType"] == "md"


@pytest.mark.parametrize(
    "document, name, content_type",
    [
        ({"courseId": "CS101", "title": "No lecture"}, "lecture.json", "application/json"),
        (LECTURE, "slides.key", "application/x-iwork-keynote-sffkey"),
        (LECTURE, "slides.pptx", "application/vnd.ms-powerpoint"),
    ],
)
def test_invalid_uploads_are_rejected(client, pipeline, document, name, content_type) -> None:
    response = _upload(client, document, name=name, content_type=content_type)

    assert response.status_code == 400
    assert pipeline.queue.list_items() == []


def test_review_flow_produces_summary_and_quiz(client, pipeline) -> None:
    _upload(client)
    draft = _stored_draft(client, pipeline)

    response = client.post(f"/api/drafts/{draft['id']}/approve", json={"title": "Intro to Variables"})
    assert response.status_code == 200
    approved = response.json()["draft"]
    assert approved["status"] == "approved"
    assert approved["title"] == "Intro to Variables"

    pipeline.run_until_idle()

    detail = client.get(f"/api/drafts/{draft['id']}").json()
    assert detail["stage"] == "quiz_ready"
    assert detail["draft"]["summary"].startswith("# Learning Objectives:")

    questions = client.get("/api/questions", params={"course_id": "CS101", "lecture_id": "L1"}).json()
    quizzes = client.get("/api/quizzes", params={"course_id": "CS101"}).json()["quizzes"]
    question_ids = {question["id"] for question in questions["questions"]}
    assert question_ids
    assert len(quizzes) == 1
    assert set(quizzes[0]["questionIds"]) <= question_ids
    assert quizzes[0]["passingScore"] == 70
    assert quizzes[0]["title"] == "Intro to Variables Quiz"


def test_approve_without_body(client, pipeline) -> None:
    _upload(client)
    draft = _stored_draft(client, pipeline)

    response = client.post(f"/api/drafts/{draft['id']}/approve")

    assert response.status_code == 200
    assert response.json()["draft"]["status"] == "approved"


def test_reject_only_pending_drafts(client, pipeline) -> None:
    _upload(client)
    draft = _stored_draft(client, pipeline)

    response = client.delete(f"/api/drafts/{draft['id']}")
    assert response.status_code == 200
    assert response.json()["rejected"]["id"] == draft["id"]
    assert client.get(f"/api/drafts/{draft['id']}").status_code == 404

    _upload(client)
    draft = _stored_draft(client, pipeline)
    client.post(f"/api/drafts/{draft['id']}/approve")
    assert client.delete(f"/api/drafts/{draft['id']}").status_code == 409


def test_update_draft(client, pipeline) -> None:
    _upload(client)
    draft = _stored_draft(client, pipeline)

    response = client.put(f"/api/drafts/{draft['id']}", json={"duration": "50 minutes"})
    assert response.status_code == 200
    assert response.json()["draft"]["duration"] == "50 minutes"
    assert response.json()["draft"]["version"] == draft["version"] + 1

    assert client.put(f"/api/drafts/{draft['id']}", json={}).status_code == 400
    assert client.put("/api/drafts/missing", json={"title": "x"}).status_code == 404


def test_list_filters_validate_values(client) -> None:
    assert client.get("/api/drafts", params={"status": "published"}).status_code == 400
    assert client.get("/api/work-items", params={"status": "exploded"}).status_code == 400


def test_failed_work_can_be_requeued(client, pipeline, generator) -> None:
    _upload(client)
    draft = _stored_draft(client, pipeline)
    generator.fail = True
    client.post(f"/api/drafts/{draft['id']}/approve")
    pipeline.run_until_idle()

    failed = client.get("/api/work-items", params={"status": "failed"}).json()["items"]
    assert [item["stage"] for item in failed] == ["summarize"]
    assert "model timed out" in failed[0]["error"]

    assert client.post("/api/work-items/requeue", json={"stage": "publish"}).status_code == 400
    response = client.post("/api/work-items/requeue", json={"stage": "summarize"})
    assert response.json() == {"requeued": 1}

    generator.fail = False
    pipeline.run_until_idle()
    assert client.get(f"/api/drafts/{draft['id']}").json()["stage"] == "quiz_ready"


def test_auto_dispatch_schedules_processing(pipeline, temp_config, monkeypatch) -> None:
    scheduled = []
    monkeypatch.setattr(pipeline, "process_in_background", lambda: scheduled.append(True))
    client = TestClient(create_app(pipeline, config=temp_config))

    _upload(client)

    assert scheduled == [True]


def test_upload_idempotency_key_collapses_redeliveries(client, pipeline) -> None:
    data = json.dumps(LECTURE).encode("utf-8")
    files = {"file": ("lecture.json", data, "application/json")}

    for _ in range(2):
        response = client.post("/api/uploads", files=files, headers={"Idempotency-Key": "evt-7"})
        assert response.status_code == 202
    _upload(client)

    assert len(pipeline.queue.list_items(stage="store")) == 2


def test_app_shutdown_stops_the_pipeline(pipeline, temp_config, monkeypatch) -> None:
    stopped = []
    monkeypatch.setattr(pipeline, "shutdown", lambda: stopped.append(True))

    with TestClient(create_app(pipeline, config=temp_config, auto_dispatch=False)) as client:
        assert client.get("/api/health").status_code == 200
        assert stopped == []

    assert stopped == [True]
