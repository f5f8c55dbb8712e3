"""Wiring of the lecture pipeline components."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import AppConfig
from .errors import NotFoundError
from .processing.generation import ContentGenerator, OpenAIContentGenerator
from .processing.quiz_generation import QuizGenerationWorker
from .processing.summarization import SummarizationWorker
from .services.change_detector import ChangeDetector
from .services.database import EventEmitter
from .services.events import emit_db_event
from .services.ingestion import IngestionWorker
from .services.lifecycle import LectureStage, ReviewStatus, derive_stage
from .services.quiz_store import QuizRepository
from .services.storage import DraftPayload, DraftRecord, DraftStore
from .services.work_queue import (
    STAGE_GENERATE_QUIZ,
    STAGE_STORE,
    STAGE_SUMMARIZE,
    WorkDispatcher,
    WorkQueue,
)


LOGGER = logging.getLogger(__name__)

_MAX_IDLE_ROUNDS = 1000


@dataclass
class LectureOverview:
    draft: DraftRecord
    stage: LectureStage
    question_count: int
    quiz_count: int


class LecturePipeline:
    """Owns every pipeline component; nothing is looked up implicitly."""

    def __init__(
        self,
        *,
        config: AppConfig,
        drafts: DraftStore,
        quizzes: QuizRepository,
        queue: WorkQueue,
        ingestion: IngestionWorker,
        detector: ChangeDetector,
        summarizer: SummarizationWorker,
        quiz_worker: QuizGenerationWorker,
        dispatcher: WorkDispatcher,
    ) -> None:
        self.config = config
        self.drafts = drafts
        self.quizzes = quizzes
        self.queue = queue
        self.ingestion = ingestion
        self.detector = detector
        self.summarizer = summarizer
        self.quiz_worker = quiz_worker
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def ingest(
        self,
        locator: str,
        data: bytes,
        content_type: Optional[str] = None,
        *,
        delivery_id: Optional[str] = None,
    ) -> DraftPayload:
        return self.ingestion.ingest(locator, data, content_type, delivery_id=delivery_id)

    def run_until_idle(self) -> Dict[str, int]:
        """Alternate stream polling and queue draining until neither has work."""

        totals = {"processed": 0, "approvals": 0}
        for _ in range(_MAX_IDLE_ROUNDS):
            approvals = len(self.detector.poll())
            processed = self.dispatcher.run_until_idle()
            totals["approvals"] += approvals
            totals["processed"] += processed
            if not approvals and not processed:
                break
        else:
            LOGGER.warning("Pipeline still busy after %s rounds; stopping", _MAX_IDLE_ROUNDS)
        return totals

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        """Keep the pipeline drained until *stop* is set."""

        stop = stop or threading.Event()
        interval = self.config.workers.poll_interval_seconds
        LOGGER.info("Worker loop started (poll interval %.1fs)", interval)
        while not stop.is_set():
            totals = self.run_until_idle()
            if totals["processed"] or totals["approvals"]:
                LOGGER.info(
                    "Processed %s work item(s); %s approval(s) detected",
                    totals["processed"],
                    totals["approvals"],
                )
                continue
            stop.wait(interval)
        LOGGER.info("Worker loop stopped")

    def process_in_background(self) -> Future:
        return self.dispatcher.submit(self.run_until_idle)

    def shutdown(self) -> None:
        self.dispatcher.shutdown()

    # ------------------------------------------------------------------
    # Review gate
    # ------------------------------------------------------------------
    def approve(self, draft_id: str, **corrections: Any) -> DraftRecord:
        return self.drafts.set_status(draft_id, ReviewStatus.APPROVED, **corrections)

    def reject(self, draft_id: str) -> DraftRecord:
        return self.drafts.delete(draft_id)

    def update(self, draft_id: str, **fields: Any) -> DraftRecord:
        draft = self.drafts.get(draft_id)
        if draft is None:
            raise NotFoundError(f"Draft id={draft_id} does not exist")
        return self.drafts.update_fields(draft.course_id, draft.lecture_id, **fields)

    # ------------------------------------------------------------------
    # Browsing
    # ------------------------------------------------------------------
    def overview(self, *, course_id: Optional[str] = None) -> List[LectureOverview]:
        questions: Dict[tuple, int] = {}
        for question in self.quizzes.list_questions(course_id=course_id):
            key = (question.course_id, question.lecture_id)
            questions[key] = questions.get(key, 0) + 1
        quizzes: Dict[tuple, int] = {}
        for quiz in self.quizzes.list_quizzes(course_id=course_id):
            key = (quiz.course_id, quiz.lecture_id)
            quizzes[key] = quizzes.get(key, 0) + 1

        rows: List[LectureOverview] = []
        for draft in self.drafts.list_drafts(course_id=course_id):
            quiz_count = quizzes.get(draft.composite_key, 0)
            rows.append(
                LectureOverview(
                    draft=draft,
                    stage=derive_stage(draft.status, draft.summary, has_quiz=quiz_count > 0),
                    question_count=questions.get(draft.composite_key, 0),
                    quiz_count=quiz_count,
                )
            )
        return rows


def build_pipeline(
    config: AppConfig,
    generator: Optional[ContentGenerator] = None,
    *,
    event_emitter: Optional[EventEmitter] = emit_db_event,
) -> LecturePipeline:
    """Assemble a pipeline over the configured database."""

    database = config.database_file
    drafts = DraftStore(
        database,
        defaults=config.draft_defaults,
        max_attempts=config.workers.upsert_attempts,
        event_emitter=event_emitter,
    )
    quizzes = QuizRepository(database, event_emitter=event_emitter)
    queue = WorkQueue(database, event_emitter=event_emitter)
    generator = generator or OpenAIContentGenerator(config.generation)

    ingestion = IngestionWorker(queue, drafts)
    detector = ChangeDetector(drafts, queue)
    summarizer = SummarizationWorker(drafts, queue, generator)
    quiz_worker = QuizGenerationWorker(quizzes, generator, settings=config.quiz)
    dispatcher = WorkDispatcher(
        queue,
        {
            STAGE_STORE: ingestion.store,
            STAGE_SUMMARIZE: summarizer.run,
            STAGE_GENERATE_QUIZ: quiz_worker.run,
        },
        max_workers=config.workers.max_workers,
    )
    return LecturePipeline(
        config=config,
        drafts=drafts,
        quizzes=quizzes,
        queue=queue,
        ingestion=ingestion,
        detector=detector,
        summarizer=summarizer,
        quiz_worker=quiz_worker,
        dispatcher=dispatcher,
    )


__all__ = ["LectureOverview", "LecturePipeline", "build_pipeline"]
