"""Persistence for generated question pools and the quizzes composed from them."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..errors import ConflictError, PartialWriteError, ValidationError
from .database import EventEmitter, SQLiteRepository, utcnow_iso


LOGGER = logging.getLogger(__name__)


@dataclass
class QuizQuestionRecord:
    id: str
    course_id: str
    lecture_id: str
    question: str
    options: List[str]
    answer: str
    explanation: str
    difficulty: str
    topic_tag: str = "General"
    batch_id: str = ""
    position: int = 0
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QuizQuestionRecord":
        return cls(
            id=row["id"],
            course_id=row["course_id"],
            lecture_id=row["lecture_id"],
            question=row["question"],
            options=list(json.loads(row["options"])),
            answer=row["answer"],
            explanation=row["explanation"],
            difficulty=row["difficulty"],
            topic_tag=row["topic_tag"],
            batch_id=row["batch_id"],
            position=int(row["position"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QuizRecord:
    course_id: str
    lecture_id: str
    quiz_id: str
    title: str
    question_ids: List[str]
    passing_score: int
    difficulty: str
    order: int
    description: str = ""
    is_personalized: bool = False
    user_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QuizRecord":
        return cls(
            id=row["id"],
            course_id=row["course_id"],
            lecture_id=row["lecture_id"],
            quiz_id=row["quiz_id"],
            title=row["title"],
            description=row["description"],
            question_ids=list(json.loads(row["question_ids"])),
            passing_score=int(row["passing_score"]),
            difficulty=row["difficulty"],
            order=int(row["order"]),
            is_personalized=bool(row["is_personalized"]),
            user_id=row["user_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationBatch:
    id: str
    course_id: str
    lecture_id: str
    content_hash: str
    question_count: int
    created_at: str


def _key_filter(course_id: Optional[str], lecture_id: Optional[str]) -> tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if course_id:
        clauses.append("course_id = ?")
        params.append(course_id)
    if lecture_id:
        clauses.append("lecture_id = ?")
        params.append(lecture_id)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class QuizRepository(SQLiteRepository):
    """Question pools and quizzes keyed by ``(course_id, lecture_id)``."""

    def __init__(self, database_file, *, event_emitter: Optional[EventEmitter] = None) -> None:
        super().__init__(database_file, event_emitter=event_emitter)

    # ------------------------------------------------------------------
    # Question pool
    # ------------------------------------------------------------------
    def find_batch(
        self, course_id: str, lecture_id: str, content_hash: str
    ) -> Optional[GenerationBatch]:
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                "SELECT id, course_id, lecture_id, content_hash, question_count, created_at "
                "FROM generation_batches WHERE course_id = ? AND lecture_id = ? AND content_hash = ? "
                "ORDER BY created_at LIMIT 1",
                (course_id, lecture_id, content_hash),
                action="generation_batches.lookup",
                table="generation_batches",
            )
            row = cursor.fetchone()
            return GenerationBatch(**dict(row)) if row else None

    def add_batch(
        self,
        course_id: str,
        lecture_id: str,
        content_hash: str,
        questions: Sequence[Mapping[str, Any]],
        *,
        replace: bool = False,
    ) -> List[QuizQuestionRecord]:
        """Persist one generation batch in a single transaction.

        With ``replace`` the previous pool and the quizzes built on it are removed
        for the key before the new batch lands.
        """

        if not questions:
            raise ValidationError("A question batch cannot be empty")

        with self._track_db_event(
            "add_question_batch",
            table="quiz_questions",
            course_id=course_id,
            lecture_id=lecture_id,
            question_count=len(questions),
            replace=replace,
        ) as event:
            now = utcnow_iso()
            batch_id = uuid.uuid4().hex
            records: List[QuizQuestionRecord] = []
            with self._connection() as connection:
                if replace:
                    removed = self._execute(
                        connection,
                        "DELETE FROM quizzes WHERE course_id = ? AND lecture_id = ?",
                        (course_id, lecture_id),
                        action="quizzes.delete_for_key",
                        table="quizzes",
                    ).rowcount
                    self._execute(
                        connection,
                        "DELETE FROM generation_batches WHERE course_id = ? AND lecture_id = ?",
                        (course_id, lecture_id),
                        action="generation_batches.delete_for_key",
                        table="generation_batches",
                    )
                    event["quizzes_removed"] = removed
                self._execute(
                    connection,
                    "INSERT INTO generation_batches(id, course_id, lecture_id, content_hash, "
                    "question_count, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (batch_id, course_id, lecture_id, content_hash, len(questions), now),
                    action="generation_batches.insert",
                    table="generation_batches",
                )
                for position, item in enumerate(questions):
                    record = QuizQuestionRecord(
                        id=uuid.uuid4().hex,
                        course_id=course_id,
                        lecture_id=lecture_id,
                        question=str(item["question"]),
                        options=[str(option) for option in item["options"]],
                        answer=str(item["answer"]),
                        explanation=str(item.get("explanation") or ""),
                        difficulty=str(item.get("difficulty") or "Medium"),
                        topic_tag=str(item.get("topic_tag") or "General"),
                        batch_id=batch_id,
                        position=position,
                        created_at=now,
                    )
                    if record.answer not in record.options:
                        raise ValidationError(
                            f"Answer for question {position + 1} is not one of its options"
                        )
                    self._execute(
                        connection,
                        "INSERT INTO quiz_questions(id, batch_id, course_id, lecture_id, question, "
                        "options, answer, explanation, difficulty, topic_tag, position, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            record.id,
                            batch_id,
                            course_id,
                            lecture_id,
                            record.question,
                            json.dumps(record.options),
                            record.answer,
                            record.explanation,
                            record.difficulty,
                            record.topic_tag,
                            position,
                            now,
                        ),
                        action="quiz_questions.insert",
                        table="quiz_questions",
                    )
                    records.append(record)
            event["batch_id"] = batch_id
            LOGGER.info(
                "Stored %s questions for %s/%s (batch=%s)",
                len(records),
                course_id,
                lecture_id,
                batch_id,
            )
            return records

    def get_questions(self, question_ids: Iterable[str]) -> List[QuizQuestionRecord]:
        ids = list(dict.fromkeys(question_ids))
        if not ids:
            return []
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                "SELECT * FROM quiz_questions WHERE id IN "
                f"({', '.join('?' for _ in ids)}) ORDER BY created_at, position",
                ids,
                action="quiz_questions.get_many",
                table="quiz_questions",
            )
            return [QuizQuestionRecord.from_row(row) for row in cursor.fetchall()]

    def batch_questions(self, batch_id: str) -> List[QuizQuestionRecord]:
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                "SELECT * FROM quiz_questions WHERE batch_id = ? ORDER BY position",
                (batch_id,),
                action="quiz_questions.by_batch",
                table="quiz_questions",
            )
            return [QuizQuestionRecord.from_row(row) for row in cursor.fetchall()]

    def batch_has_quiz(self, batch: GenerationBatch) -> bool:
        """Return whether any quiz for the batch's key references one of its questions."""

        question_ids = {record.id for record in self.batch_questions(batch.id)}
        return any(
            question_ids.intersection(quiz.question_ids)
            for quiz in self.list_quizzes(course_id=batch.course_id, lecture_id=batch.lecture_id)
        )

    def list_questions(
        self,
        *,
        course_id: Optional[str] = None,
        lecture_id: Optional[str] = None,
    ) -> List[QuizQuestionRecord]:
        where, params = _key_filter(course_id, lecture_id)
        with self._track_db_event("list_questions", table="quiz_questions") as event:
            with self._connection() as connection:
                cursor = self._execute(
                    connection,
                    f"SELECT * FROM quiz_questions{where} "
                    "ORDER BY course_id, lecture_id, created_at, position",
                    params,
                    action="quiz_questions.list",
                    table="quiz_questions",
                )
                records = [QuizQuestionRecord.from_row(row) for row in cursor.fetchall()]
                event["rowcount"] = len(records)
                return records

    # ------------------------------------------------------------------
    # Quizzes
    # ------------------------------------------------------------------
    def next_order(self, course_id: str, lecture_id: str) -> int:
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                'SELECT COALESCE(MAX("order"), 0) FROM quizzes WHERE course_id = ? AND lecture_id = ?',
                (course_id, lecture_id),
                action="quizzes.max_order",
                table="quizzes",
            )
            row = cursor.fetchone()
            return int(row[0]) + 1 if row else 1

    def save_quiz(self, quiz: QuizRecord) -> QuizRecord:
        """Write *quiz* only if every referenced question exists in the same pool."""

        if not quiz.question_ids:
            raise PartialWriteError(f"Quiz {quiz.quiz_id} references no questions")
        if quiz.is_personalized and not quiz.user_id:
            raise ValidationError("Personalized quizzes require a user id")

        with self._track_db_event(
            "save_quiz",
            table="quizzes",
            course_id=quiz.course_id,
            lecture_id=quiz.lecture_id,
            quiz_id=quiz.quiz_id,
        ):
            ids = list(dict.fromkeys(quiz.question_ids))
            now = utcnow_iso()
            with self._connection() as connection:
                cursor = self._execute(
                    connection,
                    "SELECT id FROM quiz_questions WHERE course_id = ? AND lecture_id = ? AND id IN "
                    f"({', '.join('?' for _ in ids)})",
                    [quiz.course_id, quiz.lecture_id, *ids],
                    action="quiz_questions.confirm",
                    table="quiz_questions",
                )
                found = {row["id"] for row in cursor.fetchall()}
                missing = [question_id for question_id in ids if question_id not in found]
                if missing:
                    raise PartialWriteError(
                        f"Quiz {quiz.quiz_id} references {len(missing)} question(s) missing from "
                        f"the pool for {quiz.course_id}/{quiz.lecture_id}"
                    )
                quiz.created_at = quiz.created_at or now
                quiz.updated_at = now
                try:
                    self._execute(
                        connection,
                        'INSERT INTO quizzes(id, course_id, lecture_id, quiz_id, title, description, '
                        'question_ids, passing_score, difficulty, "order", is_personalized, user_id, '
                        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                        "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
                        "description = excluded.description, question_ids = excluded.question_ids, "
                        "passing_score = excluded.passing_score, difficulty = excluded.difficulty, "
                        "updated_at = excluded.updated_at",
                        (
                            quiz.id,
                            quiz.course_id,
                            quiz.lecture_id,
                            quiz.quiz_id,
                            quiz.title,
                            quiz.description,
                            json.dumps(ids),
                            int(quiz.passing_score),
                            quiz.difficulty,
                            int(quiz.order),
                            int(quiz.is_personalized),
                            quiz.user_id,
                            quiz.created_at,
                            quiz.updated_at,
                        ),
                        action="quizzes.upsert",
                        table="quizzes",
                    )
                except sqlite3.IntegrityError as error:
                    raise ConflictError(
                        f"Quiz {quiz.quiz_id} already exists for {quiz.course_id}/{quiz.lecture_id}"
                    ) from error
            quiz.question_ids = ids
            LOGGER.info("Saved quiz %s with %s questions", quiz.quiz_id, len(ids))
            return quiz

    def list_quizzes(
        self,
        *,
        course_id: Optional[str] = None,
        lecture_id: Optional[str] = None,
    ) -> List[QuizRecord]:
        where, params = _key_filter(course_id, lecture_id)
        with self._connection() as connection:
            cursor = self._execute(
                connection,
                f'SELECT * FROM quizzes{where} ORDER BY course_id, lecture_id, "order"',
                params,
                action="quizzes.list",
                table="quizzes",
            )
            return [QuizRecord.from_row(row) for row in cursor.fetchall()]


__all__ = ["GenerationBatch", "QuizQuestionRecord", "QuizRecord", "QuizRepository"]
