"""Quiz generation stage: builds a question pool and a quiz from a summarized lecture."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import QuizSettings
from ..errors import PartialWriteError, ValidationError
from ..services.quiz_store import QuizRecord, QuizRepository
from .generation import ContentGenerator, GenerationError


LOGGER = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(?P<body>.*?)```", re.DOTALL | re.IGNORECASE)
_JSON_ARRAY = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)
_OPTION_PREFIX = re.compile(r"^[A-Z]\.\s*", re.IGNORECASE)
_ANSWER_LETTER = re.compile(r"^[A-D]\.", re.IGNORECASE)

_PROMPT_TEMPLATE = """As an educational assessment expert, create {count} multiple-choice quiz questions based on the following lecture content.

The questions should be distributed as follows:
- {easy} easy questions (basic understanding)
- {medium} medium questions (application of concepts)
- {hard} hard questions (analysis or advanced application)

For each question:
1. Write a clear question.
2. Provide exactly 4 answer choices labeled A, B, C, and D. Each option should start with "A. ", "B. ", "C. ", or "D. " followed by the answer text.
3. Indicate the correct answer as "A. [text]", "B. [text]", etc.
4. Provide a brief explanation of why the answer is correct.
5. Assign a difficulty level (Easy, Medium, Hard).
6. Assign a topic tag that categorizes what concept this question is testing.

Format each question as follows:
{{
"question": "What is...",
"options": ["A. Option 1", "B. Option 2", "C. Option 3", "D. Option 4"],
"answer": "A. Option 1",
"explanation": "This is correct because...",
"difficulty": "Easy|Medium|Hard",
"topicTag": "relevant topic or concept"
}}

Here's the lecture content:

{text}

Return ONLY a valid JSON array of questions without any additional text."""


def difficulty_distribution(count: int) -> Tuple[int, int, int]:
    """Return ``(easy, medium, hard)`` counts for a batch of *count* questions."""

    easy = max(2, int(count * 0.3))
    hard = max(2, int(count * 0.2))
    medium = max(0, count - easy - hard)
    return easy, medium, hard


def build_quiz_prompt(text: str, count: int) -> str:
    easy, medium, hard = difficulty_distribution(count)
    return _PROMPT_TEMPLATE.format(
        count=count,
        easy=easy,
        medium=medium,
        hard=hard,
        text=text.strip(),
    )


def content_hash(text: str) -> str:
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()


def extract_questions(text: str) -> Optional[List[Any]]:
    """Pull the JSON question array out of a model response, if there is one."""

    candidates = [text]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group("body"))
    array = _JSON_ARRAY.search(text)
    if array:
        candidates.append(array.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
            parsed = parsed["questions"]
        if isinstance(parsed, list):
            return parsed
    return None


def normalise_question(raw: Any) -> Optional[Dict[str, Any]]:
    """Clean one generated question; ``None`` when it is unusable."""

    if not isinstance(raw, Mapping):
        return None
    question = str(raw.get("question") or "").strip()
    options_raw = raw.get("options")
    answer = str(raw.get("answer") or "").strip()
    explanation = str(raw.get("explanation") or "").strip()
    if not question or not isinstance(options_raw, list) or not answer or not explanation:
        return None

    options = [_OPTION_PREFIX.sub("", str(option)).strip() for option in options_raw]
    options = [option for option in options if option]
    if len(options) < 2:
        return None

    if _ANSWER_LETTER.match(answer):
        index = "ABCD".index(answer[0].upper())
        answer = options[index] if index < len(options) else _OPTION_PREFIX.sub("", answer).strip()
    if answer not in options:
        return None

    difficulty = str(raw.get("difficulty") or "Medium").strip() or "Medium"
    topic_tag = raw.get("topicTag") or raw.get("topic_tag") or "General"
    return {
        "question": question,
        "options": options,
        "answer": answer,
        "explanation": explanation,
        "difficulty": difficulty[:1].upper() + difficulty[1:].lower(),
        "topic_tag": str(topic_tag).strip() or "General",
    }


def _dominant_difficulty(difficulties: Sequence[str]) -> str:
    if not difficulties:
        return "Medium"
    return Counter(difficulties).most_common(1)[0][0]


class QuizGenerationWorker:
    """Handler for the ``generate_quiz`` stage."""

    def __init__(
        self,
        repository: QuizRepository,
        generator: ContentGenerator,
        *,
        settings: Optional[QuizSettings] = None,
    ) -> None:
        self._repository = repository
        self._generator = generator
        self._settings = settings or QuizSettings()

    @property
    def settings(self) -> QuizSettings:
        return self._settings

    def generate_questions(self, text: str) -> List[Dict[str, Any]]:
        response = self._generator.generate(build_quiz_prompt(text, self._settings.question_count))
        parsed = extract_questions(response)
        if parsed is None:
            raise GenerationError("Model response did not contain a JSON question array")
        questions = [item for item in (normalise_question(raw) for raw in parsed) if item]
        dropped = len(parsed) - len(questions)
        if dropped:
            LOGGER.warning("Dropped %s malformed generated question(s)", dropped)
        if not questions:
            raise GenerationError("Model response contained no usable questions")
        return questions

    def run(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        course_id = str(payload.get("course_id") or "").strip()
        lecture_id = str(payload.get("lecture_id") or "").strip()
        if not course_id or not lecture_id:
            raise ValidationError("Quiz generation requires courseId and lectureId")
        text = str(payload.get("summary") or payload.get("content") or "")
        if not text.strip():
            raise ValidationError(f"No summary or content to build a quiz for {course_id}/{lecture_id}")

        digest = content_hash(text)
        policy = self._settings.regeneration_policy
        batch = self._repository.find_batch(course_id, lecture_id, digest) if policy == "skip" else None
        if batch is not None and self._repository.batch_has_quiz(batch):
            LOGGER.info("Question pool for %s/%s is current; skipping", course_id, lecture_id)
            return {
                "outcome": "skipped",
                "reason": "unchanged",
                "course_id": course_id,
                "lecture_id": lecture_id,
            }

        # A batch stored by an attempt that died before its quiz was saved is reused.
        stored = self._repository.batch_questions(batch.id) if batch is not None else []
        outcome = "composed"
        if stored:
            LOGGER.info(
                "Composing quiz for %s/%s from stored batch %s", course_id, lecture_id, batch.id
            )
        else:
            questions = self.generate_questions(text)
            stored = self._repository.add_batch(
                course_id,
                lecture_id,
                digest,
                questions,
                replace=policy == "replace",
            )
            outcome = "generated"

        stored_ids = [record.id for record in stored]
        confirmed = self._repository.get_questions(stored_ids)
        if len(confirmed) != len(stored_ids):
            raise PartialWriteError(
                f"Only {len(confirmed)} of {len(stored_ids)} questions for "
                f"{course_id}/{lecture_id} could be read back; quiz not written"
            )

        selected = confirmed[: self._settings.quiz_size]
        order = self._repository.next_order(course_id, lecture_id)
        title = str(payload.get("title") or "").strip()
        quiz = self._repository.save_quiz(
            QuizRecord(
                course_id=course_id,
                lecture_id=lecture_id,
                quiz_id=f"{course_id}-{lecture_id}-quiz-{order}",
                title=f"{title} Quiz" if title else "Lecture Quiz",
                description=f"Questions generated from the summary of {title or lecture_id}",
                question_ids=[record.id for record in selected],
                passing_score=self._settings.passing_score,
                difficulty=_dominant_difficulty([record.difficulty for record in selected]),
                order=order,
            )
        )
        return {
            "outcome": outcome,
            "course_id": course_id,
            "lecture_id": lecture_id,
            "question_count": len(stored),
            "quiz_id": quiz.quiz_id,
            "policy": policy,
        }


__all__ = [
    "QuizGenerationWorker",
    "build_quiz_prompt",
    "content_hash",
    "difficulty_distribution",
    "extract_questions",
    "normalise_question",
]
