"""Summarization stage: turns approved lecture content into a study summary."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from ..errors import ValidationError
from ..services.lifecycle import ReviewStatus
from ..services.metadata import estimate_duration
from ..services.storage import DraftStore
from ..services.work_queue import STAGE_GENERATE_QUIZ, WorkQueue
from .generation import ContentGenerator, GenerationError


LOGGER = logging.getLogger(__name__)

SUMMARY_MARKER = "# Learning Objectives:"

_PROMPT_TEMPLATE = """As an educational content creator, create a comprehensive lesson summary of the following lecture content.
The summary should:

1. Begin with clear learning objectives
2. Include key concepts and definitions
3. Present the main ideas in a logical, easy-to-follow structure
4. Provide relevant examples where applicable
5. End with key takeaways
6. Be approximately {max_words} words in length
7. Use clear, student-friendly language
8. Include bullet points and numbering for better readability
9. Use markdown formatting for better readability

Lecture title: {title}

Here's the lecture content to summarize:

{content}

Please structure your response as follows:

# Learning Objectives:
[List the main learning objectives.]

# Key Concepts:
[Define and explain important terms and concepts that underpin the learning objectives.]

# Main Content:
[Present the core material in a structured way, covering both foundational knowledge and higher-order thinking skills.]

# Examples & Applications:
[Provide practical examples that illustrate the application, analysis, and synthesis of the material.]

# Key Takeaways:
[Summarize the most important points, emphasizing the learning outcomes.]

Return only the text formatted exactly as specified above. Do not include any additional commentary, concluding summaries, or extraneous text."""


def build_summary_prompt(title: str, content: str, *, max_words: int = 2000) -> str:
    return _PROMPT_TEMPLATE.format(
        max_words=max_words,
        title=(title or "Untitled lecture").strip(),
        content=content.strip(),
    )


def clean_summary(text: str) -> str:
    """Drop any preamble the model writes before the first section heading."""

    cleaned = (text or "").strip()
    index = cleaned.find(SUMMARY_MARKER)
    if index > 0:
        cleaned = cleaned[index:]
    return cleaned.strip()


def quiz_dedup_key(draft_id: str, version: Any) -> str:
    return f"generate_quiz:{draft_id}:{version}"


class SummarizationWorker:
    """Handler for the ``summarize`` stage.

    The summary is only written through the store's narrow update, so a draft that
    was rejected meanwhile surfaces as :class:`~lecture_pipeline.errors.NotFoundError`
    instead of being recreated. Quiz generation is queued only after that write.
    """

    def __init__(
        self,
        store: DraftStore,
        queue: WorkQueue,
        generator: ContentGenerator,
        *,
        max_words: int = 2000,
    ) -> None:
        self._store = store
        self._queue = queue
        self._generator = generator
        self._max_words = max_words

    def run(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        draft_id = str(payload.get("id") or "")
        if not draft_id:
            raise ValidationError("Summarization requires a draft id")

        draft = self._store.get(draft_id)
        if draft is None:
            LOGGER.info("Draft id=%s no longer exists; skipping summarization", draft_id)
            return {"outcome": "skipped", "reason": "missing", "draft_id": draft_id}
        if draft.status is not ReviewStatus.APPROVED:
            LOGGER.info("Draft id=%s is %s; skipping summarization", draft_id, draft.status.value)
            return {"outcome": "skipped", "reason": draft.status.value, "draft_id": draft_id}

        content = draft.content or str(payload.get("content") or "")
        if not content.strip():
            raise ValidationError(f"Draft id={draft_id} has no content to summarize")
        title = draft.title or str(payload.get("title") or "")

        LOGGER.info("Summarizing %s/%s", draft.course_id, draft.lecture_id)
        summary = clean_summary(
            self._generator.generate(build_summary_prompt(title, content, max_words=self._max_words))
        )
        if not summary:
            raise GenerationError(f"Empty summary generated for draft id={draft_id}")
        duration = estimate_duration(summary)

        updated = self._store.update_fields(
            draft.course_id,
            draft.lecture_id,
            summary=summary,
            duration=duration,
        )
        item = self._queue.enqueue(
            STAGE_GENERATE_QUIZ,
            quiz_dedup_key(updated.id, updated.version),
            {
                "id": updated.id,
                "course_id": updated.course_id,
                "lecture_id": updated.lecture_id,
                "title": updated.title,
                "content": updated.content,
                "summary": updated.summary,
                "duration": updated.duration,
            },
        )
        return {
            "outcome": "summarized",
            "draft_id": updated.id,
            "summary_chars": len(summary),
            "duration": duration,
            "next_work_item": item.id,
        }


__all__ = [
    "SUMMARY_MARKER",
    "SummarizationWorker",
    "build_summary_prompt",
    "clean_summary",
    "quiz_dedup_key",
]
