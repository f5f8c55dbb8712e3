"""Review-status lifecycle for draft lectures."""

from __future__ import annotations

from enum import Enum
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from ..errors import IllegalTransitionError, ValidationError


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"


DEFAULT_STATUS = ReviewStatus.PENDING_REVIEW


# Every (old, new) pair that may be committed. Anything else is rejected.
ALLOWED_TRANSITIONS: FrozenSet[Tuple[ReviewStatus, ReviewStatus]] = frozenset(
    {
        (ReviewStatus.PENDING_REVIEW, ReviewStatus.PENDING_REVIEW),
        (ReviewStatus.PENDING_REVIEW, ReviewStatus.APPROVED),
        (ReviewStatus.APPROVED, ReviewStatus.APPROVED),
    }
)

# Deletion represents rejection and is only available before approval.
REJECTABLE_STATUSES: FrozenSet[ReviewStatus] = frozenset({ReviewStatus.PENDING_REVIEW})


class LectureStage(str, Enum):
    """Conceptual per-lecture progress, derived from stored state."""

    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    SUMMARIZED = "summarized"
    QUIZ_READY = "quiz_ready"


def parse_status(value: Any, *, default: Optional[ReviewStatus] = DEFAULT_STATUS) -> ReviewStatus:
    """Coerce *value* to a :class:`ReviewStatus`.

    Empty values resolve to *default*; unknown strings raise :class:`ValidationError`.
    """

    if isinstance(value, ReviewStatus):
        return value
    text = str(value).strip().lower() if value is not None else ""
    if not text:
        if default is None:
            raise ValidationError("Review status is required")
        return default
    try:
        return ReviewStatus(text)
    except ValueError as error:
        allowed = ", ".join(status.value for status in ReviewStatus)
        raise ValidationError(f"Unknown review status '{value}' (expected one of: {allowed})") from error


def validate_transition(old: ReviewStatus, new: ReviewStatus) -> None:
    if (old, new) not in ALLOWED_TRANSITIONS:
        raise IllegalTransitionError(
            f"Review status cannot change from '{old.value}' to '{new.value}'"
        )


def validate_rejection(current: ReviewStatus) -> None:
    if current not in REJECTABLE_STATUSES:
        raise IllegalTransitionError(
            f"Lectures in status '{current.value}' can no longer be rejected"
        )


def is_approval_edge(
    old_image: Optional[Mapping[str, Any]],
    new_image: Optional[Mapping[str, Any]],
) -> bool:
    """Return ``True`` only when a mutation moves a draft into ``approved``."""

    if not old_image or not new_image:
        return False
    old_status = str(old_image.get("status") or "")
    new_status = str(new_image.get("status") or "")
    return old_status != ReviewStatus.APPROVED.value and new_status == ReviewStatus.APPROVED.value


def derive_stage(status: ReviewStatus, summary: str, *, has_quiz: bool) -> LectureStage:
    if status is ReviewStatus.PENDING_REVIEW:
        return LectureStage.PENDING_REVIEW
    if not (summary or "").strip():
        return LectureStage.APPROVED
    if not has_quiz:
        return LectureStage.SUMMARIZED
    return LectureStage.QUIZ_READY


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DEFAULT_STATUS",
    "LectureStage",
    "REJECTABLE_STATUSES",
    "ReviewStatus",
    "derive_stage",
    "is_approval_edge",
    "parse_status",
    "validate_rejection",
    "validate_transition",
]
