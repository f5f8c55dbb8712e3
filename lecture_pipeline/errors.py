"""Error taxonomy shared by the pipeline stages."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for every failure raised by the pipeline."""


class ValidationError(PipelineError):
    """Raised when a payload is malformed or lacks its composite key."""


class IllegalTransitionError(ValidationError):
    """Raised when a review-status change is not permitted."""


class NotFoundError(PipelineError):
    """Raised when a narrow update targets a record that does not exist."""


class TransientIOError(PipelineError):
    """Raised when the store or the generative model is unavailable."""


class ConflictError(TransientIOError):
    """Raised when an optimistic write keeps losing to concurrent writers."""


class PartialWriteError(PipelineError):
    """Raised when derived data would reference base data that was never written."""


__all__ = [
    "ConflictError",
    "IllegalTransitionError",
    "NotFoundError",
    "PartialWriteError",
    "PipelineError",
    "TransientIOError",
    "ValidationError",
]
