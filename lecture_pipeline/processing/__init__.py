"""Generative stages of the lecture pipeline."""

from .generation import ContentGenerator, GenerationError, OpenAIContentGenerator
from .quiz_generation import QuizGenerationWorker
from .summarization import SummarizationWorker

__all__ = [
    "ContentGenerator",
    "GenerationError",
    "OpenAIContentGenerator",
    "QuizGenerationWorker",
    "SummarizationWorker",
]
