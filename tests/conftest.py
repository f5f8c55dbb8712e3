from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lecture_pipeline.bootstrap import Bootstrapper
from lecture_pipeline.config import AppConfig
from lecture_pipeline.pipeline import build_pipeline
from lecture_pipeline.processing.generation import GenerationError


SAMPLE_SUMMARY = (
    "Sure, here is the summary you asked for.\n\n"
    "# Learning Objectives:\n- Explain what a variable is\n\n"
    "# Key Concepts:\n- Variable: a named value\n\n"
    "# Main Content:\nVariables hold values that programs reuse.\n\n"
    "# Examples & Applications:\n- Counting loop iterations\n\n"
    "# Key Takeaways:\n- Name things clearly"
)

SAMPLE_QUESTIONS: List[Dict[str, Any]] = [
    {
        "question": "What does a variable hold?",
        "options": ["A. A value", "B. A loop", "C. A file", "D. A network"],
        "answer": "A. A value",
        "explanation": "Variables name values.",
        "difficulty": "easy",
        "topicTag": "Variables",
    },
    {
        "question": "Which statement repeats work?",
        "options": ["A. print", "B. for", "C. import", "D. return"],
        "answer": "B. for",
        "explanation": "A for statement loops.",
        "difficulty": "MEDIUM",
    },
    {
        "question": "Why name variables clearly?",
        "options": ["Speed", "Readability", "Memory", "Security"],
        "answer": "Readability",
        "explanation": "Clear names make code readable.",
        "difficulty": "Easy",
        "topicTag": "Style",
    },
]


class FakeGenerator:
    """Scripted stand-in for the generative model."""

    def __init__(
        self,
        *,
        summary: str = SAMPLE_SUMMARY,
        questions: Optional[List[Dict[str, Any]]] = None,
        quiz_response: Optional[str] = None,
        fail: bool = False,
        on_generate: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.summary = summary
        self.questions = SAMPLE_QUESTIONS if questions is None else questions
        self.quiz_response = quiz_response
        self.fail = fail
        self.on_generate = on_generate
        self.prompts: List[str] = []

    @property
    def summary_prompts(self) -> List[str]:
        return [prompt for prompt in self.prompts if "lesson summary" in prompt]

    @property
    def quiz_prompts(self) -> List[str]:
        return [prompt for prompt in self.prompts if "multiple-choice quiz questions" in prompt]

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.on_generate is not None:
            self.on_generate(prompt)
        if self.fail:
            raise GenerationError("model timed out")
        if "multiple-choice quiz questions" in prompt:
            if self.quiz_response is not None:
                return self.quiz_response
            return "Here you go:\n```json\n" + json.dumps(self.questions) + "\n```"
        return self.summary


def _write_config(tmp_path: Path, mapping: Dict[str, Any]) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "default.json").write_text(json.dumps(mapping), encoding="utf-8")


@pytest.fixture()
def config_mapping() -> Dict[str, Any]:
    return {
        "storage_root": "storage",
        "database_file": "storage/lecture_pipeline.db",
        "quiz": {"question_count": 5, "quiz_size": 2, "regeneration_policy": "skip"},
        "workers": {"max_workers": 1, "upsert_attempts": 3, "poll_interval_seconds": 0.05},
    }


@pytest.fixture()
def temp_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, config_mapping: Dict[str, Any]
) -> AppConfig:
    _write_config(tmp_path, config_mapping)
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(config_mapping, base_path=tmp_path)

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def make_generator() -> Callable[..., FakeGenerator]:
    return FakeGenerator


@pytest.fixture()
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
def pipeline(temp_config: AppConfig, generator: FakeGenerator):
    instance = build_pipeline(temp_config, generator, event_emitter=None)
    yield instance
    instance.shutdown()
