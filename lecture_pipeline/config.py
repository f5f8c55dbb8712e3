"""Configuration loading utilities for the lecture pipeline."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".lecture_pipeline_write_check"

CONFIG_ENV_VAR = "LECTURE_PIPELINE_CONFIG"

REGENERATION_POLICIES: Tuple[str, ...] = ("skip", "append", "replace")


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The returned flag tells the caller whether a
    fallback was used. When nothing can be prepared ``preferred`` is returned as-is so
    that the bootstrap step can report the problem.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _positive_int(section: str, key: str, value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as error:
        raise ValueError(f"{section}.{key} must be an integer (got {value!r})") from error
    if number <= 0:
        raise ValueError(f"{section}.{key} must be positive (got {number})")
    return number


@dataclass(frozen=True)
class GenerationSettings:
    """Parameters for the external generative model."""

    model: str = "gpt-4o-mini"
    timeout_seconds: float = 60.0
    temperature: float = 0.2
    max_output_tokens: int = 8192
    api_key_env: str = "OPENAI_API_KEY"

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "GenerationSettings":
        defaults = cls()
        timeout = float(mapping.get("timeout_seconds", defaults.timeout_seconds))
        if timeout <= 0:
            raise ValueError(f"generation.timeout_seconds must be positive (got {timeout})")
        return cls(
            model=str(mapping.get("model", defaults.model)),
            timeout_seconds=timeout,
            temperature=float(mapping.get("temperature", defaults.temperature)),
            max_output_tokens=_positive_int(
                "generation",
                "max_output_tokens",
                mapping.get("max_output_tokens", defaults.max_output_tokens),
            ),
            api_key_env=str(mapping.get("api_key_env", defaults.api_key_env)),
        )


@dataclass(frozen=True)
class QuizSettings:
    """Controls the size and policy of generated question pools."""

    question_count: int = 10
    passing_score: int = 70
    quiz_size: int = 10
    regeneration_policy: str = "skip"

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "QuizSettings":
        defaults = cls()
        policy = str(mapping.get("regeneration_policy", defaults.regeneration_policy)).lower()
        if policy not in REGENERATION_POLICIES:
            raise ValueError(
                f"quiz.regeneration_policy must be one of {', '.join(REGENERATION_POLICIES)} "
                f"(got {policy!r})"
            )
        passing_score = int(mapping.get("passing_score", defaults.passing_score))
        if not 0 <= passing_score <= 100:
            raise ValueError(f"quiz.passing_score must be within 0-100 (got {passing_score})")
        return cls(
            question_count=_positive_int(
                "quiz", "question_count", mapping.get("question_count", defaults.question_count)
            ),
            passing_score=passing_score,
            quiz_size=_positive_int("quiz", "quiz_size", mapping.get("quiz_size", defaults.quiz_size)),
            regeneration_policy=policy,
        )


@dataclass(frozen=True)
class DraftDefaults:
    """Values used when neither the incoming write nor the stored draft has one."""

    difficulty: str = "Medium"
    duration: str = "30 minutes"

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DraftDefaults":
        defaults = cls()
        return cls(
            difficulty=str(mapping.get("difficulty") or defaults.difficulty),
            duration=str(mapping.get("duration") or defaults.duration),
        )


@dataclass(frozen=True)
class WorkerSettings:
    max_workers: int = 2
    poll_interval_seconds: float = 1.0
    upsert_attempts: int = 5

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "WorkerSettings":
        defaults = cls()
        return cls(
            max_workers=_positive_int(
                "workers", "max_workers", mapping.get("max_workers", defaults.max_workers)
            ),
            poll_interval_seconds=float(
                mapping.get("poll_interval_seconds", defaults.poll_interval_seconds)
            ),
            upsert_attempts=_positive_int(
                "workers",
                "upsert_attempts",
                mapping.get("upsert_attempts", defaults.upsert_attempts),
            ),
        )


@dataclass(frozen=True)
class AppConfig:
    """Container describing runtime paths and pipeline settings."""

    storage_root: Path
    database_file: Path
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    quiz: QuizSettings = field(default_factory=QuizSettings)
    draft_defaults: DraftDefaults = field(default_factory=DraftDefaults)
    workers: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".lecture_pipeline" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            generation=GenerationSettings.from_mapping(mapping.get("generation") or {}),
            quiz=QuizSettings.from_mapping(mapping.get("quiz") or {}),
            draft_defaults=DraftDefaults.from_mapping(mapping.get("draft_defaults") or {}),
            workers=WorkerSettings.from_mapping(mapping.get("workers") or {}),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the configuration from ``config/default.json`` unless told otherwise.

    ``LECTURE_PIPELINE_CONFIG`` overrides the default location when no explicit path
    is passed.
    """

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        override = (os.environ.get(CONFIG_ENV_VAR) or "").strip()
        config_path = Path(override) if override else base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = [
    "AppConfig",
    "CONFIG_ENV_VAR",
    "DraftDefaults",
    "GenerationSettings",
    "QuizSettings",
    "REGENERATION_POLICIES",
    "WorkerSettings",
    "load_config",
]
