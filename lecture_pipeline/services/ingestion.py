"""Ingestion of uploaded lecture artifacts into draft payloads."""

from __future__ import annotations

import io
import json
import logging
import time
import uuid
from pathlib import PurePosixPath
from typing import Any, Dict, Mapping, Optional

from ..errors import ValidationError
from .events import emit_stage_event
from .metadata import determine_difficulty, extract_title
from .storage import DraftPayload, DraftStore
from .text_cleanup import clean_extracted_text
from .work_queue import STAGE_STORE, WorkQueue


LOGGER = logging.getLogger(__name__)


class PdfExtractionError(ValidationError):
    """Raised when a PDF artifact cannot be turned into text."""


class PresentationExtractionError(ValidationError):
    """Raised when a slide deck cannot be turned into text."""


KIND_JSON = "json"
KIND_PDF = "pdf"
KIND_PPTX = "pptx"
KIND_TEXT = "text"

_PPTX_TYPES = {
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-powerpoint",
}

_SUFFIX_KINDS = {
    ".json": KIND_JSON,
    ".pdf": KIND_PDF,
    ".pptx": KIND_PPTX,
    ".ppt": KIND_PPTX,
    ".txt": KIND_TEXT,
    ".md": KIND_TEXT,
    ".markdown": KIND_TEXT,
}

_JSON_KEY_ALIASES = {
    "course_id": ("courseId", "courseID", "course_id"),
    "lecture_id": ("lectureId", "lectureID", "lecture_id"),
    "title": ("title",),
    "content": ("content",),
    "difficulty": ("difficulty",),
    "duration": ("duration",),
    "status": ("status",),
    "file_name": ("fileName", "file_name"),
    "file_type": ("fileType", "file_type"),
}


def resolve_kind(locator: str, content_type: Optional[str]) -> str:
    """Decide how to parse an artifact from its declared type, then its suffix."""

    declared = (content_type or "").split(";", 1)[0].strip().lower()
    if declared in {"application/json", "text/json"} or declared.endswith("+json"):
        return KIND_JSON
    if declared == "application/pdf":
        return KIND_PDF
    if declared in _PPTX_TYPES:
        return KIND_PPTX
    if declared.startswith("text/"):
        return KIND_TEXT

    suffix = PurePosixPath(_normalise_locator(locator)).suffix.lower()
    kind = _SUFFIX_KINDS.get(suffix)
    if kind is None:
        raise ValidationError(
            f"Unsupported artifact '{locator}' (content type: {content_type or 'unknown'})"
        )
    return kind


def _normalise_locator(locator: str) -> str:
    return str(locator or "").replace("\\", "/").strip()


def key_from_locator(locator: str) -> tuple[Optional[str], Optional[str]]:
    """Return ``(course_id, lecture_id)`` from a ``.../<course>/<lecture>/<file>`` path."""

    parts = [part for part in PurePosixPath(_normalise_locator(locator)).parts if part not in {"/", ""}]
    if len(parts) < 3:
        return None, None
    return parts[-3], parts[-2]


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as error:
        raise ValidationError("Artifact is not valid UTF-8 text") from error


def extract_pdf_text(data: bytes) -> str:
    """Return the text of every page of a PDF document."""

    try:
        import fitz  # type: ignore
    except ImportError as exc:  # pragma: no cover - runtime check
        raise PdfExtractionError("PyMuPDF (fitz) is not installed") from exc

    document = None
    try:
        document = fitz.open(stream=data, filetype="pdf")
        pages = [page.get_text("text").strip() for page in document]
    except Exception as error:  # noqa: BLE001 - PyMuPDF raises a variety of types
        raise PdfExtractionError(f"Unable to read PDF document: {error}") from error
    finally:
        if document is not None:
            document.close()
    return clean_extracted_text("\n\n".join(page for page in pages if page))


def _shape_text(shape) -> str:
    if getattr(shape, "has_table", False) and shape.has_table:
        rows = [
            "| " + " | ".join(cell.text.strip() for cell in row.cells) + " |"
            for row in shape.table.rows
        ]
        return "\n".join(rows)
    if getattr(shape, "has_text_frame", False) and shape.has_text_frame:
        return shape.text_frame.text.strip()
    return ""


def extract_pptx_text(data: bytes) -> tuple[str, str]:
    """Return ``(title, text)`` for a slide deck.

    The title comes from the document properties, falling back to the first
    slide title. Each slide's text is introduced by a ``Slide N:`` line.
    """

    try:
        from pptx import Presentation  # type: ignore
    except ImportError as exc:  # pragma: no cover - runtime check
        raise PresentationExtractionError("python-pptx is not installed") from exc

    try:
        presentation = Presentation(io.BytesIO(data))
    except Exception as error:  # noqa: BLE001 - zip and XML errors surface with many types
        raise PresentationExtractionError(f"Unable to read presentation: {error}") from error

    title = (presentation.core_properties.title or "").strip()
    sections = []
    for number, slide in enumerate(presentation.slides, start=1):
        if not title and slide.shapes.title is not None:
            title = slide.shapes.title.text.strip()
        texts = [text for text in (_shape_text(shape) for shape in slide.shapes) if text]
        if texts:
            sections.append(f"Slide {number}:\n" + "\n".join(texts))
    return title, clean_extracted_text("\n\n".join(sections), title=title)


def parse_json_artifact(data: bytes) -> Dict[str, Any]:
    try:
        document = json.loads(_decode_text(data))
    except json.JSONDecodeError as error:
        raise ValidationError(f"Malformed JSON payload: {error.msg} (line {error.lineno})") from error
    if not isinstance(document, dict):
        raise ValidationError("JSON payload must be an object")

    fields: Dict[str, Any] = {}
    for name, aliases in _JSON_KEY_ALIASES.items():
        for alias in aliases:
            value = document.get(alias)
            if value not in (None, ""):
                fields[name] = value
                break
    return fields


class IngestionWorker:
    """Turns raw artifacts into draft payloads and hands them to the store stage."""

    def __init__(self, queue: WorkQueue, store: DraftStore) -> None:
        self._queue = queue
        self._store = store

    def parse(
        self,
        locator: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> DraftPayload:
        kind = resolve_kind(locator, content_type)
        path = PurePosixPath(_normalise_locator(locator))
        course_id, lecture_id = key_from_locator(locator)
        fields: Dict[str, Any] = {}

        if kind == KIND_JSON:
            fields = parse_json_artifact(data)
        else:
            title = ""
            if kind == KIND_PPTX:
                title, text = extract_pptx_text(data)
            elif kind == KIND_PDF:
                text = extract_pdf_text(data)
            else:
                text = _decode_text(data).strip()
            if not text:
                raise ValidationError(f"Artifact '{locator}' contains no text")
            fields["content"] = text
            fields["title"] = title or extract_title(text) or path.stem
            fields["file_name"] = path.name
            fields["file_type"] = path.suffix.lstrip(".").lower()

        fields.setdefault("course_id", course_id)
        fields.setdefault("lecture_id", lecture_id)
        if not fields.get("difficulty") and fields.get("content"):
            fields["difficulty"] = determine_difficulty(str(fields["content"]))

        payload = DraftPayload.from_mapping(fields)
        LOGGER.debug(
            "Parsed %s artifact %s into %s/%s", kind, locator, payload.course_id, payload.lecture_id
        )
        return payload

    def ingest(
        self,
        locator: str,
        data: bytes,
        content_type: Optional[str] = None,
        *,
        delivery_id: Optional[str] = None,
    ) -> DraftPayload:
        """Parse an artifact and queue its upsert without waiting for the result.

        Every delivery gets its own ``store`` work item. A trigger source that redelivers
        the same upload passes the same *delivery_id* (an event id or etag) and resolves
        to the item already queued for it.
        """

        start = time.perf_counter()
        try:
            payload = self.parse(locator, data, content_type)
        except ValidationError as error:
            emit_stage_event(
                "ingest",
                "rejected",
                payload={"locator": locator, "error": str(error)},
                duration_ms=(time.perf_counter() - start) * 1000.0,
                level=logging.WARNING,
            )
            raise

        delivery = str(delivery_id or "").strip() or uuid.uuid4().hex
        item = self._queue.enqueue(
            STAGE_STORE,
            f"store:{_normalise_locator(locator)}:{delivery}",
            payload.to_dict(),
        )
        emit_stage_event(
            "ingest",
            "duplicate" if item.duplicate else "accepted",
            payload={
                "locator": locator,
                "course_id": payload.course_id,
                "lecture_id": payload.lecture_id,
                "work_item": item.id,
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return payload

    def store(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Handler for the ``store`` stage."""

        result = self._store.upsert(DraftPayload.from_mapping(payload))
        return {
            "outcome": "created" if result.created else "updated",
            "draft_id": result.current.id,
            "course_id": result.current.course_id,
            "lecture_id": result.current.lecture_id,
            "version": result.current.version,
        }


__all__ = [
    "IngestionWorker",
    "KIND_JSON",
    "KIND_PDF",
    "KIND_PPTX",
    "KIND_TEXT",
    "PdfExtractionError",
    "PresentationExtractionError",
    "extract_pdf_text",
    "extract_pptx_text",
    "key_from_locator",
    "parse_json_artifact",
    "resolve_kind",
]
