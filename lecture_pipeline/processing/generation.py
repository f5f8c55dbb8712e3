"""Access to the external generative model used by the AI stages."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Optional, Protocol

from openai import OpenAI

from ..config import GenerationSettings
from ..errors import TransientIOError
from ..services.events import emit_structured_event


LOGGER = logging.getLogger(__name__)


class GenerationError(TransientIOError):
    """Raised when the generative model fails, times out or returns nothing."""


class ContentGenerator(Protocol):
    """Protocol describing a text generation backend."""

    def generate(self, prompt: str) -> str:
        """Return the model's response to *prompt*."""


class OpenAIContentGenerator:
    """:class:`ContentGenerator` backed by the OpenAI chat completions API."""

    def __init__(
        self,
        settings: Optional[GenerationSettings] = None,
        *,
        api_key: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self._settings = settings or GenerationSettings()
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        key = self._api_key or os.environ.get(self._settings.api_key_env)
        if not key:
            raise GenerationError(
                f"{self._settings.api_key_env} is not set; cannot reach the generative model"
            )

        # Retries are owned by the work queue, not the SDK.
        self._client = OpenAI(
            api_key=key,
            timeout=self._settings.timeout_seconds,
            max_retries=0,
        )
        return self._client

    def generate(self, prompt: str) -> str:
        client = self._get_client()
        start = time.perf_counter()
        try:
            response = client.chat.completions.create(
                model=self._settings.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._settings.temperature,
                max_tokens=self._settings.max_output_tokens,
            )
        except Exception as error:  # noqa: BLE001 - SDK raises transport and API errors
            raise GenerationError(
                f"Generative model call failed: {error.__class__.__name__}: {error}"
            ) from error
        duration_ms = (time.perf_counter() - start) * 1000.0

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        text = (content or "").strip()
        emit_structured_event(
            "MODEL_CALL",
            "chat completion",
            payload={
                "model": self._settings.model,
                "prompt_chars": len(prompt),
                "response_chars": len(text),
            },
            duration_ms=duration_ms,
            level=logging.DEBUG,
        )
        if not text:
            raise GenerationError("Generative model returned an empty response")
        return text


__all__ = ["ContentGenerator", "GenerationError", "OpenAIContentGenerator"]
