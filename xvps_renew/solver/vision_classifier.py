"""Gemini vision classifier for CAPTCHA variants.

One ``classify`` call = one ``generate_content`` request carrying every
image it is given plus a text instruction.  Errors are NOT swallowed here;
the solver decides what a failed call means.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol, Sequence

from xvps_renew.solver.image_transforms import TransformVariant

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


@dataclass
class ClassificationResponse:
    text: str


class Classifier(Protocol):
    def classify(
        self, variants: Sequence[TransformVariant], instruction: str,
    ) -> ClassificationResponse: ...


class GeminiClassifier:
    """Gemini vision model behind the ``Classifier`` interface."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.0,
        timeout_seconds: float | None = 60.0,
    ):
        self._api_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        self.model = model
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._client = None
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    def _get_client(self):
        if self._client is None:
            if not self._api_key:
                raise RuntimeError("GEMINI_API_KEY not set, cannot classify captcha")
            from google import genai
            from google.genai import types

            http_options = None
            if self.timeout_seconds:
                # HttpOptions.timeout is in milliseconds.
                http_options = types.HttpOptions(timeout=int(self.timeout_seconds * 1000))
            self._client = genai.Client(api_key=self._api_key, http_options=http_options)
        return self._client

    def classify(
        self, variants: Sequence[TransformVariant], instruction: str,
    ) -> ClassificationResponse:
        if not variants:
            raise ValueError("classify() needs at least one image")

        client = self._get_client()
        from google.genai import types

        parts = [
            types.Part.from_bytes(data=v.data, mime_type=v.mime_type)
            for v in variants
        ]
        parts.append(types.Part.from_text(text=instruction))

        response = client.models.generate_content(
            model=self.model,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(
                temperature=self.temperature,
                max_output_tokens=256,
            ),
        )

        if response.usage_metadata:
            self._total_input_tokens += response.usage_metadata.prompt_token_count or 0
            self._total_output_tokens += response.usage_metadata.candidates_token_count or 0

        text = response.text or ""
        logger.debug(
            "Gemini %s on %d image(s) -> %.80r",
            self.model, len(variants), text,
        )
        return ClassificationResponse(text=text)

    @property
    def total_tokens(self) -> dict:
        return {
            "input": self._total_input_tokens,
            "output": self._total_output_tokens,
        }
