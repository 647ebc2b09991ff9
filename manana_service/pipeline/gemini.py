"""Gemini image-generation client.

The schedulers only depend on the ``ImageModelClient`` protocol: submit a list
of content parts, get back zero or more images. ``GeminiImageClient`` is the
production implementation on top of google-genai.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from functools import lru_cache
from typing import Any, Protocol

from google import genai
from google.genai import types

from manana_service.config import GEMINI_API_KEY, MANANA_IMAGE_MODEL
from manana_service.pipeline.errors import RequestNotAttemptedError
from manana_service.pipeline.types import ContentPart, GeneratedImage, ImagePart, TextPart

logger = logging.getLogger(__name__)


class ImageModelClient(Protocol):
    async def submit(
        self,
        api_key: str | None,
        parts: Sequence[ContentPart],
        resolution: str,
        correlation_id: str,
    ) -> list[GeneratedImage]: ...


@lru_cache(maxsize=8)
def _get_gemini_client(api_key: str) -> genai.Client:
    """Cached Gemini client per API key."""
    return genai.Client(api_key=api_key)


def to_genai_parts(parts: Sequence[ContentPart]) -> list[types.Part]:
    out: list[types.Part] = []
    for part in parts:
        if isinstance(part, TextPart):
            out.append(types.Part.from_text(text=part.text))
        elif isinstance(part, ImagePart):
            out.append(types.Part.from_bytes(data=part.data, mime_type=part.mime_type))
        else:
            raise TypeError(f"Unsupported content part: {type(part).__name__}")
    return out


def extract_images(response: Any) -> list[GeneratedImage]:
    """Collect inline images from the first candidate, in response order."""
    images: list[GeneratedImage] = []
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return images
    content = getattr(candidates[0], "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is None or not inline.data:
            continue
        images.append(GeneratedImage(data=inline.data, mime_type=inline.mime_type or "image/png"))
    return images


class GeminiImageClient:
    def __init__(self, *, model: str = MANANA_IMAGE_MODEL, default_api_key: str | None = GEMINI_API_KEY) -> None:
        self._model = model
        self._default_api_key = default_api_key

    def _client(self, api_key: str | None) -> genai.Client:
        key = api_key or self._default_api_key
        if not key:
            raise RequestNotAttemptedError(
                "API key missing: pass one with the run or set GEMINI_API_KEY"
            )
        try:
            return _get_gemini_client(key)
        except Exception as e:
            raise RequestNotAttemptedError(f"Could not create Gemini client: {e}") from e

    def _generate(self, client: genai.Client, parts: Sequence[ContentPart], resolution: str) -> list[GeneratedImage]:
        response = client.models.generate_content(
            model=self._model,
            contents=to_genai_parts(parts),
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
                image_config=types.ImageConfig(image_size=resolution),
            ),
        )
        return extract_images(response)

    async def submit(
        self,
        api_key: str | None,
        parts: Sequence[ContentPart],
        resolution: str,
        correlation_id: str,
    ) -> list[GeneratedImage]:
        client = self._client(api_key)
        images = await asyncio.to_thread(self._generate, client, parts, resolution)
        logger.debug("%s returned %d image(s)", correlation_id, len(images))
        return images
