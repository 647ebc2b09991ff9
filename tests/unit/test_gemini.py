"""Unit tests for the Gemini image client: mock genai, verify request config."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from manana_service.pipeline.errors import RequestNotAttemptedError
from manana_service.pipeline.gemini import GeminiImageClient, extract_images, to_genai_parts
from manana_service.pipeline.types import GeneratedImage, ImagePart, TextPart


def _response(*parts) -> SimpleNamespace:
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


def _image(data: bytes, mime: str | None = "image/png") -> SimpleNamespace:
    return SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type=mime), text=None)


def _text(text: str) -> SimpleNamespace:
    return SimpleNamespace(inline_data=None, text=text)


class TestExtractImages:
    def test_images_in_response_order(self):
        resp = _response(_text("Here you go"), _image(b"a"), _image(b"b", "image/webp"))
        assert extract_images(resp) == [
            GeneratedImage(b"a", "image/png"),
            GeneratedImage(b"b", "image/webp"),
        ]

    def test_no_candidates(self):
        assert extract_images(SimpleNamespace(candidates=None)) == []

    def test_missing_mime_defaults_to_png(self):
        assert extract_images(_response(_image(b"a", None))) == [GeneratedImage(b"a", "image/png")]

    def test_empty_inline_data_skipped(self):
        assert extract_images(_response(_image(b""))) == []


class TestToGenaiParts:
    def test_text_and_image(self):
        out = to_genai_parts([TextPart("hello"), ImagePart(b"img", "image/jpeg")])
        assert out[0].text == "hello"
        assert out[1].inline_data.data == b"img"
        assert out[1].inline_data.mime_type == "image/jpeg"

    def test_unknown_part_rejected(self):
        with pytest.raises(TypeError):
            to_genai_parts(["plain string"])  # type: ignore[list-item]


class TestGeminiImageClient:
    async def test_missing_key_is_not_attempted(self):
        client = GeminiImageClient(default_api_key=None)
        with pytest.raises(RequestNotAttemptedError, match="API key missing"):
            await client.submit(None, [TextPart("x")], "2K", "corr")

    @patch("manana_service.pipeline.gemini._get_gemini_client")
    async def test_client_construction_failure_is_not_attempted(self, mock_client_fn):
        mock_client_fn.side_effect = ValueError("bad key format")
        client = GeminiImageClient(default_api_key=None)
        with pytest.raises(RequestNotAttemptedError):
            await client.submit("k", [TextPart("x")], "2K", "corr")

    @patch("manana_service.pipeline.gemini._get_gemini_client")
    async def test_request_config_forwarded(self, mock_client_fn):
        mock_client = MagicMock()
        mock_client.models.generate_content.return_value = _response(_image(b"out"))
        mock_client_fn.return_value = mock_client

        client = GeminiImageClient(model="test-image-model", default_api_key="env-key")
        images = await client.submit(None, [TextPart("go"), ImagePart(b"src", "image/png")], "4K", "corr")

        assert images == [GeneratedImage(b"out", "image/png")]
        mock_client_fn.assert_called_once_with("env-key")
        kwargs = mock_client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "test-image-model"
        assert kwargs["config"].response_modalities == ["TEXT", "IMAGE"]
        assert kwargs["config"].image_config.image_size == "4K"
        assert len(kwargs["contents"]) == 2

    @patch("manana_service.pipeline.gemini._get_gemini_client")
    async def test_per_run_key_wins(self, mock_client_fn):
        mock_client = MagicMock()
        mock_client.models.generate_content.return_value = _response()
        mock_client_fn.return_value = mock_client

        client = GeminiImageClient(default_api_key="env-key")
        assert await client.submit("run-key", [TextPart("go")], "1K", "corr") == []
        mock_client_fn.assert_called_once_with("run-key")

    @patch("manana_service.pipeline.gemini._get_gemini_client")
    async def test_api_errors_propagate(self, mock_client_fn):
        mock_client = MagicMock()
        mock_client.models.generate_content.side_effect = RuntimeError("503 UNAVAILABLE")
        mock_client_fn.return_value = mock_client

        client = GeminiImageClient(default_api_key="k")
        with pytest.raises(RuntimeError, match="503"):
            await client.submit(None, [TextPart("go")], "1K", "corr")
