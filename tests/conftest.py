"""Shared test fixtures for the nano-manana test suite."""

from __future__ import annotations

import io

import pytest
from PIL import Image


def make_png(width: int = 40, height: int = 60, color: tuple[int, int, int] = (255, 255, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def page_items() -> list[tuple[str, bytes, str]]:
    """Seven grayscale-looking pages, named so that name order == upload order."""
    return [(f"page_{i:02d}.png", make_png(40 + i, 60), "image/png") for i in range(7)]
