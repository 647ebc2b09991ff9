"""Unit test conftest: scripted image client and a controllable clock."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import pytest

from manana_service.pipeline.types import ContentPart, GeneratedImage, TextPart

_PAGES_RE = re.compile(r"_pages_([\d_]+)_[0-9a-f]+$")
_RERUN_RE = re.compile(r"_rerun_page(\d+)_")
_REF_RE = re.compile(r"^This is reference page (\d+) ")


def targets_of(correlation_id: str) -> list[int]:
    """Target ordinals encoded in a correlation id."""
    m = _PAGES_RE.search(correlation_id)
    if m:
        return [int(x) - 1 for x in m.group(1).split("_")]
    m = _RERUN_RE.search(correlation_id)
    assert m, correlation_id
    return [int(m.group(1)) - 1]


def refs_of(parts: Sequence[ContentPart]) -> list[int]:
    """Reference ordinals, in the order their labels appear in a request."""
    out: list[int] = []
    for p in parts:
        if isinstance(p, TextPart):
            m = _REF_RE.match(p.text)
            if m:
                out.append(int(m.group(1)) - 1)
    return out


def result_bytes(ordinal: int) -> bytes:
    return f"out-{ordinal}".encode()


@dataclass
class Call:
    api_key: str | None
    parts: list[ContentPart]
    resolution: str
    correlation_id: str

    @property
    def targets(self) -> list[int]:
        return targets_of(self.correlation_id)

    @property
    def refs(self) -> list[int]:
        return refs_of(self.parts)


Handler = Callable[[Call], Awaitable[list[GeneratedImage]]]


@dataclass
class FakeImageClient:
    """Returns one image per target unless a handler says otherwise.

    ``log`` records ("start", targets) / ("end", targets) in order so tests can
    check that batches never overlap.
    """

    handler: Handler | None = None
    calls: list[Call] = field(default_factory=list)
    log: list[tuple[str, tuple[int, ...]]] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0

    async def submit(
        self,
        api_key: str | None,
        parts: Sequence[ContentPart],
        resolution: str,
        correlation_id: str,
    ) -> list[GeneratedImage]:
        call = Call(api_key, list(parts), resolution, correlation_id)
        self.calls.append(call)
        self.log.append(("start", tuple(call.targets)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.handler is not None:
                return await self.handler(call)
            await asyncio.sleep(0)
            return [GeneratedImage(result_bytes(o), "image/png") for o in call.targets]
        finally:
            self.in_flight -= 1
            self.log.append(("end", tuple(call.targets)))


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_client() -> FakeImageClient:
    return FakeImageClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
