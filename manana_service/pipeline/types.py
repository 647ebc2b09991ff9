from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PageStatus(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class Mode(str, Enum):
    COLORIZE = "colorize"
    TRANSLATE = "translate"
    COLORIZE_AND_TRANSLATE = "colorize-and-translate"

    @property
    def translates(self) -> bool:
        return self is not Mode.COLORIZE


RESOLUTIONS: tuple[str, ...] = ("1K", "2K", "3K", "4K")


def normalize_resolution(value: str) -> str:
    res = value.strip().upper()
    if res not in RESOLUTIONS:
        raise ValueError(f"Unsupported resolution: {value!r} (expected one of {', '.join(RESOLUTIONS)})")
    return res


@dataclass
class Page:
    id: str
    ordinal: int
    name: str
    source_bytes: bytes = field(repr=False)
    source_mime_type: str
    status: PageStatus = PageStatus.PENDING
    processing_started_at: float | None = None
    result_bytes: bytes | None = field(default=None, repr=False)
    result_mime_type: str | None = None
    error_kind: str | None = None
    attempt: int = 0  # bumped each time the page enters processing

    @property
    def has_result(self) -> bool:
        return self.result_bytes is not None


@dataclass(frozen=True)
class ProcessingConfig:
    batch_size: int
    resolution: str  # 1K|2K|3K|4K
    from_language: str | None = None
    to_language: str | None = None
    display_both_languages: bool = False
    api_key: str | None = field(default=None, repr=False)

    def validate(self, mode: Mode) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        normalize_resolution(self.resolution)
        if mode.translates:
            missing = [
                k
                for k, v in {
                    "from_language": self.from_language,
                    "to_language": self.to_language,
                }.items()
                if not (v and v.strip())
            ]
            if missing:
                raise ValueError(f"Mode {mode.value} requires: {', '.join(missing)}")


@dataclass(frozen=True)
class Attempt:
    """One stay of a page in ``processing``; outcomes must name the attempt they answer."""

    page_id: str
    number: int


@dataclass(frozen=True)
class Batch:
    batch_number: int
    target_ordinals: tuple[int, ...]
    reference_ordinals: tuple[int, ...] = ()


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes = field(repr=False)
    mime_type: str


@dataclass(frozen=True)
class ProcessedResult:
    ordinal: int
    image_bytes: bytes = field(repr=False)
    mime_type: str


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    data: bytes = field(repr=False)
    mime_type: str


ContentPart = TextPart | ImagePart


@dataclass
class RunState:
    mode: Mode
    config: ProcessingConfig
    completed_ordinals: list[int] = field(default_factory=list)  # completion order
    total_batches: int = 0
    current_batch_number: int = 0


@dataclass(frozen=True)
class PageView:
    id: str
    ordinal: int
    name: str
    status: PageStatus
    processing_started_at: float | None
    has_result: bool
    result_mime_type: str | None
    error_kind: str | None


@dataclass(frozen=True)
class RunSnapshot:
    pages: tuple[PageView, ...]
    processed_count: int
    is_run_active: bool
    mode: Mode | None
    current_batch_number: int
    total_batches: int
    last_error_kind: str | None
    retry_after_seconds: int | None
