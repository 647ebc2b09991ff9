"""Pydantic request/response schemas for the page processing API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from manana_service.config import MANANA_DEFAULT_BATCH_SIZE, MANANA_DEFAULT_RESOLUTION
from manana_service.pipeline.types import Mode, PageView, ProcessingConfig, RunSnapshot

# -- Pages --------------------------------------------------------------------


class PageSummary(BaseModel):
    id: str
    ordinal: int
    name: str
    status: str
    processing_started_at: float | None = None
    has_result: bool
    result_mime_type: str | None = None
    error_kind: str | None = None

    @classmethod
    def from_view(cls, view: PageView) -> PageSummary:
        return cls(
            id=view.id,
            ordinal=view.ordinal,
            name=view.name,
            status=view.status.value,
            processing_started_at=view.processing_started_at,
            has_result=view.has_result,
            result_mime_type=view.result_mime_type,
            error_kind=view.error_kind,
        )


class PageListResponse(BaseModel):
    pages: list[PageSummary]
    total: int


class ReorderRequest(BaseModel):
    order: list[int] = Field(..., description="Current ordinals listed in their new order")


class SortRequest(BaseModel):
    descending: bool = Field(False, description="Sort by file name, Z to A when true")


# -- Runs ---------------------------------------------------------------------


class RunRequest(BaseModel):
    mode: Mode
    batch_size: int = Field(MANANA_DEFAULT_BATCH_SIZE, ge=1, le=32)
    resolution: str = Field(MANANA_DEFAULT_RESOLUTION, pattern="^[1-4][kK]$")
    from_language: str | None = Field(None, max_length=100)
    to_language: str | None = Field(None, max_length=100)
    display_both_languages: bool = False
    api_key: str | None = Field(None, description="Gemini API key; falls back to GEMINI_API_KEY")

    def to_config(self) -> ProcessingConfig:
        return ProcessingConfig(
            batch_size=self.batch_size,
            resolution=self.resolution,
            from_language=self.from_language,
            to_language=self.to_language,
            display_both_languages=self.display_both_languages,
            api_key=self.api_key,
        )


class RerunRequest(BaseModel):
    """Optional overrides; the last run's mode and settings are used otherwise."""

    run: RunRequest | None = None


class RunStatusResponse(BaseModel):
    is_run_active: bool
    mode: str | None = None
    processed_count: int
    total_pages: int
    current_batch_number: int
    total_batches: int
    last_error_kind: str | None = None
    retry_after_seconds: int | None = None
    pages: list[PageSummary]

    @classmethod
    def from_snapshot(cls, snap: RunSnapshot) -> RunStatusResponse:
        return cls(
            is_run_active=snap.is_run_active,
            mode=snap.mode.value if snap.mode else None,
            processed_count=snap.processed_count,
            total_pages=len(snap.pages),
            current_batch_number=snap.current_batch_number,
            total_batches=snap.total_batches,
            last_error_kind=snap.last_error_kind,
            retry_after_seconds=snap.retry_after_seconds,
            pages=[PageSummary.from_view(v) for v in snap.pages],
        )


class AcceptedResponse(BaseModel):
    accepted: bool
    detail: str


# -- Health -------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    error: str | None = None
