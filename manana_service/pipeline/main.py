from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path

from manana_service.logging_config import setup_logging
from manana_service.pipeline.cli import build_parser
from manana_service.pipeline.controller import PipelineController
from manana_service.pipeline.gemini import GeminiImageClient
from manana_service.pipeline.observer import LoggingObserver
from manana_service.pipeline.types import Mode, PageStatus, ProcessingConfig

_IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp"}


def collect_inputs(inputs: list[str]) -> list[Path]:
    """Expand directories (sorted by name) and keep image files in argument order."""
    paths: list[Path] = []
    for raw in inputs:
        p = Path(raw)
        if p.is_dir():
            paths.extend(sorted(c for c in p.iterdir() if c.suffix.lower() in _IMAGE_EXTS))
        elif p.is_file():
            paths.append(p)
        else:
            raise FileNotFoundError(f"No such file or directory: {raw}")
    return paths


def output_name(ordinal: int, mime_type: str) -> str:
    ext = mimetypes.guess_extension(mime_type) or ".png"
    if ext == ".jpe":
        ext = ".jpg"
    return f"{ordinal + 1}p{ext}"


async def _amain(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level.upper())
    logger = logging.getLogger("manana_service.pipeline")

    paths = collect_inputs(args.inputs)
    if not paths:
        logger.warning("No page images found. Exiting.")
        return 0

    mode = Mode(args.mode)
    config = ProcessingConfig(
        batch_size=args.batch_size,
        resolution=args.resolution,
        from_language=args.from_lang,
        to_language=args.to_lang,
        display_both_languages=bool(args.bilingual),
    )

    async with PipelineController(GeminiImageClient(), observer=LoggingObserver()) as controller:
        controller.add_pages(
            (p.name, p.read_bytes(), mimetypes.guess_type(p.name)[0] or "image/png") for p in paths
        )
        try:
            snap = await controller.start_run(mode, config)
        except ValueError as e:
            logger.error("Invalid settings: %s", e)
            return 1

        out_dir = Path(args.out)
        out_dir.mkdir(parents=True, exist_ok=True)
        for view in snap.pages:
            result = controller.store.result_of(view.ordinal)
            if result is None:
                continue
            (out_dir / output_name(result.ordinal, result.mime_type)).write_bytes(result.image_bytes)

    statuses = [v.status for v in snap.pages]
    failed = sum(1 for s in statuses if s is PageStatus.FAILED)
    pending = sum(1 for s in statuses if s is PageStatus.PENDING)
    logger.info(
        "DONE mode=%s done=%d failed=%d out=%s",
        mode.value,
        snap.processed_count,
        failed,
        args.out,
    )
    if pending:
        logger.error("Run aborted (%s)", snap.last_error_kind)
        return 1
    return 0 if failed == 0 else 2


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
