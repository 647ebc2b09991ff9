from __future__ import annotations

import argparse

from manana_service.config import MANANA_DEFAULT_BATCH_SIZE, MANANA_DEFAULT_RESOLUTION
from manana_service.pipeline.types import RESOLUTIONS, Mode


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="manana-process",
        description="Colorize and/or translate a sequence of manga pages with a Gemini image model",
    )

    p.add_argument("inputs", nargs="+", help="Page image files, or a directory of them")
    p.add_argument(
        "--mode",
        required=True,
        choices=[m.value for m in Mode],
        help="Processing mode",
    )
    p.add_argument(
        "--batch-size",
        type=int,
        default=MANANA_DEFAULT_BATCH_SIZE,
        help="Pages per batch (default from env MANANA_DEFAULT_BATCH_SIZE)",
    )
    p.add_argument(
        "--resolution",
        default=MANANA_DEFAULT_RESOLUTION,
        type=str.upper,
        choices=list(RESOLUTIONS),
        help="Output resolution",
    )
    p.add_argument("--from-lang", default=None, help="Source language (translating modes)")
    p.add_argument("--to-lang", default=None, help="Target language (translating modes)")
    p.add_argument(
        "--bilingual",
        action="store_true",
        help="Show both the original and the translated text in each balloon",
    )
    p.add_argument("--out", default="manana-output", help="Directory for the generated pages")
    p.add_argument("--log-level", default="INFO", help="Python logging level (INFO, DEBUG, ...)")
    return p
