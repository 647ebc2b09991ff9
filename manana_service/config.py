"""Environment-variable-driven configuration for the page processing service.

All config comes from env vars; per-run settings travel in ProcessingConfig.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# -- Image model --------------------------------------------------------------
GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY")
MANANA_IMAGE_MODEL: str = os.getenv("MANANA_IMAGE_MODEL", "gemini-3-pro-image-preview")

# -- Scheduling ---------------------------------------------------------------
MANANA_PAGE_TIMEOUT_SECONDS: float = float(os.getenv("MANANA_PAGE_TIMEOUT_SECONDS", "80"))
MANANA_TIMEOUT_POLL_SECONDS: float = float(os.getenv("MANANA_TIMEOUT_POLL_SECONDS", "1.0"))
MANANA_DEFAULT_BATCH_SIZE: int = int(os.getenv("MANANA_DEFAULT_BATCH_SIZE", "1"))
MANANA_DEFAULT_RESOLUTION: str = os.getenv("MANANA_DEFAULT_RESOLUTION", "2K")

# -- Auth ---------------------------------------------------------------------
MANANA_SHARED_TOKEN: str | None = os.getenv("MANANA_SHARED_TOKEN")

# -- Uploads ------------------------------------------------------------------
MANANA_MAX_UPLOAD_BYTES: int = int(os.getenv("MANANA_MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

# -- CORS ---------------------------------------------------------------------
MANANA_CORS_ALLOW_ORIGINS: list[str] = _env_csv(
    "MANANA_CORS_ALLOW_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
)
MANANA_CORS_ALLOW_METHODS: list[str] = _env_csv(
    "MANANA_CORS_ALLOW_METHODS",
    "GET,POST,DELETE,OPTIONS",
)
MANANA_CORS_ALLOW_HEADERS: list[str] = _env_csv(
    "MANANA_CORS_ALLOW_HEADERS",
    "Authorization,Content-Type",
)
MANANA_CORS_ALLOW_CREDENTIALS: bool = _env_bool("MANANA_CORS_ALLOW_CREDENTIALS", False)

# -- Server -------------------------------------------------------------------
IS_CLOUD_RUN: bool = bool(os.getenv("K_SERVICE"))
