"""Environment-driven settings for the worker pipelines."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Tuple

DEFAULT_PRESETS = ("printer", "ebook", "screen")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value.strip() if value and value.strip() else default


@dataclass(frozen=True)
class RedactionSettings:
    """Tuning knobs for the redaction pipeline."""

    scale: float = 2.0
    padding: int = 2
    max_files: int = 50
    max_file_bytes: int = 50 * 1024 * 1024
    sandbox_mode: str = "process"
    sandbox_timeout: float = 120.0


@dataclass(frozen=True)
class CompressionSettings:
    """Ghostscript location and preset order for size-constrained compression."""

    ghostscript: str = "gs"
    presets: Tuple[str, ...] = DEFAULT_PRESETS
    timeout_seconds: int = 300


def default_ghostscript_binary() -> str:
    """Return the Ghostscript executable name, honouring GHOSTSCRIPT_BIN."""
    fallback = "gswin64c" if sys.platform.startswith("win") else "gs"
    return _env_str("GHOSTSCRIPT_BIN", fallback)


def load_redaction_settings() -> RedactionSettings:
    """Read redaction settings from the environment."""
    mode = _env_str("DOCSHIELD_SANDBOX_MODE", "process").lower()
    if mode not in {"process", "inline"}:
        mode = "process"
    return RedactionSettings(
        scale=max(1.0, _env_float("DOCSHIELD_REDACT_SCALE", 2.0)),
        padding=max(0, _env_int("DOCSHIELD_REDACT_PADDING", 2)),
        max_files=max(1, _env_int("DOCSHIELD_REDACT_MAX_FILES", 50)),
        max_file_bytes=max(1, _env_int("DOCSHIELD_REDACT_MAX_FILE_MB", 50)) * 1024 * 1024,
        sandbox_mode=mode,
        sandbox_timeout=max(1.0, _env_float("DOCSHIELD_SANDBOX_TIMEOUT_SECONDS", 120.0)),
    )


def load_compression_settings() -> CompressionSettings:
    """Read compression settings from the environment."""
    raw_presets = _env_str("DOCSHIELD_COMPRESS_PRESETS", ",".join(DEFAULT_PRESETS))
    presets = tuple(
        part.strip().lstrip("/").lower() for part in raw_presets.split(",") if part.strip()
    )
    return CompressionSettings(
        ghostscript=default_ghostscript_binary(),
        presets=presets or DEFAULT_PRESETS,
        timeout_seconds=max(1, _env_int("DOCSHIELD_COMPRESS_TIMEOUT_SECONDS", 300)),
    )
