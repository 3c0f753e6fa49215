"""Best-effort compression of a PDF towards a target size."""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .config import DEFAULT_PRESETS

logger = logging.getLogger(__name__)

GHOSTSCRIPT_PRESETS = {"default", "prepress", "printer", "ebook", "screen"}
MIN_TARGET_KB = 50
DEFAULT_TARGET_KB = 500
ERROR_TEXT_LIMIT = 300


@dataclass
class TransformResult:
    ok: bool
    error: str = ""


# (source, destination, preset) -> TransformResult
CompressTransform = Callable[[Path, Path, str], TransformResult]


@dataclass
class CompressionCandidate:
    """One preset's outcome; ``path`` is None once the file has been discarded."""

    preset_index: int
    preset: str
    path: Optional[Path]
    size_bytes: int = 0
    succeeded: bool = False
    error: str = ""

    def describe(self) -> dict:
        entry = {"preset": self.preset, "ok": self.succeeded}
        if self.succeeded:
            entry["size"] = self.size_bytes
        else:
            entry["error"] = self.error
        return entry


class CompressionSearchError(RuntimeError):
    """Raised when no preset produced a usable output."""

    def __init__(self, attempts: Sequence[CompressionCandidate]) -> None:
        self.attempts = list(attempts)
        lines = ["Compression failed for every preset:"]
        for attempt in self.attempts:
            lines.append(f"- {attempt.preset}: {attempt.error or 'unknown error'}")
        super().__init__("\n".join(lines))

    def to_payload(self) -> dict:
        return {
            "error": "Compression failed",
            "attempts": [attempt.describe() for attempt in self.attempts],
        }


def _truncate(value: str, limit: int = ERROR_TEXT_LIMIT) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}..."


def _run_cmd(cmd: list[str], timeout_s: int) -> dict:
    start = time.perf_counter()
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_s,
        )
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return {
            "ok": result.returncode == 0,
            "returncode": result.returncode,
            "stderr": (result.stderr or "").strip(),
            "timeout": False,
            "ms": elapsed_ms,
        }
    except subprocess.TimeoutExpired:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return {
            "ok": False,
            "returncode": None,
            "stderr": "",
            "timeout": True,
            "ms": elapsed_ms,
        }


def normalize_presets(presets: Iterable[str]) -> List[str]:
    """Lower-case preset names, strip a leading slash and reject unknown ones."""
    cleaned: List[str] = []
    for preset in presets:
        name = str(preset).strip().lstrip("/").lower()
        if name not in GHOSTSCRIPT_PRESETS:
            raise ValueError(f"Unknown compression preset: {preset}")
        cleaned.append(name)
    if not cleaned:
        raise ValueError("At least one compression preset is required")
    return cleaned


def ghostscript_transform(ghostscript: str = "gs", timeout_s: int = 300) -> CompressTransform:
    """Build a transform that rewrites a PDF with a Ghostscript PDFSETTINGS preset."""

    def _transform(source: Path, target: Path, preset: str) -> TransformResult:
        binary = shutil.which(ghostscript)
        if not binary:
            return TransformResult(False, "Ghostscript is not installed (set GHOSTSCRIPT_BIN)")
        cmd = [
            binary,
            "-sDEVICE=pdfwrite",
            "-dCompatibilityLevel=1.4",
            f"-dPDFSETTINGS=/{preset}",
            "-dNOPAUSE",
            "-dQUIET",
            "-dBATCH",
            "-dDetectDuplicateImages=true",
            "-dCompressFonts=true",
            "-dSubsetFonts=true",
            f"-sOutputFile={target}",
            str(source),
        ]
        result = _run_cmd(cmd, timeout_s)
        logger.debug("ghostscript /%s finished in %d ms", preset, result["ms"])
        if result["timeout"]:
            return TransformResult(False, f"timeout after {timeout_s}s")
        if not result["ok"]:
            detail = result["stderr"] or f"exit code {result['returncode']}"
            return TransformResult(False, _truncate(detail))
        return TransformResult(True)

    return _transform


def count_pages(path: Path) -> int:
    """Return the page count of an unencrypted, readable PDF."""
    try:
        reader = PdfReader(str(path))
    except (PdfReadError, OSError) as error:
        raise ValueError("PDF appears to be corrupted or unreadable.") from error
    if reader.is_encrypted:
        raise ValueError("PDF is encrypted")
    try:
        return len(reader.pages)
    except PdfReadError as error:
        raise ValueError("PDF appears to be corrupted or unreadable.") from error


def _check_output(path: Path, expected_pages: Optional[int]) -> str:
    """Return an error message for an unusable candidate, or an empty string."""
    if not path.exists() or path.stat().st_size == 0:
        return "transform produced no output"
    if expected_pages is None:
        return ""
    try:
        pages = count_pages(path)
    except ValueError as error:
        return f"output unreadable: {error}"
    if pages != expected_pages:
        return f"output has {pages} pages, expected {expected_pages}"
    return ""


def _discard(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        if path.exists():
            path.unlink()
    except OSError as error:
        logger.warning("Failed to remove %s: %s", path, error)


def probe_presets(
    input_path: Path,
    presets: Sequence[str],
    transform: CompressTransform,
    workdir: Path,
    expected_pages: Optional[int] = None,
) -> Iterator[CompressionCandidate]:
    """
    Run ``transform`` once per preset, in order, yielding each outcome.

    The generator is lazy: a preset is only invoked when the consumer asks for
    the next candidate, so stopping iteration skips the remaining presets.
    Outputs that are missing, empty or (when ``expected_pages`` is given) lose
    pages count as failures.
    """
    run_id = uuid.uuid4().hex[:8]
    for index, preset in enumerate(presets):
        target = workdir / f"{input_path.stem}_{run_id}_{index}_{preset}.pdf"
        try:
            outcome = transform(input_path, target, preset)
        except Exception as error:  # noqa: BLE001
            outcome = TransformResult(False, _truncate(str(error) or error.__class__.__name__))
        if outcome.ok:
            problem = _check_output(target, expected_pages)
            if problem:
                outcome = TransformResult(False, problem)
        if not outcome.ok:
            _discard(target)
            yield CompressionCandidate(index, preset, None, error=outcome.error or "failed")
            continue
        yield CompressionCandidate(
            index, preset, target, size_bytes=target.stat().st_size, succeeded=True
        )


@dataclass
class BestResultTracker:
    """Keep the smallest successful candidate, deleting every other output."""

    target_bytes: int
    best: Optional[CompressionCandidate] = None
    attempts: List[CompressionCandidate] = field(default_factory=list)
    history: List[int] = field(default_factory=list)

    def offer(self, candidate: CompressionCandidate) -> bool:
        """Record a candidate; return True once it meets the target size."""
        self.attempts.append(candidate)
        if not candidate.succeeded:
            return False
        if self.best is None or candidate.size_bytes < self.best.size_bytes:
            previous, self.best = self.best, candidate
            if previous is not None:
                _discard(previous.path)
                previous.path = None
        else:
            _discard(candidate.path)
            candidate.path = None
        self.history.append(self.best.size_bytes)
        return candidate.size_bytes <= self.target_bytes

    @property
    def target_met(self) -> bool:
        return self.best is not None and self.best.size_bytes <= self.target_bytes

    def discard_best(self) -> None:
        if self.best is not None:
            _discard(self.best.path)
            self.best.path = None


def parse_target_size(target, unit: str | None = "KB") -> int:
    """
    Convert a target size and unit (KB or MB) into bytes.

    Targets below 50 KB are raised to 50 KB.

    Raises:
        ValueError: If the target is not a positive number or the unit is unknown.
    """
    if target is None or str(target).strip() == "":
        value = float(DEFAULT_TARGET_KB)
        unit = "KB"
    else:
        try:
            value = float(target)
        except (TypeError, ValueError) as error:
            raise ValueError("Target size must be a number") from error
    if value != value or value <= 0 or value == float("inf"):
        raise ValueError("Target size must be a positive number")
    resolved_unit = str(unit or "KB").strip().upper()
    if resolved_unit == "KB":
        size_bytes = value * 1024
    elif resolved_unit == "MB":
        size_bytes = value * 1024 * 1024
    else:
        raise ValueError("Unit must be KB or MB")
    return int(max(size_bytes, MIN_TARGET_KB * 1024))


def compress_to_size(
    input_path: Path,
    output_path: Path,
    target_bytes: int,
    presets: Sequence[str] = DEFAULT_PRESETS,
    transform: CompressTransform | None = None,
) -> tuple[Path, dict]:
    """
    Try presets from best quality to strongest compression until one fits.

    The smallest successful output is kept even when none meets the target.
    Every other candidate is deleted as soon as it is beaten.

    Returns:
        tuple[Path, dict]: ``output_path`` and metadata describing the
        achieved size, whether the target was met and every attempt.

    Raises:
        ValueError: If the input is missing/empty, the target is not positive
            or a preset name is unknown.
        CompressionSearchError: If every preset failed.
    """
    if not input_path.exists() or input_path.stat().st_size == 0:
        raise ValueError("PDF file is required")
    if target_bytes <= 0:
        raise ValueError("Target size must be a positive number")
    ordered = normalize_presets(presets)
    expected_pages = count_pages(input_path)
    transform = transform or ghostscript_transform()
    original_bytes = input_path.stat().st_size

    tracker = BestResultTracker(target_bytes)
    try:
        candidates = probe_presets(
            input_path, ordered, transform, output_path.parent, expected_pages
        )
        for candidate in candidates:
            met = tracker.offer(candidate)
            if candidate.succeeded:
                logger.info(
                    "Preset %s produced %d bytes (target %d)",
                    candidate.preset,
                    candidate.size_bytes,
                    target_bytes,
                )
            else:
                logger.info("Preset %s failed: %s", candidate.preset, candidate.error)
            if met:
                break

        best = tracker.best
        if best is None or best.path is None:
            raise CompressionSearchError(tracker.attempts)

        if output_path.exists():
            output_path.unlink()
        best.path.replace(output_path)
        best.path = output_path
    except BaseException:
        tracker.discard_best()
        raise

    output_bytes = output_path.stat().st_size
    metadata = {
        "status": "target_met" if tracker.target_met else "best_effort",
        "preset": best.preset,
        "original_bytes": original_bytes,
        "target_bytes": target_bytes,
        "output_bytes": output_bytes,
        "target_kb": target_bytes // 1024,
        "output_kb": round(output_bytes / 1024),
        "target_met": tracker.target_met,
        "attempts": [attempt.describe() for attempt in tracker.attempts],
    }
    logger.info(
        "Compression picked %s: %d -> %d bytes (target met: %s)",
        best.preset,
        original_bytes,
        output_bytes,
        tracker.target_met,
    )
    return output_path, metadata
