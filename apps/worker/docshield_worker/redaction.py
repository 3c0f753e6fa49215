"""Permanent PII redaction: rasterize, mask, rebuild from images."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Callable, Iterator, List, Sequence, Tuple

import img2pdf
from PIL import Image

from .archive import ArchiveWriter
from .config import RedactionSettings
from .geometry import DeviceRect, RedactionBox, device_rect_to_box, fragment_device_rect
from .patterns import PIIPattern, build_patterns, match_fragment
from .sandbox import RenderSandbox, SandboxContext, SandboxError, TextFragment

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)
MASK_COLOR = (0, 0, 0)
ARCHIVE_NAME = "redacted_pdfs.zip"

_PDF_SUFFIX = re.compile(r"\.pdf$", re.IGNORECASE)


@dataclass(frozen=True)
class LocatedFragment:
    fragment: TextFragment
    rect: DeviceRect


@dataclass
class RedactedPage:
    index: int
    image: Image.Image
    boxes: List[RedactionBox]


@dataclass
class RedactedDocument:
    pdf_bytes: bytes
    page_boxes: List[List[RedactionBox]]

    @property
    def page_count(self) -> int:
        return len(self.page_boxes)

    @property
    def box_count(self) -> int:
        return sum(len(boxes) for boxes in self.page_boxes)


@dataclass
class BatchResult:
    """Outcome for one input file of a batch."""

    filename: str
    entry_name: str
    status: str
    message: str = ""
    pages: int = 0
    boxes: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class BatchReport:
    zip_path: Path
    results: List[BatchResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded


def rasterize_page(context: SandboxContext, index: int, scale: float) -> Image.Image:
    """Render a page to an opaque RGB image over a white background."""
    png = context.render_page(index, scale)
    with Image.open(BytesIO(png)) as rendered:
        layer = rendered.convert("RGBA")
    canvas = Image.new("RGBA", layer.size, WHITE + (255,))
    canvas.alpha_composite(layer)
    return canvas.convert("RGB")


def locate_text(context: SandboxContext, index: int, scale: float) -> Iterator[LocatedFragment]:
    """Yield non-blank fragments of a page with their device-space rectangles."""
    for fragment in context.get_page_text(index):
        text = fragment.text.strip()
        if not text:
            continue
        rect = fragment_device_rect(
            fragment.transform,
            scale,
            len(text),
            width=fragment.width,
            height=fragment.height,
        )
        yield LocatedFragment(fragment, rect)


def find_redaction_boxes(
    located: Iterator[LocatedFragment] | Sequence[LocatedFragment],
    patterns: Sequence[PIIPattern],
    raster_size: Tuple[int, int],
    padding: float = 2,
) -> List[RedactionBox]:
    """Turn fragments that match any pattern into padded image-space boxes."""
    width, height = raster_size
    boxes: List[RedactionBox] = []
    for item in located:
        if not match_fragment(item.fragment.text.strip(), patterns):
            continue
        box = device_rect_to_box(item.rect, width, height, padding)
        if box.width and box.height:
            boxes.append(box)
    return boxes


def composite_masks(image: Image.Image, boxes: Sequence[RedactionBox]) -> Image.Image:
    """Paint every box as an opaque fill directly onto ``image``."""
    for box in boxes:
        image.paste(MASK_COLOR, box.as_rectangle())
    return image


def _png_bytes(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def rebuild_document(images: Sequence[Image.Image]) -> bytes:
    """
    Build a new PDF whose pages are exactly the given images.

    Each page is sized to its image's pixel dimensions (one pixel per point)
    and holds nothing but that image, so no text, vector content or metadata
    from the source survives.

    Raises:
        ValueError: If there are no images or the PDF could not be produced.
    """
    if not images:
        raise ValueError("No pages to rebuild")
    layout = img2pdf.get_fixed_dpi_layout_fun((72, 72))
    pdf_bytes = img2pdf.convert([_png_bytes(image) for image in images], layout_fun=layout)
    if pdf_bytes is None:
        raise ValueError("Failed to render images to PDF")
    return pdf_bytes


def redact_pages(
    context: SandboxContext,
    patterns: Sequence[PIIPattern],
    scale: float = 2.0,
    padding: float = 2,
) -> Iterator[RedactedPage]:
    """Rasterize and mask the loaded document page by page, in order."""
    for index in range(context.page_count):
        image = rasterize_page(context, index, scale)
        boxes = find_redaction_boxes(
            locate_text(context, index, scale), patterns, image.size, padding
        )
        composite_masks(image, boxes)
        yield RedactedPage(index, image, boxes)


def redact_document(
    context: SandboxContext,
    data: bytes,
    patterns: Sequence[PIIPattern],
    scale: float = 2.0,
    padding: float = 2,
) -> RedactedDocument:
    """Redact one PDF inside an existing sandbox context."""
    context.load_document(data)
    images: List[Image.Image] = []
    page_boxes: List[List[RedactionBox]] = []
    for page in redact_pages(context, patterns, scale, padding):
        images.append(page.image)
        page_boxes.append(page.boxes)
    return RedactedDocument(rebuild_document(images), page_boxes)


def output_stem(filename: str) -> str:
    """Strip directories and a trailing .pdf (any case) from an upload name."""
    name = Path(filename or "file.pdf").name
    return _PDF_SUFFIX.sub("", name) or "file"


def _unique_stems(filenames: Sequence[str]) -> List[str]:
    seen: dict[str, int] = {}
    stems: List[str] = []
    for filename in filenames:
        stem = output_stem(filename)
        count = seen.get(stem, 0) + 1
        seen[stem] = count
        stems.append(stem if count == 1 else f"{stem}-{count}")
    return stems


def _error_note(filename: str, message: str) -> str:
    return f"Failed: {filename}\nReason: {message}\n"


def _validate_batch(inputs: Sequence[Tuple[str, bytes]], settings: RedactionSettings) -> None:
    if not inputs:
        raise ValueError("No PDFs uploaded")
    if len(inputs) > settings.max_files:
        raise ValueError(f"At most {settings.max_files} PDFs can be redacted at once")


def _safe_close(sandbox: RenderSandbox | None) -> None:
    if sandbox is None:
        return
    try:
        sandbox.close()
    except Exception as error:  # noqa: BLE001
        logger.warning("Failed to close rendering sandbox: %s", error)


def _safe_unlink(path: Path) -> None:
    try:
        if path.exists():
            path.unlink()
    except OSError as error:
        logger.warning("Failed to remove %s: %s", path, error)


def redact_batch(
    inputs: Sequence[Tuple[str, bytes]],
    output_dir: Path,
    patterns: Sequence[PIIPattern] | None = None,
    settings: RedactionSettings | None = None,
    launcher: Callable[..., RenderSandbox] = RenderSandbox.launch,
) -> BatchReport:
    """
    Redact every ``(filename, data)`` input into a single ZIP archive.

    One sandbox is launched for the whole batch and a fresh context is used
    per file. A file that fails becomes an ``<stem>_ERROR.txt`` note instead of
    an ``<stem>_REDACTED.pdf``, so the archive always holds one entry per
    input, in input order.

    Raises:
        ValueError: If no inputs (or too many) are supplied; raised before the
            sandbox is launched.
        SandboxError: If the sandbox cannot be launched or dies mid-batch. The
            partial archive is removed and the sandbox released.
    """
    settings = settings or RedactionSettings()
    _validate_batch(inputs, settings)
    active_patterns = list(patterns) if patterns is not None else build_patterns(None)
    zip_path = output_dir / ARCHIVE_NAME
    report = BatchReport(zip_path)
    stems = _unique_stems([name for name, _ in inputs])

    sandbox: RenderSandbox | None = None
    archive: ArchiveWriter | None = None
    try:
        sandbox = launcher(mode=settings.sandbox_mode, timeout=settings.sandbox_timeout)
        archive = ArchiveWriter(zip_path)
        for (filename, data), stem in zip(inputs, stems):
            result = _redact_one(sandbox, filename, data, stem, active_patterns, settings, archive)
            report.results.append(result)
        archive.finalize()
    except BaseException:
        if archive is not None:
            try:
                archive.close()
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to close partial archive: %s", error)
        _safe_unlink(zip_path)
        raise
    finally:
        _safe_close(sandbox)

    logger.info(
        "Redacted batch of %d file(s): %d succeeded, %d failed",
        len(report.results),
        report.succeeded,
        report.failed,
    )
    return report


def _redact_one(
    sandbox: RenderSandbox,
    filename: str,
    data: bytes,
    stem: str,
    patterns: Sequence[PIIPattern],
    settings: RedactionSettings,
    archive: ArchiveWriter,
) -> BatchResult:
    try:
        if len(data) > settings.max_file_bytes:
            limit_mb = settings.max_file_bytes // (1024 * 1024)
            raise ValueError(f"File exceeds the {limit_mb} MB limit")
        with sandbox.new_context() as context:
            redacted = redact_document(
                context, data, patterns, settings.scale, settings.padding
            )
    except SandboxError:
        raise
    except Exception as error:  # noqa: BLE001
        message = str(error) or error.__class__.__name__
        logger.warning("Redaction failed for %s: %s", filename, message)
        entry_name = f"{stem}_ERROR.txt"
        archive.append(entry_name, _error_note(filename, message))
        return BatchResult(filename, entry_name, "error", message=message)

    entry_name = f"{stem}_REDACTED.pdf"
    archive.append(entry_name, redacted.pdf_bytes)
    return BatchResult(
        filename,
        entry_name,
        "success",
        pages=redacted.page_count,
        boxes=redacted.box_count,
    )
