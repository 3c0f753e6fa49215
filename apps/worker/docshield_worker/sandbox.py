"""Isolated rendering sandbox backed by PyMuPDF.

The sandbox is the only place that touches the rendering engine. Callers get a
narrow capability surface: ``launch()`` a sandbox, open a lightweight context
per document, then ``load_document``, ``render_page`` and ``get_page_text``.

In ``process`` mode the engine runs in a single dedicated worker process so a
crash or hang inside the renderer cannot take the worker down with it. In
``inline`` mode it runs in the calling process, which is what the tests use.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import fitz

from .geometry import Matrix

logger = logging.getLogger(__name__)


class SandboxError(RuntimeError):
    """Raised when the rendering sandbox cannot be launched or has died."""


@dataclass(frozen=True)
class TextFragment:
    """A positioned run of text in page space (points, y-up)."""

    text: str
    transform: Matrix
    width: Optional[float] = None
    height: Optional[float] = None


def _open_document(data: bytes) -> fitz.Document:
    """Open PDF bytes, rejecting corrupt, encrypted and empty documents."""
    try:
        document = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as error:
        raise ValueError("PDF appears to be corrupted or unreadable.") from error
    if document.needs_pass:
        document.close()
        raise ValueError("PDF is encrypted")
    if document.page_count == 0:
        document.close()
        raise ValueError("PDF has no pages")
    return document


# Documents opened inside the engine, keyed by context token. In process mode
# this lives in the worker process, so PDF bytes cross the boundary once.
_OPEN_DOCUMENTS: Dict[str, fitz.Document] = {}


def _open_slot(token: str, data: bytes) -> int:
    document = _open_document(data)
    _release(token)
    _OPEN_DOCUMENTS[token] = document
    return document.page_count


def _release(token: str) -> None:
    document = _OPEN_DOCUMENTS.pop(token, None)
    if document is not None:
        document.close()


def _load_page(token: str, index: int) -> fitz.Page:
    document = _OPEN_DOCUMENTS.get(token)
    if document is None:
        raise RuntimeError("No document loaded in sandbox context")
    if index < 0 or index >= document.page_count:
        raise ValueError(f"Page index {index} out of range")
    return document.load_page(index)


def _render_page(token: str, index: int, scale: float) -> bytes:
    """Render one page to PNG bytes at ``scale`` pixels per point."""
    page = _load_page(token, index)
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
    return pix.tobytes("png")


def _page_text(token: str, index: int) -> List[TextFragment]:
    """Extract text spans with their page-space placement.

    PyMuPDF reports span boxes top-down on the unrotated page. They are moved
    onto the displayed page (the one ``get_pixmap`` draws) and flipped to the
    PDF y-up convention so the transform reads like a text matrix.
    """
    page = _load_page(token, index)
    rotation = page.rotation_matrix
    page_height = page.rect.height
    payload = page.get_text("dict")
    fragments: List[TextFragment] = []
    for block in payload.get("blocks", []):
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                bbox = (fitz.Rect(span["bbox"]) * rotation).normalize()
                size = float(span.get("size") or min(bbox.width, bbox.height))
                fragments.append(
                    TextFragment(
                        text=span.get("text", ""),
                        transform=(size, 0.0, 0.0, size, bbox.x0, page_height - bbox.y1),
                        width=bbox.width,
                        height=bbox.height,
                    )
                )
    return fragments


def _engine_version() -> str:
    return str(getattr(fitz, "VersionBind", "unknown"))


class SandboxContext:
    """Per-document view onto a sandbox; cheap to create and discard."""

    def __init__(self, sandbox: "RenderSandbox") -> None:
        self._sandbox = sandbox
        self._token = uuid.uuid4().hex
        self._loaded = False
        self.page_count = 0

    def __enter__(self) -> "SandboxContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def load_document(self, data: bytes) -> int:
        """Load PDF bytes into the context and return the page count."""
        self.page_count = self._sandbox._call(_open_slot, self._token, data)
        self._loaded = True
        self._sandbox._tokens.add(self._token)
        return self.page_count

    def render_page(self, index: int, scale: float) -> bytes:
        self._require_loaded()
        return self._sandbox._call(_render_page, self._token, index, scale)

    def get_page_text(self, index: int) -> List[TextFragment]:
        self._require_loaded()
        return self._sandbox._call(_page_text, self._token, index)

    def close(self) -> None:
        if self._loaded:
            self._loaded = False
            self._sandbox._release(self._token)
        self.page_count = 0

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError("No document loaded in sandbox context")


class RenderSandbox:
    """A launched rendering engine, owned by exactly one batch."""

    def __init__(self, mode: str = "process", timeout: float = 120.0) -> None:
        if mode not in {"process", "inline"}:
            raise ValueError(f"Unknown sandbox mode: {mode}")
        self.mode = mode
        self.timeout = timeout
        self._executor: Optional[ProcessPoolExecutor] = None
        self._tokens: Set[str] = set()
        self._closed = False
        self._broken = False

    @classmethod
    def launch(cls, mode: str = "process", timeout: float = 120.0) -> "RenderSandbox":
        """Start the engine and verify it answers before returning."""
        sandbox = cls(mode=mode, timeout=timeout)
        if mode == "process":
            try:
                sandbox._executor = ProcessPoolExecutor(max_workers=1)
            except (OSError, ValueError) as error:
                raise SandboxError(f"Could not start rendering sandbox: {error}") from error
        try:
            version = sandbox._call(_engine_version)
        except SandboxError:
            sandbox.close()
            raise
        logger.info("Rendering sandbox ready (mode=%s, engine=%s)", mode, version)
        return sandbox

    def __enter__(self) -> "RenderSandbox":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def new_context(self) -> SandboxContext:
        if self._closed:
            raise SandboxError("Rendering sandbox is closed")
        return SandboxContext(self)

    def close(self) -> None:
        """Release the engine; safe to call more than once.

        A sandbox whose engine hung or crashed has its worker process
        terminated instead of waiting on it.
        """
        if self._closed:
            return
        for token in list(self._tokens):
            try:
                self._release(token)
            except SandboxError as error:
                logger.warning("Could not release document in rendering sandbox: %s", error)
                break
        self._closed = True
        executor, self._executor = self._executor, None
        if executor is not None:
            if self._broken:
                _terminate_executor(executor)
            else:
                executor.shutdown(wait=True, cancel_futures=True)
        logger.info("Rendering sandbox closed (mode=%s)", self.mode)

    def _release(self, token: str) -> None:
        self._tokens.discard(token)
        if self._closed or self._broken:
            return
        self._call(_release, token)

    def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise SandboxError("Rendering sandbox is closed")
        if self._executor is None:
            return func(*args)
        try:
            future = self._executor.submit(func, *args)
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as error:
            self._broken = True
            raise SandboxError(
                f"Rendering sandbox did not answer within {self.timeout:g}s"
            ) from error
        except BrokenProcessPool as error:
            self._broken = True
            raise SandboxError(f"Rendering sandbox crashed: {error}") from error


def _terminate_executor(executor: ProcessPoolExecutor, grace: float = 5.0) -> None:
    """Stop a pool whose worker may be hung, then reap its processes."""
    # shutdown() drops the process table, so take it first
    processes = list((getattr(executor, "_processes", None) or {}).values())
    for process in processes:
        if process.is_alive():
            process.terminate()
    executor.shutdown(wait=False, cancel_futures=True)
    for process in processes:
        process.join(grace)
        if process.is_alive():
            logger.warning("Rendering engine %s ignored terminate; killing it", process.pid)
            process.kill()
            process.join(grace)
