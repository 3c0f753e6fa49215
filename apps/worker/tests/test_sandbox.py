import multiprocessing
import time

import fitz
import pytest

from docshield_worker.sandbox import _OPEN_DOCUMENTS, RenderSandbox, SandboxError, TextFragment


def _make_pdf(text: str = "", pages: int = 1) -> bytes:
    document = fitz.open()
    for _ in range(pages):
        page = document.new_page(width=200, height=100)
        if text:
            page.insert_text((20, 50), text, fontsize=10)
    data = document.tobytes()
    document.close()
    return data


def test_inline_context_loads_and_renders() -> None:
    with RenderSandbox.launch(mode="inline") as sandbox:
        with sandbox.new_context() as context:
            assert context.load_document(_make_pdf(pages=2)) == 2
            png = context.render_page(1, 2.0)
    assert png.startswith(b"\x89PNG")
    assert sandbox.closed


def test_page_text_uses_bottom_up_coordinates() -> None:
    """Fragments are placed in PDF space, measured from the bottom of the page."""
    with RenderSandbox.launch(mode="inline") as sandbox, sandbox.new_context() as context:
        context.load_document(_make_pdf("hello"))
        fragments = context.get_page_text(0)
    assert [fragment.text for fragment in fragments] == ["hello"]
    fragment = fragments[0]
    assert isinstance(fragment, TextFragment)
    x, y = fragment.transform[4], fragment.transform[5]
    assert x == pytest.approx(20, abs=1)
    assert 40 < y < 55
    assert fragment.height and y + fragment.height > 50


def test_corrupt_document_is_value_error() -> None:
    with RenderSandbox.launch(mode="inline") as sandbox, sandbox.new_context() as context:
        with pytest.raises(ValueError):
            context.load_document(b"%PDF-1.4 garbage")


def test_encrypted_document_is_rejected() -> None:
    document = fitz.open()
    document.new_page()
    data = document.tobytes(
        encryption=fitz.PDF_ENCRYPT_AES_256, owner_pw="owner", user_pw="user"
    )
    document.close()
    with RenderSandbox.launch(mode="inline") as sandbox, sandbox.new_context() as context:
        with pytest.raises(ValueError, match="encrypted"):
            context.load_document(data)


def test_page_index_out_of_range() -> None:
    with RenderSandbox.launch(mode="inline") as sandbox, sandbox.new_context() as context:
        context.load_document(_make_pdf())
        with pytest.raises(ValueError):
            context.render_page(3, 1.0)


def test_context_requires_loaded_document() -> None:
    with RenderSandbox.launch(mode="inline") as sandbox, sandbox.new_context() as context:
        with pytest.raises(RuntimeError):
            context.render_page(0, 1.0)


def test_closed_sandbox_refuses_work() -> None:
    sandbox = RenderSandbox.launch(mode="inline")
    sandbox.close()
    sandbox.close()
    with pytest.raises(SandboxError):
        sandbox.new_context()


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        RenderSandbox.launch(mode="browser")


def test_process_sandbox_round_trip() -> None:
    """The isolated engine renders and reports errors like the inline one."""
    with RenderSandbox.launch(mode="process", timeout=60) as sandbox:
        with sandbox.new_context() as context:
            assert context.load_document(_make_pdf("hello")) == 1
            assert context.render_page(0, 1.0).startswith(b"\x89PNG")
            assert [item.text for item in context.get_page_text(0)] == ["hello"]
        with sandbox.new_context() as context:
            with pytest.raises(ValueError):
                context.load_document(b"not a pdf")
    assert sandbox.closed


def _engine_children() -> set:
    return {child.pid for child in multiprocessing.active_children()}


def test_timed_out_sandbox_stops_engine_process() -> None:
    """Closing a sandbox after a hung call leaves no engine process running."""
    before = _engine_children()
    sandbox = RenderSandbox.launch(mode="process", timeout=1)
    assert _engine_children() - before
    with pytest.raises(SandboxError):
        sandbox._call(time.sleep, 30)
    sandbox.close()
    assert sandbox.closed
    assert _engine_children() - before == set()


def test_context_keeps_document_in_engine() -> None:
    """Pages are served from the opened document, not from resent bytes."""
    with RenderSandbox.launch(mode="inline") as sandbox:
        context = sandbox.new_context()
        context.load_document(_make_pdf("hello", pages=2))
        assert context._token in _OPEN_DOCUMENTS
        assert context.render_page(1, 1.0).startswith(b"\x89PNG")
        context.close()
        assert context._token not in _OPEN_DOCUMENTS
        with pytest.raises(RuntimeError):
            context.get_page_text(0)

        leftover = sandbox.new_context()
        leftover.load_document(_make_pdf())
    assert leftover._token not in _OPEN_DOCUMENTS


def test_rotated_page_text_lands_on_displayed_page() -> None:
    """Span boxes follow /Rotate so they line up with the rendered page."""
    document = fitz.open()
    page = document.new_page(width=300, height=200)
    page.insert_text((40, 100), "hello", fontsize=12)
    page.set_rotation(90)
    data = document.tobytes()
    document.close()
    with RenderSandbox.launch(mode="inline") as sandbox, sandbox.new_context() as context:
        context.load_document(data)
        fragment = context.get_page_text(0)[0]
    # displayed page is 200 wide and 300 tall; the text now runs vertically
    assert fragment.height > fragment.width
    assert fragment.transform[4] + fragment.width <= 200 + 1
    assert fragment.transform[5] + fragment.height <= 300 + 1
