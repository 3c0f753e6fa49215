import zipfile
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from docshield_worker.archive import ArchiveWriter
from docshield_worker.config import (
    DEFAULT_PRESETS,
    load_compression_settings,
    load_redaction_settings,
)


def test_redaction_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DOCSHIELD_REDACT_SCALE",
        "DOCSHIELD_REDACT_PADDING",
        "DOCSHIELD_REDACT_MAX_FILES",
        "DOCSHIELD_REDACT_MAX_FILE_MB",
        "DOCSHIELD_SANDBOX_MODE",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_redaction_settings()
    assert settings.scale == 2.0
    assert settings.padding == 2
    assert settings.max_files == 50
    assert settings.max_file_bytes == 50 * 1024 * 1024
    assert settings.sandbox_mode == "process"


def test_redaction_settings_clamp_and_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    """Out-of-range values are clamped and unparsable ones fall back."""
    monkeypatch.setenv("DOCSHIELD_REDACT_SCALE", "0.5")
    monkeypatch.setenv("DOCSHIELD_REDACT_PADDING", "not-a-number")
    monkeypatch.setenv("DOCSHIELD_SANDBOX_MODE", "chromium")
    settings = load_redaction_settings()
    assert settings.scale == 1.0
    assert settings.padding == 2
    assert settings.sandbox_mode == "process"


def test_compression_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GHOSTSCRIPT_BIN", " /opt/gs/bin/gs ")
    monkeypatch.setenv("DOCSHIELD_COMPRESS_PRESETS", "/ebook, SCREEN")
    settings = load_compression_settings()
    assert settings.ghostscript == "/opt/gs/bin/gs"
    assert settings.presets == ("ebook", "screen")

    monkeypatch.setenv("DOCSHIELD_COMPRESS_PRESETS", " , ")
    assert load_compression_settings().presets == DEFAULT_PRESETS


def test_archive_writer_preserves_order() -> None:
    with TemporaryDirectory() as temp:
        zip_path = Path(temp) / "out.zip"
        with ArchiveWriter(zip_path) as archive:
            archive.append("b.txt", "second")
            archive.append("a.pdf", b"%PDF")
            with pytest.raises(ValueError):
                archive.append("b.txt", "again")
            assert archive.finalize() == zip_path
            with pytest.raises(RuntimeError):
                archive.append("c.txt", "late")
        with zipfile.ZipFile(zip_path) as result:
            assert result.namelist() == ["b.txt", "a.pdf"]
            assert result.read("b.txt") == b"second"
