"""ZIP packaging for multi-file outputs."""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import List


class ArchiveWriter:
    """Append in-memory entries to a ZIP file, preserving insertion order."""

    def __init__(self, zip_path: Path) -> None:
        self.zip_path = zip_path
        self.names: List[str] = []
        self._archive: zipfile.ZipFile | None = zipfile.ZipFile(
            zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
        )

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def append(self, name: str, data: bytes | str) -> None:
        if self._archive is None:
            raise RuntimeError("Archive already finalized")
        if name in self.names:
            raise ValueError(f"Duplicate archive entry: {name}")
        self._archive.writestr(name, data)
        self.names.append(name)

    def finalize(self) -> Path:
        """Close the archive and return its path."""
        self.close()
        return self.zip_path

    def close(self) -> None:
        archive, self._archive = self._archive, None
        if archive is not None:
            archive.close()
