from __future__ import annotations

import base64
import io
import logging
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

from .errors import EpubFormatError

logger = logging.getLogger(__name__)

_TEXT_ENCODINGS = ("utf-8-sig", "cp1252")


def _decode_bytes(raw: bytes) -> str:
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16")
    for enc in _TEXT_ENCODINGS:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


@dataclass(frozen=True)
class ArchiveEntry:
    archive: "EpubArchive"
    name: str

    def as_bytes(self) -> bytes:
        return self.archive.read_bytes(self.name)

    def as_text(self) -> str:
        return _decode_bytes(self.as_bytes())

    def as_base64(self) -> str:
        return base64.b64encode(self.as_bytes()).decode("ascii")


class EpubArchive:
    """Read-only view over the zip container of an EPUB."""

    def __init__(self, zf: zipfile.ZipFile) -> None:
        self._zf = zf
        self._names = {info.filename: info for info in zf.infolist() if not info.is_dir()}

    @classmethod
    def from_bytes(cls, data: bytes) -> "EpubArchive":
        try:
            zf = zipfile.ZipFile(io.BytesIO(data), "r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as exc:
            raise EpubFormatError(f"Unable to open EPUB archive: {exc}") from exc
        return cls(zf)

    @classmethod
    def from_path(cls, path: Path | str) -> "EpubArchive":
        return cls.from_bytes(Path(path).read_bytes())

    def names(self) -> list[str]:
        return list(self._names)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._lookup(name) is not None

    def __len__(self) -> int:
        return len(self._names)

    def _lookup(self, name: str) -> str | None:
        if name in self._names:
            return name
        # manifest hrefs are often percent-encoded while zip names are not
        decoded = unquote(name)
        if decoded in self._names:
            return decoded
        return None

    def entry(self, name: str) -> ArchiveEntry | None:
        resolved = self._lookup(name)
        if resolved is None:
            return None
        return ArchiveEntry(self, resolved)

    def read_bytes(self, name: str) -> bytes:
        resolved = self._lookup(name)
        if resolved is None:
            raise KeyError(name)
        try:
            with self._zf.open(resolved, "r") as handle:
                return handle.read()
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, ValueError) as exc:
            raise EpubFormatError(f"Corrupt archive entry {resolved}: {exc}") from exc

    def read_text(self, name: str) -> str:
        return _decode_bytes(self.read_bytes(name))

    def close(self) -> None:
        self._zf.close()


__all__ = ["ArchiveEntry", "EpubArchive"]
