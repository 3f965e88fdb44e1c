"""Zip archive decoding with per-entry failure isolation."""

import io
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import DecodeError

logger = logging.getLogger(__name__)

ENTRY_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    NotImplementedError,
    RuntimeError,
    EOFError,
    OSError,
)


@dataclass
class DecodedArchive:
    entries: Dict[str, bytes] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)


class ArchiveDecoder:
    """Iterate the file entries of a zip archive held in memory.

    Entries that cannot be decompressed are recorded in ``failed`` and
    skipped; a stream that is not a zip archive at all raises ``DecodeError``
    on construction.
    """

    def __init__(self, data: bytes):
        try:
            self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError, OSError) as exc:
            raise DecodeError(f"Not a valid zip archive: {exc}") from exc
        self.names = [info.filename for info in self._zip.infolist() if not info.is_dir()]
        self.failed: List[str] = []

    def __len__(self) -> int:
        return len(self.names)

    def read(self, name: str) -> Optional[bytes]:
        """Decompress one entry; None when it is corrupt or unsupported."""
        if self._zip is None:
            raise DecodeError("Archive decoder is closed")
        try:
            return self._zip.read(name)
        except ENTRY_ERRORS as exc:
            logger.warning("Failed to decode archive entry %s: %s", name, exc)
            self.failed.append(name)
            return None

    def __iter__(self) -> Iterator[Tuple[str, bytes]]:
        for name in self.names:
            content = self.read(name)
            if content is not None:
                yield name, content

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def __enter__(self) -> "ArchiveDecoder":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def decode_archive(data: bytes) -> DecodedArchive:
    """Decode every entry of ``data`` into a name to bytes mapping."""
    result = DecodedArchive()
    with ArchiveDecoder(data) as decoder:
        for name, content in decoder:
            result.entries[name] = content
        result.failed = list(decoder.failed)
    return result
