import zipfile
from datetime import datetime
from pathlib import PurePosixPath
import re
from typing import List, Set

DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def safe_entry_name(name: str) -> str:
    """Relative entry path for *name*: no drive letter, no leading slash, no `.` or `..` segments."""
    name = DRIVE_PREFIX.sub("", name.replace("\\", "/"))
    parts = [part for part in name.split("/") if part not in ("", ".", "..")]
    return "/".join(parts) or "file"


class _ChunkSink:
    """Write-only, non-seekable target for ZipFile that hands bytes back in pieces.

    ZipFile detects that it cannot seek and switches to data descriptors, so
    every byte it produces can be flushed to the client as soon as it is written.
    """

    def __init__(self):
        self._pending: List[bytes] = []
        self._offset = 0

    def write(self, data) -> int:
        self._pending.append(bytes(data))
        self._offset += len(data)
        return len(data)

    def tell(self) -> int:
        return self._offset

    def flush(self):
        pass

    def drain(self) -> bytes:
        data = b"".join(self._pending)
        self._pending.clear()
        return data


class ZipStreamWriter:
    """Incremental zip encoder: open an entry, write chunks, drain output as you go."""

    def __init__(self, compression: int = zipfile.ZIP_DEFLATED):
        self._sink = _ChunkSink()
        self._zip = zipfile.ZipFile(self._sink, mode='w', compression=compression)
        self._compression = compression
        self._names: Set[str] = set()

    def unique_name(self, name: str) -> str:
        """Return the sanitized *name*, or ``stem (n).ext`` if an entry with that name already exists."""
        name = safe_entry_name(name)
        candidate = name
        counter = 1
        while candidate in self._names:
            path = PurePosixPath(name)
            candidate = str(path.with_name(f"{path.stem} ({counter}){path.suffix}"))
            counter += 1
        self._names.add(candidate)
        return candidate

    def open_entry(self, name: str, length: int, modified: datetime):
        """Start a new entry; the returned handle must be closed before the next one is opened."""
        zinfo = zipfile.ZipInfo(self.unique_name(name), date_time=modified.timetuple()[:6])
        zinfo.compress_type = self._compression
        zinfo.file_size = length
        # Sizes go into a trailing data descriptor; file_size only tells ZipFile whether zip64 is needed
        return self._zip.open(zinfo, mode='w')

    def drain(self) -> bytes:
        return self._sink.drain()

    def close(self) -> bytes:
        """Write the central directory and return the remaining bytes."""
        self._zip.close()
        return self._sink.drain()
