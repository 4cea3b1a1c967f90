# uploader/source_file.py
import mimetypes
import os
from typing import Callable, Optional


class SourceFile:
    """A local file (or in-memory bytes) read one byte range at a time"""

    def __init__(self, name: str, size: int, content_type: str, reader: Callable[[int, int], bytes]):
        self.name = name
        self.size = size
        self.content_type = content_type
        self._reader = reader

    @classmethod
    def from_path(cls, path: str, content_type: Optional[str] = None) -> "SourceFile":
        if content_type is None:
            content_type = mimetypes.guess_type(path)[0] or "application/octet-stream"

        def read(start: int, end: int) -> bytes:
            with open(path, "rb") as f:
                f.seek(start)
                return f.read(end - start)

        return cls(os.path.basename(path), os.path.getsize(path), content_type, read)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, content_type: str) -> "SourceFile":
        return cls(name, len(data), content_type, lambda start, end: data[start:end])

    def read_range(self, start: int, end: int) -> bytes:
        return self._reader(start, end)

    def __repr__(self):
        return f"SourceFile(name={self.name!r}, size={self.size}, content_type={self.content_type!r})"
