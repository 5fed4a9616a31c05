"""
Streaming multipart/form-data body for collections uploads.

Binary parts are read from disk only while they are being sent, one file
at a time, so a batch never holds more than one open file.
"""

import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from cvtt.core.filesystem import FileStore

CRLF = b"\r\n"


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', "%22")


@dataclass(frozen=True)
class FilePart:
    """A binary part backed by a local file of known size"""

    name: str
    filename: str
    path: str
    size: int
    content_type: str = "application/octet-stream"


class MultipartBody:
    """
    Async iterable request body with a precomputed Content-Length

    Args:
        store: File store the binary parts are read from
        boundary: Part separator (default: random)
    """

    def __init__(self, store: FileStore, boundary: Optional[str] = None):
        self._store = store
        self.boundary = boundary or uuid.uuid4().hex
        self._fields: List[tuple] = []
        self._files: List[FilePart] = []

    def add_field(self, name: str, value: str, content_type: str):
        """Add an in-memory part; fields are sent before files"""
        self._fields.append((name, value.encode("utf-8"), content_type))

    def add_file(self, part: FilePart):
        self._files.append(part)

    def _part_header(self, name: str, content_type: str, filename: Optional[str] = None) -> bytes:
        disposition = f'form-data; name="{_quote(name)}"'
        if filename:
            disposition += f'; filename="{_quote(filename)}"'
        return (
            f"--{self.boundary}\r\n"
            f"Content-Disposition: {disposition}\r\n"
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8")

    def _closing(self) -> bytes:
        return f"--{self.boundary}--\r\n".encode("ascii")

    @property
    def content_length(self) -> int:
        length = len(self._closing())
        for name, data, content_type in self._fields:
            length += len(self._part_header(name, content_type)) + len(data) + len(CRLF)
        for part in self._files:
            header = self._part_header(part.name, part.content_type, part.filename)
            length += len(header) + part.size + len(CRLF)
        return length

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": f"multipart/form-data; boundary={self.boundary}",
            "Content-Length": str(self.content_length),
        }

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for name, data, content_type in self._fields:
            yield self._part_header(name, content_type)
            yield data
            yield CRLF
        for part in self._files:
            yield self._part_header(part.name, part.content_type, part.filename)
            async for chunk in self._store.read_chunks(part.path, part.size):
                yield chunk
            yield CRLF
        yield self._closing()
