"""
Local filesystem operations for ContentVersion Transfer Tool.
"""

import asyncio
import os
import stat
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional, Union

from cvtt.core.errors import SinkWriteError

PathLike = Union[str, os.PathLike]


class FileSystemError(Exception):
    """Raised when filesystem operations fail"""

    pass


class FileStore:
    """Reads and writes the binaries being transferred"""

    # Chunk size used when streaming downloads to disk
    CHUNK_SIZE = 64 * 1024

    def __init__(self, base_dir: Optional[PathLike] = None):
        """
        Initialize file store

        Args:
            base_dir: Directory relative paths are resolved against
                (default: current working directory)
        """
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def resolve(self, path: PathLike) -> Path:
        """Resolve a manifest path against the base directory"""
        resolved = Path(path).expanduser()
        if self.base_dir is not None and not resolved.is_absolute():
            resolved = self.base_dir / resolved
        return resolved

    async def stat_size(self, path: PathLike) -> int:
        """
        Get the size of a file without blocking the event loop

        Raises:
            FileSystemError: If the path does not exist or is not a file
        """
        resolved = self.resolve(path)
        try:
            st = await asyncio.to_thread(os.stat, resolved)
        except OSError as e:
            raise FileSystemError(f"Failed to stat {path}: {e.strerror or e}") from e
        if not stat.S_ISREG(st.st_mode):
            raise FileSystemError(f"Path is not a file: {path}")
        return st.st_size

    def open_read(self, path: PathLike) -> BinaryIO:
        """Open a binary for reading"""
        try:
            return open(self.resolve(path), "rb")
        except OSError as e:
            raise FileSystemError(f"Failed to open {path}: {e.strerror or e}") from e

    def open_write(self, path: PathLike) -> BinaryIO:
        """
        Open a destination for writing, replacing any existing file

        Raises:
            SinkWriteError: If the destination cannot be created
        """
        resolved = self.resolve(path)
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            return open(resolved, "wb")
        except OSError as e:
            raise SinkWriteError(
                f"Failed to open {resolved} for writing: {e.strerror or e}",
                path=str(resolved),
            ) from e

    def ensure_directory(self, path: PathLike) -> Path:
        """Create a directory (and parents) if it does not exist yet"""
        resolved = self.resolve(path)
        try:
            resolved.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"Failed to create directory {path}: {e.strerror or e}") from e
        return resolved

    def remove(self, path: PathLike):
        """Delete a file if present"""
        try:
            self.resolve(path).unlink(missing_ok=True)
        except OSError as e:
            raise FileSystemError(f"Failed to delete {path}: {e.strerror or e}") from e

    async def read_chunks(self, path: PathLike, size: int) -> AsyncIterator[bytes]:
        """
        Stream exactly size bytes of a file without blocking the event loop

        The file is opened on first iteration and closed once the last
        chunk has been read.

        Raises:
            FileSystemError: If the file cannot be read or no longer has
                the expected size
        """
        f = await asyncio.to_thread(self.open_read, path)
        try:
            remaining = size
            while remaining > 0:
                chunk = await asyncio.to_thread(f.read, min(self.CHUNK_SIZE, remaining))
                if not chunk:
                    raise FileSystemError(f"{path} shrank while it was being read")
                remaining -= len(chunk)
                yield chunk
            if await asyncio.to_thread(f.read, 1):
                raise FileSystemError(f"{path} grew while it was being read")
        except OSError as e:
            raise FileSystemError(f"Failed to read {path}: {e.strerror or e}") from e
        finally:
            f.close()
