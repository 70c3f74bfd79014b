"""Attachment blob storage.

Attachments submitted with a job are uploaded once under
``<job_id>/<filename>`` and referenced by key from every delivery trigger.
The delivery worker reads them back when building each message.

This module provides the storage interface and a filesystem backend; file
I/O runs in a worker thread so the event loop is never blocked.

Example:
    Storing and reading an attachment::

        store = FilesystemAttachmentStore("/data/attachments")
        key = await store.put(f"{job_id}/report.pdf", content)
        data = await store.get(key)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath


class AttachmentStoreBase(ABC):
    """Abstract interface of an attachment blob store."""

    @abstractmethod
    async def put(self, key: str, content: bytes) -> str:
        """Store ``content`` under ``key`` and return the key."""
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the content stored under ``key``."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; False if it did not exist."""
        ...


def attachment_key(job_id: str, filename: str) -> str:
    """Storage key for a job attachment; directory parts of ``filename`` are dropped."""
    name = PurePosixPath(filename.replace("\\", "/")).name
    if not name or name in {".", ".."}:
        raise ValueError(f"invalid attachment filename: {filename!r}")
    return f"{job_id}/{name}"


class FilesystemAttachmentStore(AttachmentStoreBase):
    """Stores attachments as files below a base directory.

    Attributes:
        base_dir: Root directory; keys map to relative paths below it.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).expanduser()

    def _path(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise ValueError(f"attachment key escapes the storage directory: {key!r}")
        return path

    async def put(self, key: str, content: bytes) -> str:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        await asyncio.to_thread(_write)
        return key

    async def get(self, key: str) -> bytes:
        """Read an attachment.

        Raises:
            FileNotFoundError: If no attachment is stored under ``key``.
        """
        return await asyncio.to_thread(self._path(key).read_bytes)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _remove() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            try:
                path.parent.rmdir()
            except OSError:
                pass
            return True

        return await asyncio.to_thread(_remove)
