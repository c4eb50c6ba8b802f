"""
File attachments for documents.

Binary blobs are stored outside of the records, keyed by
(collection name, document id, attachment id); the record only holds a
small descriptor ({"id", "filename", "contentType", "size", "hash"}).

Streaming model:
    - save() pulls the next chunk from its source only after the previous
      chunk was written, so a slow disk slows the producer down instead of
      buffering the whole blob in memory
    - read_stream() is an async generator; the consumer drives the reads
    - Files are written to a temporary name and renamed into place on
      success. Any exit path other than success (error, cancellation,
      early close of the source) removes the temporary file
    - Blocking file I/O runs in the default executor

Layout on disk:
    <base_dir>/<collection>/<document id>/<attachment id>

Invariants:
    - A visible attachment file is always complete
    - Deleting a document's attachments never touches other documents
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, BinaryIO, Dict, Optional, Tuple, Union
from urllib.parse import urlsplit

from .errors import BadRequestError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

Source = Union[bytes, bytearray, memoryview, AsyncIterable[bytes]]


def _safe_segment(value: str) -> str:
    safe = "".join(c for c in str(value) if c.isalnum() or c in "-_")
    if not safe:
        raise BadRequestError(f"Invalid attachment key segment: '{value}'")
    return safe


@dataclass
class Attachment:
    """Descriptor of one stored blob.

    Attributes:
        id: Attachment identifier
        filename: Original file name
        content_type: MIME type
        size: Size in bytes, known once saved
        hash_sha256: Hex SHA-256 of the content, known once saved
        collection_name: Owning collection
        document_id: Owning document
    """

    id: str
    filename: str
    content_type: str = "application/octet-stream"
    size: Optional[int] = None
    hash_sha256: Optional[str] = None
    collection_name: str = ""
    document_id: str = ""
    driver: Optional[FileAttachmentDriver] = field(default=None, repr=False, compare=False)

    def to_raw(self) -> Dict[str, Any]:
        """Descriptor stored in the owning record."""
        return {
            "id": self.id,
            "filename": self.filename,
            "contentType": self.content_type,
            "size": self.size,
            "hash": self.hash_sha256,
        }

    @classmethod
    def from_raw(
        cls,
        raw: Dict[str, Any],
        *,
        collection_name: str,
        document_id: str,
        driver: Optional[FileAttachmentDriver] = None,
    ) -> Attachment:
        return cls(
            id=raw["id"],
            filename=raw.get("filename", ""),
            content_type=raw.get("contentType", "application/octet-stream"),
            size=raw.get("size"),
            hash_sha256=raw.get("hash"),
            collection_name=collection_name,
            document_id=document_id,
            driver=driver,
        )

    def _require_driver(self) -> FileAttachmentDriver:
        if self.driver is None:
            raise BadRequestError(
                "Attachment is not bound to a driver", collection=self.collection_name
            )
        return self.driver

    async def load(self) -> bytes:
        return await self._require_driver().load(self)

    def read_stream(self, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        return self._require_driver().read_stream(self, chunk_size)


async def _iter_source(source: Source, chunk_size: int) -> AsyncIterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        for start in range(0, len(data), chunk_size):
            yield data[start : start + chunk_size]
        return
    try:
        async for chunk in source:
            yield chunk
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


class FileAttachmentDriver:
    """Stores attachments as files under a base directory.

    Example:
        >>> driver = FileAttachmentDriver("/var/lib/app/attachments")
        >>> attachment = driver.init_attachment("users", "u1", filename="cv.pdf")
        >>> await driver.save(attachment, b"%PDF-1.7 ...")
        >>> async for chunk in driver.read_stream(attachment):
        ...     sink.write(chunk)
    """

    def __init__(self, base_dir: Union[str, Path], *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.base_dir = Path(base_dir)
        self.chunk_size = chunk_size

    def _document_dir(self, collection_name: str, document_id: str) -> Path:
        return self.base_dir / _safe_segment(collection_name) / _safe_segment(document_id)

    def path_of(self, attachment: Attachment) -> Path:
        return self._document_dir(attachment.collection_name, attachment.document_id) / _safe_segment(
            attachment.id
        )

    def init_attachment(
        self,
        collection_name: str,
        document_id: str,
        *,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> Attachment:
        """Create a descriptor for a new attachment (nothing is written)."""
        return Attachment(
            id=uuid.uuid4().hex,
            filename=filename,
            content_type=content_type,
            collection_name=collection_name,
            document_id=str(document_id),
            driver=self,
        )

    @asynccontextmanager
    async def _staging_file(self, final_path: Path) -> AsyncIterator[Tuple[Path, BinaryIO]]:
        """Open a temporary file that becomes final_path only on success."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, lambda: final_path.parent.mkdir(parents=True, exist_ok=True))
        tmp_path = final_path.with_name(f".{final_path.name}.{uuid.uuid4().hex}.tmp")
        handle = await loop.run_in_executor(None, open, tmp_path, "wb")
        try:
            yield tmp_path, handle
        except BaseException:
            await loop.run_in_executor(None, handle.close)
            await loop.run_in_executor(None, lambda: tmp_path.unlink(missing_ok=True))
            logger.debug("Discarded partial attachment", extra={"path": str(final_path)})
            raise
        else:
            await loop.run_in_executor(None, handle.close)
            await loop.run_in_executor(None, os.replace, tmp_path, final_path)

    async def save(self, attachment: Attachment, source: Source) -> Attachment:
        """Write an attachment from bytes or an async byte stream.

        Args:
            attachment: Descriptor from init_attachment()
            source: Content, as bytes or an async iterable of chunks

        Returns:
            The same descriptor with size and hash filled in
        """
        loop = asyncio.get_event_loop()
        hasher = hashlib.sha256()
        size = 0
        final_path = self.path_of(attachment)

        async with self._staging_file(final_path) as (_, handle):
            chunks = _iter_source(source, self.chunk_size)
            try:
                async for chunk in chunks:
                    await loop.run_in_executor(None, handle.write, chunk)
                    hasher.update(chunk)
                    size += len(chunk)
            finally:
                await chunks.aclose()

        attachment.size = size
        attachment.hash_sha256 = hasher.hexdigest()
        attachment.driver = self
        logger.debug(
            "Attachment saved",
            extra={
                "collection": attachment.collection_name,
                "document_id": attachment.document_id,
                "attachment_id": attachment.id,
                "size": size,
            },
        )
        return attachment

    async def load(self, attachment: Attachment) -> bytes:
        """Read a whole attachment into memory."""
        path = self.path_of(attachment)
        try:
            return await asyncio.get_event_loop().run_in_executor(None, path.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError(
                f"Attachment {attachment.id} not found",
                collection=attachment.collection_name,
                document_id=attachment.document_id,
            ) from e

    async def read_stream(
        self,
        attachment: Attachment,
        chunk_size: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        """Yield an attachment chunk by chunk.

        The file is closed when the stream is exhausted, when the consumer
        stops early (aclose()) and on errors.
        """
        loop = asyncio.get_event_loop()
        size = chunk_size or self.chunk_size
        path = self.path_of(attachment)
        try:
            handle = await loop.run_in_executor(None, open, path, "rb")
        except FileNotFoundError as e:
            raise NotFoundError(
                f"Attachment {attachment.id} not found",
                collection=attachment.collection_name,
                document_id=attachment.document_id,
            ) from e

        try:
            while True:
                chunk = await loop.run_in_executor(None, handle.read, size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def delete(self, attachment: Attachment) -> None:
        path = self.path_of(attachment)
        await asyncio.get_event_loop().run_in_executor(None, lambda: path.unlink(missing_ok=True))

    async def delete_all_in_document(self, collection_name: str, document_id: str) -> None:
        directory = self._document_dir(collection_name, document_id)
        await asyncio.get_event_loop().run_in_executor(
            None, lambda: shutil.rmtree(directory, ignore_errors=True)
        )

    async def clear(self) -> None:
        """Remove every attachment under the base directory."""
        await asyncio.get_event_loop().run_in_executor(
            None, lambda: shutil.rmtree(self.base_dir, ignore_errors=True)
        )


def create_attachment_driver(url: str) -> FileAttachmentDriver:
    """Build an attachment driver from a file:///base/dir URL.

    Raises:
        ValueError: If the scheme is not supported
    """
    parts = urlsplit(url)
    if parts.scheme != "file":
        raise ValueError(f"Unsupported attachment driver: '{parts.scheme}'")
    return FileAttachmentDriver(parts.path)
