"""Content-addressable blob storage.

Blobs live under ``<root>/blobs/<algorithm>/<hex>``, the same addressing the
OCI image layout uses. Writes go to a private temp file inside the store and
are renamed into place, so readers never observe a partially written blob
and concurrent writers of the same content cannot corrupt each other.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

from ..exceptions import BlobNotFoundError, DigestMismatchError
from ..utils.digest import (
    DEFAULT_ALGORITHM,
    HashingWriter,
    calculate_digest,
    calculate_stream_digest,
    split_digest,
)

logger = logging.getLogger(__name__)


class BlobWriter:
    """Streaming writer for a single blob; see ``BlobStore.writer``."""

    def __init__(self, store: BlobStore, algorithm: str = DEFAULT_ALGORITHM) -> None:
        self._store = store
        fd, self._tmp_path = tempfile.mkstemp(dir=store.ingest_dir, prefix="blob-")
        self._file = os.fdopen(fd, "wb")
        self._hasher = HashingWriter(self._file, algorithm)
        self.digest: str | None = None

    @property
    def size(self) -> int:
        return self._hasher.size

    def write(self, data: bytes) -> int:
        if self.digest is not None:
            raise ValueError("Blob writer already committed")
        return self._hasher.write(data)

    def flush(self) -> None:
        self._hasher.flush()

    def commit(self) -> str:
        """Move the written content into place and return its digest."""
        if self.digest is not None:
            return self.digest

        self._file.close()
        digest = self._hasher.digest
        target = self._store.path(digest)

        if target.is_file():
            algorithm, _ = split_digest(digest)
            with target.open("rb") as f:
                existing = calculate_stream_digest(f, algorithm)
            if existing != digest:
                raise DigestMismatchError(digest, existing)
            os.unlink(self._tmp_path)
            logger.debug("Blob %s already stored", digest)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.chmod(self._tmp_path, 0o644)
            os.replace(self._tmp_path, target)
            logger.debug("Stored blob %s (%d bytes)", digest, self.size)

        self.digest = digest
        return digest

    def discard(self) -> None:
        if not self._file.closed:
            self._file.close()
        if self.digest is None and os.path.exists(self._tmp_path):
            os.unlink(self._tmp_path)


class BlobStore:
    """Local content-addressable store keyed by digest."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.ingest_dir = self.root / "ingest"
        (self.root / "blobs").mkdir(parents=True, exist_ok=True)
        self.ingest_dir.mkdir(parents=True, exist_ok=True)

    def path(self, digest: str) -> Path:
        algorithm, encoded = split_digest(digest)
        return self.root / "blobs" / algorithm / encoded

    def has(self, digest: str) -> bool:
        return self.path(digest).is_file()

    def size(self, digest: str) -> int:
        try:
            return self.path(digest).stat().st_size
        except FileNotFoundError:
            raise BlobNotFoundError(digest) from None

    @contextmanager
    def writer(self, algorithm: str = DEFAULT_ALGORITHM) -> Iterator[BlobWriter]:
        """Open a streaming writer; content is only visible after ``commit()``.

        An uncommitted writer, or one whose block raises, leaves nothing
        behind.
        """
        blob_writer = BlobWriter(self, algorithm)
        try:
            yield blob_writer
        finally:
            blob_writer.discard()

    def put(self, content: bytes) -> str:
        """Store content and return its digest. Storing existing content is a no-op."""
        with self.writer() as blob_writer:
            blob_writer.write(content)
            return blob_writer.commit()

    def get(self, digest: str) -> bytes:
        """Read a blob, verifying that its content still matches the digest.

        Raises:
            BlobNotFoundError: If the blob is not stored
            DigestMismatchError: If the stored content is corrupt
        """
        algorithm, _ = split_digest(digest)
        try:
            data = self.path(digest).read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(digest) from None

        actual = calculate_digest(data, algorithm)
        if actual != digest:
            raise DigestMismatchError(digest, actual)
        return data

    def open(self, digest: str) -> BinaryIO:
        try:
            return self.path(digest).open("rb")
        except FileNotFoundError:
            raise BlobNotFoundError(digest) from None

    def verify(self, digest: str) -> None:
        """Re-hash a stored blob without loading it into memory."""
        algorithm, _ = split_digest(digest)
        with self.open(digest) as f:
            actual = calculate_stream_digest(f, algorithm)
        if actual != digest:
            raise DigestMismatchError(digest, actual)
