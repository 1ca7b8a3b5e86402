"""OCI image layout export."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import aiofiles

from .core.media_types import LAYOUT_VERSION, REF_NAME_ANNOTATION
from .exceptions import DigestMismatchError
from .image.platforms import ImageIndex
from .store.blobs import BlobStore
from .utils.digest import HashingWriter, calculate_stream_digest, split_digest

logger = logging.getLogger(__name__)


def referenced_blobs(index: ImageIndex) -> list[str]:
    """Digests of every blob an index depends on, leaves first, without duplicates."""
    digests: list[str] = []
    for image in index.images:
        digests.extend(layer.digest for layer in image.layers)
        digests.append(image.config.digest)
        digests.append(image.manifest.digest)
    digests.append(index.digest)
    return list(dict.fromkeys(digests))


def copy_blob(store: BlobStore, digest: str, layout: Path) -> Path:
    """Copy a blob into ``layout/blobs``, verifying its digest on the way.

    An existing layout blob is kept only if its content still matches.

    Raises:
        DigestMismatchError: If the stored blob is corrupt
    """
    algorithm, encoded = split_digest(digest)
    target = layout / "blobs" / algorithm / encoded
    if target.is_file():
        with target.open("rb") as existing:
            if calculate_stream_digest(existing, algorithm) == digest:
                return target
        logger.warning("Replacing corrupt layout blob %s", target)

    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as out, store.open(digest) as src:
            hashing = HashingWriter(out, algorithm)
            shutil.copyfileobj(src, hashing)
        if hashing.digest != digest:
            raise DigestMismatchError(digest, hashing.digest)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, target)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
    return target


async def _write_text(path: Path, content: str) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(content)
    os.replace(tmp_path, path)


async def write_layout(
    index: ImageIndex,
    store: BlobStore,
    path: str | Path,
    tag: Optional[str] = None,
) -> Path:
    """Write an image to an OCI layout directory.

    Blobs are copied first and ``index.json`` is written last, so an
    interrupted export never leaves an index pointing at missing blobs.

    Args:
        index: The built image index
        store: Blob store holding every referenced blob
        path: Layout directory (created if missing)
        tag: Optional name recorded as ``org.opencontainers.image.ref.name``

    Returns:
        The layout directory path
    """
    layout = Path(path)
    layout.mkdir(parents=True, exist_ok=True)
    loop = asyncio.get_running_loop()

    for digest in referenced_blobs(index):
        await loop.run_in_executor(None, copy_blob, store, digest, layout)

    await _write_text(
        layout / "oci-layout", json.dumps({"imageLayoutVersion": LAYOUT_VERSION})
    )

    annotations = {REF_NAME_ANNOTATION: tag} if tag else None
    await _write_text(
        layout / "index.json", json.dumps(index.index_document(annotations), indent=2)
    )

    logger.info("Wrote OCI layout %s (index %s)", layout, index.digest)
    return layout
