"""Deterministic layer construction.

The layer is a PAX tar of the project entries, gzip-compressed and streamed
straight into the blob store. Headers are normalized (owner, timestamps,
gzip header fields) so an unchanged tree always yields byte-identical
blobs.
"""

from __future__ import annotations

import gzip
import logging
import os
import tarfile
from collections.abc import Iterator, Sequence

from ..core.media_types import OCI_LAYER_GZIP
from ..core.types import ContainerizeConfig, Descriptor
from ..store.blobs import BlobStore
from ..utils.digest import HashingWriter
from .models import EntryType, FileEntry, Layer

logger = logging.getLogger(__name__)

_TAR_TYPES = {
    EntryType.REGULAR: tarfile.REGTYPE,
    EntryType.DIRECTORY: tarfile.DIRTYPE,
    EntryType.SYMLINK: tarfile.SYMTYPE,
}


def _header(name: str, entry_type: EntryType, mode: int, mtime: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = _TAR_TYPES[entry_type]
    info.mode = mode
    info.mtime = mtime
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _prefix_dirs(prefix: str) -> Iterator[str]:
    parts = [p for p in prefix.split("/") if p]
    for i in range(1, len(parts) + 1):
        yield "/".join(parts[:i])


def _archive_name(prefix: str, path: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/{path}" if prefix else path


def write_entries(
    tar: tarfile.TarFile, entries: Sequence[FileEntry], config: ContainerizeConfig
) -> None:
    """Append entries to an open tar in canonical path order."""
    mtime = config.source_date_epoch

    for directory in _prefix_dirs(config.layer_prefix):
        tar.addfile(_header(directory, EntryType.DIRECTORY, 0o755, mtime))

    for entry in sorted(entries, key=lambda e: e.path):
        info = _header(
            _archive_name(config.layer_prefix, entry.path), entry.type, entry.mode, mtime
        )

        if entry.type is EntryType.SYMLINK:
            info.linkname = entry.link_target or ""
            tar.addfile(info)
        elif entry.type is EntryType.DIRECTORY:
            tar.addfile(info)
        else:
            with open(entry.source, "rb") as f:
                info.size = os.fstat(f.fileno()).st_size
                tar.addfile(info, fileobj=f)

        logger.debug("Added %s (%s)", info.name, entry.type.value)


def build_layer(
    entries: Sequence[FileEntry], store: BlobStore, config: ContainerizeConfig
) -> Layer:
    """Build one gzip layer blob from validated entries.

    Args:
        entries: Validated project entries (see ``collect_entries``)
        store: Blob store receiving the compressed layer
        config: Engine configuration (prefix, epoch, compression level)

    Returns:
        Layer with the compressed-blob descriptor and the uncompressed diff ID
    """
    with store.writer() as blob_writer:
        with gzip.GzipFile(
            filename="",
            mode="wb",
            fileobj=blob_writer,
            compresslevel=config.compression_level,
            mtime=0,
        ) as gz:
            diff = HashingWriter(gz)
            with tarfile.open(
                fileobj=diff, mode="w|", format=tarfile.PAX_FORMAT
            ) as tar:
                write_entries(tar, entries, config)

        digest = blob_writer.commit()
        size = blob_writer.size

    layer = Layer(
        descriptor=Descriptor(OCI_LAYER_GZIP, digest, size),
        diff_id=diff.digest,
        entries=list(entries),
    )
    logger.info(
        "Built layer %s (%d entries, %d bytes, diff ID %s)",
        digest,
        len(layer.entries),
        size,
        layer.diff_id,
    )
    return layer
