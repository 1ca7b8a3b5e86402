"""Multi-platform image index construction."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Optional

from ..core.media_types import OCI_INDEX
from ..core.types import Descriptor, Platform, RuntimeOverrides
from ..store.blobs import BlobStore
from ..tar.models import Layer
from .assembler import ImageAssembler, PlatformImage, encode_json
from .base import BaseImage, BaseImageResolver, scratch_image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageIndex:
    """A stored multi-platform index and its per-platform images."""

    descriptor: Descriptor
    images: tuple[PlatformImage, ...]

    @property
    def digest(self) -> str:
        return self.descriptor.digest

    @property
    def platforms(self) -> list[Platform]:
        return [image.platform for image in self.images]

    def index_document(self, annotations: Optional[dict[str, str]] = None) -> dict:
        return index_document(self.images, annotations)


def index_document(
    images: Sequence[PlatformImage], annotations: Optional[dict[str, str]] = None
) -> dict:
    """The index JSON, optionally annotating every manifest entry."""
    manifests = []
    for image in images:
        entry = image.manifest.to_dict()
        if annotations:
            entry["annotations"] = dict(annotations)
        manifests.append(entry)
    return {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": manifests}


def check_platforms(platforms: Sequence[Platform]) -> None:
    """Reject empty or duplicated platform requests.

    Raises:
        ValueError: If no platform is requested or one is requested twice
    """
    if not platforms:
        raise ValueError("At least one target platform is required")
    seen: set[Platform] = set()
    for platform in platforms:
        if platform in seen:
            raise ValueError(f"Duplicate platform requested: {platform}")
        seen.add(platform)


async def _resolve_base(
    resolver: BaseImageResolver,
    reference: Optional[str],
    platform: Platform,
    store: BlobStore,
) -> BaseImage:
    if reference is None or reference == "scratch":
        return scratch_image(platform)
    return await resolver.resolve(reference, platform, store)


async def build_index(
    platforms: Sequence[Platform],
    layer: Layer,
    store: BlobStore,
    assembler: ImageAssembler,
    resolver: BaseImageResolver,
    base_for: Callable[[Platform], Optional[str]],
    overrides: RuntimeOverrides,
) -> ImageIndex:
    """Assemble one image per platform and store the index over them.

    Platforms are assembled concurrently. A failure for any platform,
    including a base image without a matching variant, fails the whole
    index; no platform is ever silently dropped.

    Args:
        platforms: Requested platforms, in index order
        layer: The project layer shared by every platform
        store: Blob store for configs, manifests and the index
        assembler: Per-platform config/manifest builder
        resolver: Base image resolver
        base_for: Base reference for a platform (``None`` means scratch)
        overrides: Runtime overrides applied to every platform

    Returns:
        ImageIndex whose digest identifies the built image

    Raises:
        ValueError: If platforms are empty or duplicated
        PlatformNotFoundError: If a base image lacks a requested platform
    """
    check_platforms(platforms)
    loop = asyncio.get_running_loop()

    async def build_one(platform: Platform) -> PlatformImage:
        base = await _resolve_base(resolver, base_for(platform), platform, store)
        return await loop.run_in_executor(
            None, assembler.assemble, platform, base, layer, overrides
        )

    results = await asyncio.gather(
        *(build_one(platform) for platform in platforms), return_exceptions=True
    )
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        for error in errors:
            logger.error("Platform build failed: %s", error)
        raise errors[0]

    images = tuple(r for r in results if isinstance(r, PlatformImage))
    index_bytes = encode_json(index_document(images))
    digest = await loop.run_in_executor(None, store.put, index_bytes)

    index = ImageIndex(Descriptor(OCI_INDEX, digest, len(index_bytes)), images)
    logger.info("Built index %s for %s", digest, ", ".join(map(str, index.platforms)))
    return index
