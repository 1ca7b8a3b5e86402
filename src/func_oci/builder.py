"""Top-level containerization flow."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import aiohttp

from .core.registry_client import ProgressCallback
from .core.types import (
    ContainerizeConfig,
    CredentialsProvider,
    Platform,
    RuntimeOverrides,
    empty_credentials_provider,
)
from .image.assembler import ImageAssembler
from .image.base import BaseImageResolver, ScratchResolver
from .image.platforms import ImageIndex, build_index, check_platforms
from .layout import write_layout
from .push import PushOptions, check_cancelled, push_image
from .store.blobs import BlobStore
from .tar.models import Layer
from .tar.walker import collect_entries
from .tar.writer import build_layer
from .utils.reference import parse_reference

logger = logging.getLogger(__name__)


@dataclass
class BuildRequest:
    """Everything the build orchestrator hands to the engine."""

    root: str | Path
    platforms: Sequence[Platform]
    ignore_patterns: Sequence[str] = ()
    base_image: Optional[str] = None
    base_images: Mapping[Platform, str] = field(default_factory=dict)
    overrides: RuntimeOverrides = field(default_factory=RuntimeOverrides)
    layout_path: Optional[str | Path] = None
    push_to: Optional[str] = None
    tag: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None
    deadline: Optional[float] = None
    progress_callback: Optional[ProgressCallback] = None

    def base_for(self, platform: Platform) -> Optional[str]:
        return self.base_images.get(platform, self.base_image)


@dataclass
class BuildResult:
    """Outcome of a build: the image digest and where it was published."""

    digest: str
    reference: str
    index: ImageIndex
    layer: Layer
    layout_path: Optional[Path] = None


@runtime_checkable
class Builder(Protocol):
    """Capability shared by every image builder strategy."""

    async def build(self, request: BuildRequest) -> BuildResult: ...


class OCIBuilder:
    """Builds OCI images straight from a project tree, without a daemon.

    Example:
        builder = OCIBuilder(BlobStore(".func/blobs"))
        result = await builder.build(
            BuildRequest(root=".", platforms=[Platform("linux", "amd64")],
                         layout_path=".func/image")
        )
    """

    def __init__(
        self,
        store: BlobStore,
        config: Optional[ContainerizeConfig] = None,
        resolver: Optional[BaseImageResolver] = None,
        credentials_provider: CredentialsProvider = empty_credentials_provider,
        connector: Optional[aiohttp.BaseConnector] = None,
        insecure_registries: Sequence[str] = (),
    ) -> None:
        self.store = store
        self.config = config or ContainerizeConfig()
        self.resolver = resolver or ScratchResolver()
        self.credentials_provider = credentials_provider
        self.connector = connector
        self.insecure_registries = set(insecure_registries)
        self.assembler = ImageAssembler(store, self.config)

    def _push_options(self, request: BuildRequest, registry: str) -> PushOptions:
        return PushOptions(
            concurrent_uploads=self.config.concurrent_uploads,
            chunk_size=self.config.chunk_size,
            retry=self.config.retry,
            insecure=registry in self.insecure_registries,
            cancel_event=request.cancel_event,
            deadline=request.deadline,
            progress_callback=request.progress_callback,
        )

    async def build(self, request: BuildRequest) -> BuildResult:
        """Build the image and export it as requested.

        Nothing is published (no ``index.json``, no tag) unless every
        platform was built and, for a push, every blob and manifest uploaded.

        Raises:
            ValidationError: If the project tree contains unsafe entries
            PlatformNotFoundError: If a base image lacks a requested platform
            BuildCancelledError: If the request was cancelled or ran past its deadline
            RegistryError: If the push failed after retries
        """
        check_platforms(request.platforms)
        push_ref = parse_reference(request.push_to) if request.push_to else None
        options = self._push_options(request, push_ref.registry if push_ref else "")
        loop = asyncio.get_running_loop()
        root = str(request.root)

        entries = await loop.run_in_executor(
            None, collect_entries, root, list(request.ignore_patterns)
        )
        check_cancelled(options)
        layer = await loop.run_in_executor(
            None, build_layer, entries, self.store, self.config
        )
        check_cancelled(options)

        index = await build_index(
            request.platforms,
            layer,
            self.store,
            self.assembler,
            self.resolver,
            request.base_for,
            request.overrides,
        )
        check_cancelled(options)

        layout_path = None
        if request.layout_path is not None:
            layout_path = await write_layout(
                index, self.store, request.layout_path, tag=request.tag
            )

        reference = index.digest
        if push_ref is not None:
            await push_image(
                index,
                self.store,
                push_ref,
                credentials_provider=self.credentials_provider,
                connector=self.connector,
                options=options,
            )
            reference = str(push_ref.with_digest(index.digest))

        logger.info("Built %s from %s", reference, root)
        return BuildResult(
            digest=index.digest,
            reference=reference,
            index=index,
            layer=layer,
            layout_path=layout_path,
        )
