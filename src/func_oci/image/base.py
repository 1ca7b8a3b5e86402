"""Base image resolution.

A resolver turns a base image reference into the per-platform config and
ordered layer descriptors the assembler builds on. Before returning, it must
have placed the config and every base layer blob in the blob store, so that
exporters find all referenced content locally.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from ..core.media_types import (
    DOCKER_LAYER_GZIP,
    INDEX_TYPES,
    OCI_LAYER_GZIP,
    REF_NAME_ANNOTATION,
)
from ..core.registry_client import RegistryClient
from ..core.types import Descriptor, Platform, RetryPolicy
from ..exceptions import DigestMismatchError, OCIError, PlatformNotFoundError
from ..store.blobs import BlobStore
from ..utils.digest import calculate_digest
from ..utils.reference import parse_reference
from ..utils.retry import retry_transient

logger = logging.getLogger(__name__)

# Nested indexes deeper than this are treated as malformed
MAX_INDEX_DEPTH = 3


@dataclass
class BaseImage:
    """Resolved base image for one platform."""

    reference: Optional[str]
    config: dict[str, Any]
    layers: list[Descriptor] = field(default_factory=list)

    @property
    def diff_ids(self) -> list[str]:
        return list((self.config.get("rootfs") or {}).get("diff_ids") or [])


class BaseImageResolver(Protocol):
    async def resolve(
        self, reference: str, platform: Platform, store: BlobStore
    ) -> BaseImage: ...


def scratch_image(platform: Platform) -> BaseImage:
    """An empty base: no layers, no runtime defaults."""
    config: dict[str, Any] = {
        **platform.to_dict(),
        "config": {},
        "rootfs": {"type": "layers", "diff_ids": []},
    }
    return BaseImage(reference=None, config=config, layers=[])


class ScratchResolver:
    """Resolver for builds that never use a base image."""

    async def resolve(
        self, reference: str, platform: Platform, store: BlobStore
    ) -> BaseImage:
        if reference not in ("", "scratch"):
            raise OCIError(f"Cannot resolve base image {reference!r} without a registry")
        return scratch_image(platform)


def select_manifest(
    index: dict[str, Any], platform: Platform, reference: str
) -> Descriptor:
    """Pick the manifest descriptor matching a platform from an index.

    OS and architecture must match. A requested variant must match exactly;
    without one, a descriptor with no variant is preferred over the first
    variant-qualified one. Entries without any platform (as in a layout's
    ``index.json``) are taken as-is; the caller verifies the config.

    Raises:
        PlatformNotFoundError: If no descriptor matches
    """
    descriptors = [Descriptor.from_dict(m) for m in index.get("manifests") or []]
    qualified = [d for d in descriptors if d.platform is not None]
    if not qualified:
        if descriptors:
            return descriptors[0]
        raise PlatformNotFoundError(platform, reference)

    matches = [
        d
        for d in qualified
        if d.platform.os == platform.os
        and d.platform.architecture == platform.architecture
    ]
    if platform.variant:
        matches = [d for d in matches if d.platform.variant == platform.variant]
    else:
        matches.sort(key=lambda d: d.platform.variant is not None)

    if not matches:
        raise PlatformNotFoundError(platform, reference)
    return matches[0]


def check_config_platform(
    config: dict[str, Any], platform: Platform, reference: str
) -> None:
    """Reject a single-platform base whose config targets another platform."""
    if (
        config.get("os") != platform.os
        or config.get("architecture") != platform.architecture
    ):
        raise PlatformNotFoundError(platform, reference)
    variant = config.get("variant")
    if platform.variant and variant and variant != platform.variant:
        raise PlatformNotFoundError(platform, reference)


def _layer_descriptor(data: dict[str, Any]) -> Descriptor:
    descriptor = Descriptor.from_dict(data)
    if descriptor.media_type == DOCKER_LAYER_GZIP:
        # Same bytes and digest; OCI manifests reference it with the OCI type
        return Descriptor(OCI_LAYER_GZIP, descriptor.digest, descriptor.size)
    return descriptor


async def _resolve_image(
    root: dict[str, Any],
    platform: Platform,
    reference: str,
    load_manifest: Callable[[Descriptor], Awaitable[dict[str, Any]]],
    load_config: Callable[[Descriptor], Awaitable[dict[str, Any]]],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Walk from an index (or manifest) down to the platform's manifest and config."""
    document = root
    selected_from_platform = False
    depth = 0
    while document.get("mediaType") in INDEX_TYPES or "manifests" in document:
        if depth == MAX_INDEX_DEPTH:
            raise OCIError(f"Base image {reference} has too deeply nested indexes")
        depth += 1
        descriptor = select_manifest(document, platform, reference)
        selected_from_platform = descriptor.platform is not None
        document = await load_manifest(descriptor)

    if "config" not in document or "layers" not in document:
        raise OCIError(f"Base image {reference} has no usable image manifest")

    config = await load_config(Descriptor.from_dict(document["config"]))
    if not selected_from_platform:
        check_config_platform(config, platform, reference)

    layers = document.get("layers") or []
    diff_ids = (config.get("rootfs") or {}).get("diff_ids") or []
    if len(layers) != len(diff_ids):
        raise OCIError(
            f"Base image {reference} for {platform} lists {len(layers)} layers "
            f"but {len(diff_ids)} diff IDs"
        )
    return document, config


class LayoutResolver:
    """Resolve base images from a local OCI layout directory.

    ``reference`` selects ``index.json`` entries by their
    ``org.opencontainers.image.ref.name`` annotation or digest; an empty
    reference uses every entry.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _blob_path(self, digest: str) -> Path:
        algorithm, _, encoded = digest.partition(":")
        return self.path / "blobs" / algorithm / encoded

    def _read_json(self, descriptor: Descriptor) -> dict[str, Any]:
        data = self._blob_path(descriptor.digest).read_bytes()
        actual = calculate_digest(data, descriptor.digest.split(":", 1)[0])
        if actual != descriptor.digest:
            raise DigestMismatchError(descriptor.digest, actual)
        return json.loads(data)

    def _ingest(self, descriptor: Descriptor, store: BlobStore) -> None:
        if store.has(descriptor.digest):
            return
        with self._blob_path(descriptor.digest).open("rb") as src:
            with store.writer() as blob_writer:
                shutil.copyfileobj(src, blob_writer)
                digest = blob_writer.commit()
        if digest != descriptor.digest:
            raise DigestMismatchError(descriptor.digest, digest)

    def _root_index(self, reference: str) -> dict[str, Any]:
        with (self.path / "index.json").open("r", encoding="utf-8") as f:
            index = json.load(f)
        manifests = index.get("manifests") or []
        if reference:
            manifests = [
                m
                for m in manifests
                if m.get("digest") == reference
                or (m.get("annotations") or {}).get(REF_NAME_ANNOTATION) == reference
            ]
        return {"manifests": manifests}

    async def resolve(
        self, reference: str, platform: Platform, store: BlobStore
    ) -> BaseImage:
        loop = asyncio.get_running_loop()
        root = await loop.run_in_executor(None, self._root_index, reference)
        label = f"{self.path}:{reference}" if reference else str(self.path)

        async def load_json(descriptor: Descriptor) -> dict[str, Any]:
            return await loop.run_in_executor(None, self._read_json, descriptor)

        async def load_config(descriptor: Descriptor) -> dict[str, Any]:
            await loop.run_in_executor(None, self._ingest, descriptor, store)
            return json.loads(await loop.run_in_executor(None, store.get, descriptor.digest))

        manifest, config = await _resolve_image(
            root, platform, label, load_json, load_config
        )

        layers = [_layer_descriptor(layer) for layer in manifest["layers"]]
        for layer in layers:
            await loop.run_in_executor(None, self._ingest, layer, store)

        logger.info("Resolved base %s for %s (%d layers)", label, platform, len(layers))
        return BaseImage(reference=label, config=config, layers=layers)


class RegistryResolver:
    """Resolve base images from a registry via the distribution API.

    Clients are opened per registry host and must be closed with ``close()``
    (or by using the resolver as an async context manager).
    """

    def __init__(
        self,
        client_factory: Callable[[str], RegistryClient],
        retry: RetryPolicy = RetryPolicy(),
    ) -> None:
        self._client_factory = client_factory
        self._retry = retry
        self._clients: dict[str, RegistryClient] = {}
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "RegistryResolver":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    async def _client(self, registry: str) -> RegistryClient:
        async with self._lock:
            if registry not in self._clients:
                client = self._client_factory(registry)
                await client.__aenter__()
                self._clients[registry] = client
            return self._clients[registry]

    async def _fetch_blob(
        self, client: RegistryClient, repository: str, descriptor: Descriptor, store: BlobStore
    ) -> None:
        if store.has(descriptor.digest):
            return

        loop = asyncio.get_running_loop()

        async def attempt() -> str:
            with store.writer() as blob_writer:
                async for chunk in client.get_blob_stream(repository, descriptor.digest):
                    await loop.run_in_executor(None, blob_writer.write, chunk)
                return await loop.run_in_executor(None, blob_writer.commit)

        digest = await retry_transient(
            attempt, self._retry, f"fetch {repository}@{descriptor.digest}"
        )
        if digest != descriptor.digest:
            raise DigestMismatchError(descriptor.digest, digest)

    async def resolve(
        self, reference: str, platform: Platform, store: BlobStore
    ) -> BaseImage:
        ref = parse_reference(reference)
        client = await self._client(ref.registry)
        loop = asyncio.get_running_loop()

        async def fetch_manifest(target: str) -> tuple[bytes, str]:
            return await retry_transient(
                lambda: client.get_manifest(ref.repository, target),
                self._retry,
                f"fetch manifest {ref.repository}:{target}",
            )

        async def load_manifest(descriptor: Descriptor) -> dict[str, Any]:
            body, _ = await fetch_manifest(descriptor.digest)
            actual = calculate_digest(body)
            if actual != descriptor.digest:
                raise DigestMismatchError(descriptor.digest, actual)
            return json.loads(body)

        async def load_config(descriptor: Descriptor) -> dict[str, Any]:
            await self._fetch_blob(client, ref.repository, descriptor, store)
            return json.loads(await loop.run_in_executor(None, store.get, descriptor.digest))

        body, media_type = await fetch_manifest(ref.reference)
        if ref.digest and calculate_digest(body) != ref.digest:
            raise DigestMismatchError(ref.digest, calculate_digest(body))
        root = json.loads(body)
        root.setdefault("mediaType", media_type)

        manifest, config = await _resolve_image(
            root, platform, str(ref), load_manifest, load_config
        )

        layers = [_layer_descriptor(layer) for layer in manifest["layers"]]
        for layer in layers:
            await self._fetch_blob(client, ref.repository, layer, store)

        logger.info("Resolved base %s for %s (%d layers)", ref, platform, len(layers))
        return BaseImage(reference=str(ref), config=config, layers=layers)
