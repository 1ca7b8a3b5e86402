"""Per-platform image config and manifest assembly."""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..core.media_types import OCI_CONFIG, OCI_MANIFEST
from ..core.types import ContainerizeConfig, Descriptor, Platform, RuntimeOverrides
from ..store.blobs import BlobStore
from ..tar.models import Layer
from .base import BaseImage

logger = logging.getLogger(__name__)

CREATED_BY = "func-oci: function source layer"


@dataclass(frozen=True)
class PlatformImage:
    """The stored manifest of one platform variant and what it references."""

    platform: Platform
    manifest: Descriptor
    config: Descriptor
    layers: tuple[Descriptor, ...]


def encode_json(document: Any) -> bytes:
    """Canonical JSON encoding used for every stored document."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def format_created(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def merge_env(base: Iterable[str], overrides: Iterable[str]) -> list[str]:
    """Overlay ``KEY=VALUE`` entries, replacing keys in place and appending new ones."""
    result = list(base)
    positions = {item.split("=", 1)[0]: i for i, item in enumerate(result)}
    for item in overrides:
        key = item.split("=", 1)[0]
        if key in positions:
            result[positions[key]] = item
        else:
            positions[key] = len(result)
            result.append(item)
    return result


def apply_overrides(runtime: dict[str, Any], overrides: RuntimeOverrides) -> dict[str, Any]:
    """Apply caller overrides to a base ``config`` section (returns a new dict).

    Setting an entrypoint without a command clears the inherited command, as
    an inherited ``Cmd`` would otherwise become arguments to the new
    entrypoint.
    """
    runtime = dict(runtime)

    env = merge_env(runtime.get("Env") or [], overrides.env)
    if env:
        runtime["Env"] = env

    if overrides.entrypoint is not None:
        runtime["Entrypoint"] = list(overrides.entrypoint)
        if overrides.cmd is None:
            runtime.pop("Cmd", None)
    if overrides.cmd is not None:
        runtime["Cmd"] = list(overrides.cmd)
    if overrides.working_dir is not None:
        runtime["WorkingDir"] = overrides.working_dir
    if overrides.user is not None:
        runtime["User"] = overrides.user

    if overrides.exposed_ports:
        ports = dict(runtime.get("ExposedPorts") or {})
        for port in overrides.exposed_ports:
            ports[port if "/" in port else f"{port}/tcp"] = {}
        runtime["ExposedPorts"] = ports

    if overrides.labels:
        labels = dict(runtime.get("Labels") or {})
        labels.update(overrides.labels)
        runtime["Labels"] = labels

    return runtime


class ImageAssembler:
    """Builds and stores the config and manifest of one platform image."""

    def __init__(self, store: BlobStore, config: ContainerizeConfig) -> None:
        self.store = store
        self.config = config

    def build_config(
        self,
        platform: Platform,
        base: BaseImage,
        layer: Layer,
        overrides: RuntimeOverrides,
    ) -> dict[str, Any]:
        created = format_created(self.config.source_date_epoch)
        document = copy.deepcopy(base.config)

        document["os"] = platform.os
        document["architecture"] = platform.architecture
        if platform.variant:
            document["variant"] = platform.variant
        else:
            document.pop("variant", None)
        document["created"] = created
        document["config"] = apply_overrides(document.get("config") or {}, overrides)
        document["rootfs"] = {
            "type": "layers",
            "diff_ids": [*base.diff_ids, layer.diff_id],
        }

        # Only extend history when it can stay consistent with the layer list
        history = document.get("history")
        if history or not base.layers:
            document["history"] = [
                *(history or []),
                {"created": created, "created_by": CREATED_BY},
            ]
        return document

    def assemble(
        self,
        platform: Platform,
        base: BaseImage,
        layer: Layer,
        overrides: RuntimeOverrides,
    ) -> PlatformImage:
        """Store the config and manifest for ``platform``.

        Layer order is base layers first, in their original order, then the
        new layer. It must never be re-sorted.
        """
        config_bytes = encode_json(self.build_config(platform, base, layer, overrides))
        config_descriptor = Descriptor(
            OCI_CONFIG, self.store.put(config_bytes), len(config_bytes)
        )

        layers = (*base.layers, layer.descriptor)
        manifest = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": config_descriptor.to_dict(),
            "layers": [d.to_dict() for d in layers],
        }
        manifest_bytes = encode_json(manifest)
        manifest_descriptor = Descriptor(
            OCI_MANIFEST,
            self.store.put(manifest_bytes),
            len(manifest_bytes),
            platform=platform,
        )

        logger.info(
            "Assembled %s: manifest %s (%d layers)",
            platform,
            manifest_descriptor.digest,
            len(layers),
        )
        return PlatformImage(platform, manifest_descriptor, config_descriptor, layers)
