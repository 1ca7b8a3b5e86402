"""Tests for the registry client and registry-backed base images."""

import pytest

from func_oci.core.media_types import DOCKER_MANIFEST_LIST, OCI_LAYER_GZIP
from func_oci.core.registry_client import RegistryClient
from func_oci.core.types import Platform, RegistryConfig
from func_oci.exceptions import (
    DigestMismatchError,
    ManifestError,
    PlatformNotFoundError,
    RegistryConnectionError,
)
from func_oci.image.base import RegistryResolver
from tests.helpers import seed_image, sha256

BASE_PLATFORMS = [
    {"os": "linux", "architecture": "amd64"},
    {"os": "linux", "architecture": "arm64", "variant": "v8"},
]


def client_for(registry):
    return RegistryClient(
        RegistryConfig.for_registry(registry, insecure=True), registry=registry
    )


@pytest.fixture
def seeded(fake_registry):
    seed_image(fake_registry, "base/runtime", "1.0", BASE_PLATFORMS, env=["PATH=/bin", "RT=1"])
    return fake_registry


def test_registry_config_for_docker_hub():
    config = RegistryConfig.for_registry("docker.io")
    assert config.base_url == "https://registry-1.docker.io"
    assert RegistryConfig.for_registry("localhost:5000", insecure=True).base_url == (
        "http://localhost:5000"
    )


class TestRegistryClient:
    """Distribution API calls against the in-process registry."""

    @pytest.mark.asyncio
    async def test_blob_roundtrip(self, fake_registry):
        data = b"layer bytes" * 100
        digest = sha256(data)
        async with client_for(fake_registry.host) as client:
            assert not await client.check_blob_exists("test/app", digest)
            assert await client.upload_blob("test/app", digest, data) == digest
            assert await client.check_blob_exists("test/app", digest)

            chunks = [c async for c in client.get_blob_stream("test/app", digest, 256)]
        assert b"".join(chunks) == data

    @pytest.mark.asyncio
    async def test_upload_reports_progress(self, fake_registry):
        data = b"x" * 300
        digest = sha256(data)
        events = []
        async with client_for(fake_registry.host) as client:
            await client.upload_blob(
                "test/app", digest, data, progress_callback=lambda *e: events.append(e)
            )
        assert events == [(300, 300, f"Uploading {digest[:19]}")]

    @pytest.mark.asyncio
    async def test_upload_rejects_invalid_digest(self, fake_registry):
        async with client_for(fake_registry.host) as client:
            with pytest.raises(ValueError):
                await client.upload_blob("test/app", "sha256:xyz", b"data")

    @pytest.mark.asyncio
    async def test_manifest_roundtrip(self, fake_registry):
        manifest = b'{"schemaVersion":2}'
        async with client_for(fake_registry.host) as client:
            digest = await client.upload_manifest("test/app", "v1", manifest)
            body, media_type = await client.get_manifest("test/app", "v1")
        assert digest == sha256(manifest)
        assert body == manifest
        assert media_type == "application/vnd.oci.image.manifest.v1+json"

    @pytest.mark.asyncio
    async def test_missing_manifest(self, fake_registry):
        async with client_for(fake_registry.host) as client:
            with pytest.raises(ManifestError) as excinfo:
                await client.get_manifest("test/app", "nope")
        assert excinfo.value.status == 404

    @pytest.mark.asyncio
    async def test_unreachable_registry(self):
        async with client_for("127.0.0.1:1") as client:
            with pytest.raises(RegistryConnectionError):
                await client.check_registry_v2()


class TestRegistryResolver:
    """Base image resolution from a multi-platform registry image."""

    @pytest.mark.asyncio
    async def test_resolve_platform(self, seeded, store):
        reference = seeded.reference("base/runtime", "1.0")
        async with RegistryResolver(client_for) as resolver:
            base = await resolver.resolve(reference, Platform("linux", "amd64"), store)

        assert base.config["architecture"] == "amd64"
        assert base.config["config"]["Env"] == ["PATH=/bin", "RT=1"]
        assert len(base.layers) == 1 == len(base.diff_ids)
        assert base.layers[0].media_type == OCI_LAYER_GZIP
        assert store.has(base.layers[0].digest)
        store.verify(base.layers[0].digest)
        assert not list(store.ingest_dir.iterdir())

    @pytest.mark.asyncio
    async def test_resolve_variant_without_request(self, seeded, store):
        reference = seeded.reference("base/runtime", "1.0")
        async with RegistryResolver(client_for) as resolver:
            base = await resolver.resolve(reference, Platform("linux", "arm64"), store)
        assert base.config["variant"] == "v8"

    @pytest.mark.asyncio
    async def test_missing_platform(self, seeded, store):
        reference = seeded.reference("base/runtime", "1.0")
        async with RegistryResolver(client_for) as resolver:
            with pytest.raises(PlatformNotFoundError):
                await resolver.resolve(reference, Platform("linux", "arm", "v7"), store)

    @pytest.mark.asyncio
    async def test_corrupt_base_layer(self, seeded, store):
        body, media_type = seeded.manifests[("base/runtime", "1.0")]
        assert media_type == DOCKER_MANIFEST_LIST
        reference = seeded.reference("base/runtime", "1.0")

        # Corrupt every layer blob of the seeded image
        for digest, data in list(seeded.blobs.items()):
            if data[:2] == b"\x1f\x8b":
                seeded.blobs[digest] = data + b"garbage"

        async with RegistryResolver(client_for) as resolver:
            with pytest.raises(DigestMismatchError):
                await resolver.resolve(reference, Platform("linux", "amd64"), store)
