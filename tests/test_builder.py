"""End-to-end tests for the containerization flow."""

import asyncio
import json

import pytest

from func_oci import (
    Builder,
    BuildRequest,
    ContainerizeConfig,
    LayoutResolver,
    OCIBuilder,
    Platform,
    RegistryResolver,
    RuntimeOverrides,
)
from func_oci.core.registry_client import RegistryClient
from func_oci.core.types import RegistryConfig
from func_oci.exceptions import BuildCancelledError, ValidationError
from func_oci.store.blobs import BlobStore
from tests.helpers import read_json, seed_image

AMD64 = Platform("linux", "amd64")
ARM64 = Platform("linux", "arm64", "v8")


def test_oci_builder_satisfies_builder_protocol(store):
    assert isinstance(OCIBuilder(store), Builder)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1700000000")
    monkeypatch.setenv("FUNC_OCI_CONCURRENT_UPLOADS", "0")
    config = ContainerizeConfig.from_env()
    assert config.source_date_epoch == 1_700_000_000
    assert config.concurrent_uploads == 1


@pytest.mark.asyncio
async def test_build_to_layout(store, project, tmp_path):
    builder = OCIBuilder(store)
    result = await builder.build(
        BuildRequest(
            root=project,
            platforms=[AMD64, ARM64],
            overrides=RuntimeOverrides(cmd=("/func/run.sh",), working_dir="/func"),
            layout_path=tmp_path / "image",
            tag="latest",
        )
    )

    assert result.reference == result.digest == result.index.digest
    assert result.layout_path == tmp_path / "image"
    index = json.loads((tmp_path / "image" / "index.json").read_text())
    assert [m["digest"] for m in index["manifests"]] == [
        image.manifest.digest for image in result.index.images
    ]
    config = read_json(store, result.index.images[0].config.digest)
    assert config["config"]["WorkingDir"] == "/func"


@pytest.mark.asyncio
async def test_identical_builds_have_identical_digests(project, tmp_path):
    digests = []
    for name in ("first", "second"):
        builder = OCIBuilder(BlobStore(tmp_path / name))
        result = await builder.build(BuildRequest(root=project, platforms=[AMD64, ARM64]))
        digests.append(result.digest)
    assert digests[0] == digests[1]


@pytest.mark.asyncio
async def test_source_date_epoch_changes_digest(project, store):
    first = await OCIBuilder(store).build(BuildRequest(root=project, platforms=[AMD64]))
    second = await OCIBuilder(store, ContainerizeConfig(source_date_epoch=1)).build(
        BuildRequest(root=project, platforms=[AMD64])
    )
    assert first.digest != second.digest


@pytest.mark.asyncio
async def test_escaping_links_fail_before_anything_is_written(link_project, store, tmp_path):
    builder = OCIBuilder(store)
    with pytest.raises(ValidationError) as excinfo:
        await builder.build(
            BuildRequest(root=link_project, platforms=[AMD64], layout_path=tmp_path / "image")
        )

    assert len(excinfo.value.rejections) == 3
    assert not (tmp_path / "image").exists()
    assert not any((store.root / "blobs").rglob("*"))


@pytest.mark.asyncio
async def test_ignore_patterns_make_tree_valid(link_project, store):
    builder = OCIBuilder(store)
    result = await builder.build(
        BuildRequest(
            root=link_project,
            platforms=[AMD64],
            ignore_patterns=["absoluteLink", "linkToRootsParent", "linkOutsideRootsParent"],
        )
    )
    paths = [e.path for e in result.layer.entries]
    assert "b/linkToRoot" in paths
    assert "absoluteLink" not in paths


@pytest.mark.asyncio
async def test_cancelled_build_writes_nothing(store, project, tmp_path):
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(BuildCancelledError):
        await OCIBuilder(store).build(
            BuildRequest(
                root=project,
                platforms=[AMD64],
                layout_path=tmp_path / "image",
                cancel_event=cancel,
            )
        )
    assert not (tmp_path / "image").exists()


@pytest.mark.asyncio
async def test_duplicate_platforms_rejected(store, project):
    with pytest.raises(ValueError):
        await OCIBuilder(store).build(BuildRequest(root=project, platforms=[AMD64, AMD64]))


@pytest.mark.asyncio
async def test_build_on_registry_base_and_push(store, project, fake_registry, fast_config):
    seed_image(
        fake_registry,
        "base/runtime",
        "1.0",
        [{"os": "linux", "architecture": "amd64"}, {"os": "linux", "architecture": "arm64", "variant": "v8"}],
    )

    def client_for(registry):
        return RegistryClient(RegistryConfig.for_registry(registry, insecure=True), registry=registry)

    events = []
    async with RegistryResolver(client_for) as resolver:
        builder = OCIBuilder(
            store,
            config=fast_config,
            resolver=resolver,
            insecure_registries=[fake_registry.host],
        )
        result = await builder.build(
            BuildRequest(
                root=project,
                platforms=[AMD64, ARM64],
                base_image=fake_registry.reference("base/runtime", "1.0"),
                push_to=fake_registry.reference("func/hello", "v1"),
                progress_callback=lambda *event: events.append(event),
            )
        )

    assert result.reference == f"{fake_registry.host}/func/hello:v1@{result.digest}"
    assert fake_registry.tags("func/hello") == ["v1"]
    project_layer = result.layer.descriptor
    assert (project_layer.size, project_layer.size) in [e[:2] for e in events]
    for image in result.index.images:
        assert len(image.layers) == 2
        manifest = json.loads(fake_registry.manifests[("func/hello", image.manifest.digest)][0])
        assert [layer["digest"] for layer in manifest["layers"]] == [
            layer.digest for layer in image.layers
        ]


@pytest.mark.asyncio
async def test_per_platform_base_images(store, project, tmp_path):
    base_src = tmp_path / "base-src"
    base_src.mkdir()
    (base_src / "runtime").write_text("runtime\n")
    base = await OCIBuilder(store).build(
        BuildRequest(
            root=base_src,
            platforms=[AMD64],
            layout_path=tmp_path / "base",
            tag="base",
        )
    )
    builder = OCIBuilder(store, resolver=LayoutResolver(tmp_path / "base"))
    result = await builder.build(
        BuildRequest(
            root=project,
            platforms=[AMD64, ARM64],
            base_images={AMD64: "base"},
        )
    )

    amd64, arm64 = result.index.images
    assert amd64.layers[0] == base.index.images[0].layers[0]
    assert len(amd64.layers) == 2
    assert len(arm64.layers) == 1
