"""Test helpers: project trees, layer readers and an in-memory registry."""

import gzip
import hashlib
import io
import json
import os
import tarfile
import uuid
from pathlib import Path

import aiohttp
from aiohttp import web

from func_oci.store.blobs import BlobStore

LINK_SCENARIO = {
    # path within the project root: (symlink target, expected validity)
    "a.lnk": ("a.txt", True),
    "absoluteLink": ("/etc/passwd", False),
    "...validName.lnk": ("...validName.txt", True),
    "linkToRoot": ("../root", True),
    "b/linkToRoot": ("..", True),
    "b/linkToCurrentDir": (".", True),
    "b/linkToRootsParent": ("../..", False),
    "b/linkOutsideRootsParent": ("../../..", False),
    "b/c/linkToParent": ("..", True),
}


def make_link_project(base: Path) -> Path:
    """Create the symlink scenario tree under ``base/root`` and return the root."""
    root = base / "root"
    (root / "b" / "c").mkdir(parents=True)
    (root / "a.txt").write_text("a")
    (root / "...validName.txt").write_text("dots")
    for path, (target, _) in LINK_SCENARIO.items():
        os.symlink(target, root / path)
    return root


def make_project(base: Path) -> Path:
    """Create a small, safe function project."""
    root = base / "project"
    (root / "src" / "pkg").mkdir(parents=True)
    (root / "handler.py").write_text("def handle(req):\n    return 'ok'\n")
    (root / "src" / "pkg" / "__init__.py").write_text("")
    (root / "src" / "pkg" / "util.py").write_text("VALUE = 1\n")
    run = root / "run.sh"
    run.write_text("#!/bin/sh\nexec python handler.py\n")
    run.chmod(0o755)
    os.symlink("src/pkg/util.py", root / "util.py")
    return root


def read_layer(store: BlobStore, digest: str) -> list[tuple[tarfile.TarInfo, bytes]]:
    """Decompress a stored layer and return its members with file contents."""
    members = []
    with gzip.open(store.path(digest), "rb") as gz:
        with tarfile.open(fileobj=gz, mode="r|") as tar:
            for member in tar:
                data = b""
                if member.isfile():
                    data = tar.extractfile(member).read()
                members.append((member, data))
    return members


def read_json(store: BlobStore, digest: str) -> dict:
    return json.loads(store.get(digest))


def sha256(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class FakeRegistry:
    """Minimal distribution API server with failure injection."""

    token_value = "test-token"

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.uploads: dict[str, bytearray] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail_manifests: set[str] = set()
        self.flaky: dict[str, int] = {}
        self.require_token = False
        self.credentials: tuple[str, str] | None = None
        self.host = ""
        self.app = web.Application()
        self.app.router.add_get("/token", self.token)
        self.app.router.add_route("*", "/v2/{path:.*}", self.handle)

    def reference(self, repository: str, tag: str = "latest") -> str:
        return f"{self.host}/{repository}:{tag}"

    def tags(self, repository: str) -> list[str]:
        return [
            ref
            for repo, ref in self.manifests
            if repo == repository and not ref.startswith("sha256:")
        ]

    async def token(self, request: web.Request) -> web.Response:
        if self.credentials is not None:
            auth = request.headers.get("Authorization", "")
            expected = aiohttp.BasicAuth(*self.credentials).encode()
            if auth != expected:
                return web.Response(status=401)
        return web.json_response({"token": self.token_value})

    async def handle(self, request: web.Request) -> web.StreamResponse:
        path = request.match_info["path"]
        self.requests.append((request.method, path))

        if self.require_token:
            if request.headers.get("Authorization") != f"Bearer {self.token_value}":
                realm = f"http://{self.host}/token"
                return web.Response(
                    status=401,
                    headers={
                        "WWW-Authenticate": f'Bearer realm="{realm}",service="fake"'
                    },
                )

        remaining = self.flaky.get(request.method, 0)
        if remaining:
            self.flaky[request.method] = remaining - 1
            return web.Response(status=503)

        if path == "":
            return web.json_response({})
        if "/blobs/uploads/" in path:
            return await self._upload(request, path)
        if "/manifests/" in path:
            repository, _, reference = path.rpartition("/manifests/")
            return await self._manifest(request, repository, reference)
        if "/blobs/" in path:
            _, _, digest = path.rpartition("/blobs/")
            return self._blob(request, digest)
        return web.Response(status=404)

    async def _upload(self, request: web.Request, path: str) -> web.Response:
        repository, _, upload_id = path.partition("/blobs/uploads/")
        if request.method == "POST":
            upload_id = uuid.uuid4().hex
            self.uploads[upload_id] = bytearray()
            location = f"/v2/{repository}/blobs/uploads/{upload_id}"
            return web.Response(status=202, headers={"Location": location})

        if upload_id not in self.uploads:
            return web.Response(status=404)

        if request.method == "PATCH":
            self.uploads[upload_id] += await request.read()
            location = f"/v2/{repository}/blobs/uploads/{upload_id}"
            return web.Response(status=202, headers={"Location": location})

        if request.method == "PUT":
            data = bytes(self.uploads.pop(upload_id) + await request.read())
            digest = request.query.get("digest", "")
            if sha256(data) != digest:
                return web.Response(status=400, text="digest mismatch")
            self.blobs[digest] = data
            return web.Response(status=201, headers={"Docker-Content-Digest": digest})

        return web.Response(status=405)

    def _blob(self, request: web.Request, digest: str) -> web.Response:
        if digest not in self.blobs:
            return web.Response(status=404)
        if request.method == "HEAD":
            return web.Response(status=200)
        return web.Response(status=200, body=self.blobs[digest])

    async def _manifest(
        self, request: web.Request, repository: str, reference: str
    ) -> web.Response:
        if request.method == "PUT":
            if reference in self.fail_manifests:
                return web.Response(status=500)
            body = await request.read()
            digest = sha256(body)
            media_type = request.headers.get("Content-Type", "")
            self.manifests[(repository, reference)] = (body, media_type)
            self.manifests[(repository, digest)] = (body, media_type)
            return web.Response(status=201, headers={"Docker-Content-Digest": digest})

        stored = self.manifests.get((repository, reference))
        if stored is None:
            return web.Response(status=404)
        body, media_type = stored
        return web.Response(status=200, body=body, headers={"Content-Type": media_type})


def seed_image(
    registry: FakeRegistry,
    repository: str,
    tag: str,
    platforms: list[dict],
    env: list[str] | None = None,
) -> None:
    """Publish a multi-platform base image with one tiny layer per platform."""
    manifests = []
    for platform in platforms:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            content = json.dumps(platform).encode()
            info = tarfile.TarInfo("etc/platform.json")
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
        raw = buf.getvalue()
        layer = gzip.compress(raw, mtime=0)
        registry.blobs[sha256(layer)] = layer

        config = json.dumps(
            {
                **platform,
                "config": {"Env": env or ["PATH=/usr/bin"], "Cmd": ["sh"]},
                "rootfs": {"type": "layers", "diff_ids": [sha256(raw)]},
            }
        ).encode()
        registry.blobs[sha256(config)] = config

        manifest = json.dumps(
            {
                "schemaVersion": 2,
                "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
                "config": {
                    "mediaType": "application/vnd.docker.container.image.v1+json",
                    "digest": sha256(config),
                    "size": len(config),
                },
                "layers": [
                    {
                        "mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                        "digest": sha256(layer),
                        "size": len(layer),
                    }
                ],
            }
        ).encode()
        media_type = "application/vnd.docker.distribution.manifest.v2+json"
        registry.manifests[(repository, sha256(manifest))] = (manifest, media_type)
        manifests.append(
            {
                "mediaType": media_type,
                "digest": sha256(manifest),
                "size": len(manifest),
                "platform": platform,
            }
        )

    index = json.dumps(
        {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.list.v2+json",
            "manifests": manifests,
        }
    ).encode()
    registry.manifests[(repository, tag)] = (
        index,
        "application/vnd.docker.distribution.manifest.list.v2+json",
    )
