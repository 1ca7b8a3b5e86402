"""Image reference parsing."""

from __future__ import annotations

from dataclasses import dataclass

from ..core.types import DEFAULT_REGISTRY
from .digest import validate_digest


@dataclass(frozen=True)
class ImageReference:
    """A parsed ``[registry/]repository[:tag][@digest]`` reference."""

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def reference(self) -> str:
        """Tag or digest to address the manifest with (digest wins)."""
        return self.digest or self.tag or "latest"

    def with_digest(self, digest: str) -> ImageReference:
        return ImageReference(self.registry, self.repository, self.tag, digest)

    def __str__(self) -> str:
        result = f"{self.registry}/{self.repository}"
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result


def _is_registry_host(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(value: str) -> ImageReference:
    """이미지 참조 문자열을 레지스트리, 저장소, 태그, digest 로 파싱합니다.

    Args:
        value: 이미지 참조 문자열
            - 예: "nginx", "nginx:alpine"
            - registry 포함: "localhost:5000/myapp:latest"
            - digest 포함: "ghcr.io/org/app@sha256:abc..."

    Returns:
        ImageReference: Docker Hub 기본값이 적용된 참조

    Raises:
        ValueError: 참조가 비어 있거나 형식이 잘못된 경우

    Examples:
        ref = parse_reference("localhost:5000/myapp:latest")
        # 결과: ImageReference("localhost:5000", "myapp", "latest")

        ref = parse_reference("nginx")
        # 결과: ImageReference("docker.io", "library/nginx", "latest")
    """
    value = value.strip()
    if not value:
        raise ValueError("Empty image reference")

    digest = None
    if "@" in value:
        value, digest = value.split("@", 1)
        if not validate_digest(digest):
            raise ValueError(f"Invalid digest in reference: {digest}")

    parts = value.split("/")
    if len(parts) > 1 and _is_registry_host(parts[0]):
        registry, remainder = parts[0], "/".join(parts[1:])
    else:
        registry, remainder = DEFAULT_REGISTRY, value

    tag = None
    # Split only on the last ':' after the final '/', registry ports are already gone
    name, _, candidate = remainder.rpartition(":")
    if name and "/" not in candidate:
        remainder, tag = name, candidate or None

    if not remainder or remainder.endswith("/") or "//" in remainder:
        raise ValueError(f"Invalid repository in reference: {value!r}")
    if registry == DEFAULT_REGISTRY and "/" not in remainder:
        remainder = f"library/{remainder}"
    if tag is None and digest is None:
        tag = "latest"

    return ImageReference(registry, remainder, tag, digest)
