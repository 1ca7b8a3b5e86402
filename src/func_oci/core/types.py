"""Core data types shared across the engine."""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_URL = "https://registry-1.docker.io"


@dataclass(frozen=True)
class Platform:
    """Target platform of one image variant."""

    os: str
    architecture: str
    variant: str | None = None

    @classmethod
    def parse(cls, value: str) -> Platform:
        """Parse ``os/arch[/variant]`` (e.g. ``linux/arm64/v8``)."""
        parts = value.strip().split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"Invalid platform: {value!r}")
        return cls(parts[0], parts[1], parts[2] if len(parts) == 3 else None)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Platform:
        return cls(
            os=data.get("os", ""),
            architecture=data.get("architecture", ""),
            variant=data.get("variant") or None,
        )

    def to_dict(self) -> dict[str, str]:
        result = {"architecture": self.architecture, "os": self.os}
        if self.variant:
            result["variant"] = self.variant
        return result

    def __str__(self) -> str:
        if self.variant:
            return f"{self.os}/{self.architecture}/{self.variant}"
        return f"{self.os}/{self.architecture}"


@dataclass(frozen=True)
class Descriptor:
    """OCI content descriptor."""

    media_type: str
    digest: str
    size: int
    platform: Platform | None = None
    annotations: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.platform is not None:
            result["platform"] = self.platform.to_dict()
        if self.annotations:
            result["annotations"] = dict(self.annotations)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Descriptor:
        platform = data.get("platform")
        return cls(
            media_type=data["mediaType"],
            digest=data["digest"],
            size=int(data["size"]),
            platform=Platform.from_dict(platform) if platform else None,
            annotations=data.get("annotations") or None,
        )


@dataclass(frozen=True)
class Credentials:
    """Registry credentials; empty username means anonymous access."""

    username: str = ""
    password: str = ""

    @property
    def anonymous(self) -> bool:
        return not self.username


CredentialsProvider = Callable[[str], Awaitable[Credentials]]


async def empty_credentials_provider(registry: str) -> Credentials:
    """Credentials provider that always returns anonymous credentials."""
    return Credentials()


@dataclass
class RegistryConfig:
    """Connection settings for a single registry."""

    url: str
    timeout: int = 300
    insecure: bool = False

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")

    @classmethod
    def for_registry(
        cls, registry: str, insecure: bool = False, timeout: int = 300
    ) -> RegistryConfig:
        """Build the config for a registry host name."""
        if registry in (DEFAULT_REGISTRY, "registry-1.docker.io", "index.docker.io"):
            return cls(url=DOCKER_HUB_URL, timeout=timeout)
        scheme = "http" if insecure else "https"
        return cls(url=f"{scheme}://{registry}", timeout=timeout, insecure=insecure)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient failures."""

    attempts: int = 3
    delay: float = 0.5
    backoff: float = 2.0


@dataclass(frozen=True)
class RuntimeOverrides:
    """Caller-supplied runtime metadata applied on top of the base config.

    ``None`` means "inherit from the base image".
    """

    env: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] | None = None
    cmd: tuple[str, ...] | None = None
    working_dir: str | None = None
    exposed_ports: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    user: str | None = None


@dataclass
class ContainerizeConfig:
    """Engine-wide settings, passed explicitly into every component."""

    layer_prefix: str = "func"
    compression_level: int = 6
    source_date_epoch: int = 0
    chunk_size: int = 5 * 1024 * 1024
    concurrent_uploads: int = 3
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls) -> ContainerizeConfig:
        """Create a config, honouring ``SOURCE_DATE_EPOCH`` and
        ``FUNC_OCI_CONCURRENT_UPLOADS`` when set."""
        config = cls()
        epoch = os.getenv("SOURCE_DATE_EPOCH")
        if epoch:
            config.source_date_epoch = int(epoch)
        uploads = os.getenv("FUNC_OCI_CONCURRENT_UPLOADS")
        if uploads:
            config.concurrent_uploads = max(1, int(uploads))
        return config
