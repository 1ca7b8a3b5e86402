"""Custom exceptions for the func-oci containerization engine."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import aiohttp

if TYPE_CHECKING:
    from .core.types import Platform
    from .tar.models import PathRejection


class OCIError(Exception):
    """Base exception for all containerization errors."""

    pass


class ValidationError(OCIError):
    """Raised when the project tree contains entries that cannot be packaged."""

    def __init__(self, rejections: list[PathRejection]) -> None:
        self.rejections = list(rejections)
        details = "; ".join(f"{r.path}: {r.reason}" for r in self.rejections)
        super().__init__(f"Invalid project entries: {details}")


class BlobNotFoundError(OCIError):
    """Raised when a blob is not present in the store."""

    def __init__(self, digest: str) -> None:
        self.digest = digest
        super().__init__(f"Blob not found: {digest}")


class DigestMismatchError(OCIError):
    """Raised when stored content does not hash to its digest."""

    def __init__(self, digest: str, actual: str) -> None:
        self.digest = digest
        self.actual = actual
        super().__init__(
            f"Data integrity failure: blob {digest} has content digest {actual}"
        )


class PlatformNotFoundError(OCIError):
    """Raised when a base image has no variant for a requested platform."""

    def __init__(self, platform: Platform, reference: str) -> None:
        self.platform = platform
        self.reference = reference
        super().__init__(f"Base image {reference} has no variant for {platform}")


class BuildCancelledError(OCIError):
    """Raised when a build is aborted by a cancel signal or deadline."""

    pass


class RegistryError(OCIError):
    """Base exception for all registry-related errors."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RegistryConnectionError(RegistryError):
    """Raised when unable to connect to the registry."""

    pass


class AuthenticationError(RegistryError):
    """Raised when the registry rejects the supplied credentials."""

    pass


class BlobUploadError(RegistryError):
    """Raised when blob upload fails."""

    pass


class ManifestError(RegistryError):
    """Raised when manifest operations fail."""

    pass


def is_transient(error: BaseException) -> bool:
    """Check whether a failure is worth retrying.

    Connection-level failures, timeouts and 5xx responses are transient.
    Everything else (4xx, validation, local I/O) is not.
    """
    if isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError)):
        return True
    if isinstance(error, RegistryConnectionError):
        return True
    if isinstance(error, RegistryError) and error.status is not None:
        return error.status >= 500
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500
    return False
