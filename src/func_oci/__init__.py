"""func-oci - build OCI images for function projects without a container daemon."""

__version__ = "0.1.0"

from .builder import Builder, BuildRequest, BuildResult, OCIBuilder
from .core.registry_client import RegistryClient
from .core.types import (
    ContainerizeConfig,
    Credentials,
    Platform,
    RetryPolicy,
    RuntimeOverrides,
    empty_credentials_provider,
)
from .exceptions import (
    AuthenticationError,
    BlobNotFoundError,
    BlobUploadError,
    BuildCancelledError,
    DigestMismatchError,
    ManifestError,
    OCIError,
    PlatformNotFoundError,
    RegistryConnectionError,
    RegistryError,
    ValidationError,
)
from .image.base import LayoutResolver, RegistryResolver, ScratchResolver
from .layout import write_layout
from .push import PushOptions, check_registry_connectivity, push_image
from .store.blobs import BlobStore

__all__ = [
    "OCIBuilder",
    "Builder",
    "BuildRequest",
    "BuildResult",
    "BlobStore",
    "RegistryClient",
    "ContainerizeConfig",
    "Credentials",
    "Platform",
    "RetryPolicy",
    "RuntimeOverrides",
    "empty_credentials_provider",
    "LayoutResolver",
    "RegistryResolver",
    "ScratchResolver",
    "PushOptions",
    "check_registry_connectivity",
    "push_image",
    "write_layout",
    "OCIError",
    "ValidationError",
    "BlobNotFoundError",
    "DigestMismatchError",
    "PlatformNotFoundError",
    "BuildCancelledError",
    "RegistryError",
    "RegistryConnectionError",
    "AuthenticationError",
    "BlobUploadError",
    "ManifestError",
]
