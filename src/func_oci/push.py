"""Async push of built images to a registry.

Upload order is bottom-up: every layer and config of a platform before its
manifest, and every platform manifest before the index is put under the
tag. A reader of the tag therefore never sees a manifest that points at a
blob the registry does not yet have.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Sequence, Union

import aiofiles
import aiohttp

from .core.media_types import OCI_INDEX
from .core.registry_client import ProgressCallback, RegistryClient
from .core.types import (
    CredentialsProvider,
    Descriptor,
    RegistryConfig,
    RetryPolicy,
    empty_credentials_provider,
)
from .exceptions import BuildCancelledError, DigestMismatchError, RegistryConnectionError
from .image.assembler import PlatformImage
from .image.platforms import ImageIndex
from .store.blobs import BlobStore
from .utils.digest import split_digest
from .utils.reference import ImageReference, parse_reference
from .utils.retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass
class PushOptions:
    """Tuning and cancellation for a push."""

    concurrent_uploads: int = 3
    chunk_size: int = 5 * 1024 * 1024
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    insecure: bool = False
    timeout: int = 300
    cancel_event: Optional[asyncio.Event] = None
    deadline: Optional[float] = None  # time.monotonic() value
    progress_callback: Optional[ProgressCallback] = None


def check_cancelled(options: PushOptions) -> None:
    """Raise if the push was aborted; called before starting each blob or manifest."""
    if options.cancel_event is not None and options.cancel_event.is_set():
        raise BuildCancelledError("Push cancelled")
    if options.deadline is not None and time.monotonic() >= options.deadline:
        raise BuildCancelledError("Push deadline exceeded")


async def _gather_all(aws: Sequence) -> List:
    """Wait for every awaitable, then re-raise the most relevant failure.

    In-flight work always completes. A real failure wins over cancellation.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        for error in errors:
            if not isinstance(error, BuildCancelledError):
                raise error
        raise errors[0]
    return list(results)


async def _read_chunks(
    store: BlobStore, digest: str, chunk_size: int
) -> AsyncIterator[bytes]:
    """Stream a stored blob, failing before the last chunk is consumed if it is corrupt."""
    algorithm, _ = split_digest(digest)
    hasher = hashlib.new(algorithm)
    async with aiofiles.open(store.path(digest), "rb") as f:
        chunk = await f.read(chunk_size)
        while True:
            hasher.update(chunk)
            following = await f.read(chunk_size) if chunk else b""
            if not following:
                actual = f"{algorithm}:{hasher.hexdigest()}"
                if actual != digest:
                    raise DigestMismatchError(digest, actual)
            if chunk:
                yield chunk
            if not following:
                break
            chunk = following


class _BlobUploader:
    """Uploads each distinct blob once, however many platforms share it."""

    def __init__(
        self,
        client: RegistryClient,
        repository: str,
        store: BlobStore,
        options: PushOptions,
    ) -> None:
        self._client = client
        self._repository = repository
        self._store = store
        self._options = options
        self._semaphore = asyncio.Semaphore(max(1, options.concurrent_uploads))
        self._tasks: Dict[str, asyncio.Task] = {}

    async def _upload(self, descriptor: Descriptor) -> str:
        async with self._semaphore:
            check_cancelled(self._options)

            async def attempt() -> str:
                if await self._client.check_blob_exists(
                    self._repository, descriptor.digest
                ):
                    logger.debug("Blob %s already in registry", descriptor.digest)
                    return descriptor.digest
                return await self._client.upload_blob(
                    self._repository,
                    descriptor.digest,
                    _read_chunks(self._store, descriptor.digest, self._options.chunk_size),
                    progress_callback=self._options.progress_callback,
                    total_size=descriptor.size,
                )

            return await retry_transient(
                attempt, self._options.retry, f"upload {descriptor.digest}"
            )

    def upload(self, descriptor: Descriptor) -> "asyncio.Task[str]":
        if descriptor.digest not in self._tasks:
            self._tasks[descriptor.digest] = asyncio.ensure_future(
                self._upload(descriptor)
            )
        return self._tasks[descriptor.digest]


async def _upload_all_blobs(
    uploader: _BlobUploader, blobs: Sequence[Descriptor]
) -> List[str]:
    """Upload all blobs concurrently to registry.

    Args:
        uploader: Shared, deduplicating uploader
        blobs: Layers and config of one platform

    Returns:
        List of uploaded blob digests
    """
    return await _gather_all([uploader.upload(blob) for blob in blobs])


async def _upload_manifest(
    client: RegistryClient,
    repository: str,
    reference: str,
    manifest: bytes,
    media_type: str,
    options: PushOptions,
) -> str:
    check_cancelled(options)
    return await retry_transient(
        lambda: client.upload_manifest(repository, reference, manifest, media_type),
        options.retry,
        f"upload manifest {repository}:{reference}",
    )


async def _push_platform(
    client: RegistryClient,
    uploader: _BlobUploader,
    repository: str,
    store: BlobStore,
    image: PlatformImage,
    options: PushOptions,
) -> str:
    """Upload one platform's blobs, then its manifest by digest."""
    await _upload_all_blobs(uploader, [*image.layers, image.config])

    loop = asyncio.get_running_loop()
    manifest = await loop.run_in_executor(None, store.get, image.manifest.digest)
    digest = await _upload_manifest(
        client,
        repository,
        image.manifest.digest,
        manifest,
        image.manifest.media_type,
        options,
    )
    logger.info("Pushed %s manifest %s", image.platform, digest)
    return digest


async def check_registry_connectivity(
    registry_url: str, connector: Optional[aiohttp.BaseConnector] = None
) -> bool:
    """레지스트리 연결 상태를 확인합니다.

    Args:
        registry_url: 레지스트리 URL (예: "http://localhost:15000", "https://registry.example.com")
        connector: 호출자가 제공하는 aiohttp 커넥터 (선택사항)

    Returns:
        bool: 레지스트리가 v2 API 를 지원하면 True

    Raises:
        RegistryConnectionError: 레지스트리에 연결할 수 없는 경우
    """
    async with RegistryClient(RegistryConfig(url=registry_url), connector=connector) as client:
        return await client.check_registry_v2()


async def push_image(
    index: ImageIndex,
    store: BlobStore,
    reference: Union[str, ImageReference],
    credentials_provider: CredentialsProvider = empty_credentials_provider,
    connector: Optional[aiohttp.BaseConnector] = None,
    options: Optional[PushOptions] = None,
) -> str:
    """빌드된 멀티 플랫폼 이미지를 레지스트리에 비동기로 푸시합니다.

    레이어와 config 를 먼저 업로드하고, 플랫폼별 매니페스트를 digest 로 올린 뒤,
    모든 매니페스트가 성공한 경우에만 인덱스를 태그로 올립니다.
    하나라도 실패하면 태그는 갱신되지 않습니다.

    Args:
        index: 빌드된 이미지 인덱스
        store: 모든 blob 을 보관하는 로컬 blob 저장소
        reference: 대상 참조 (예: "localhost:5000/myapp:latest")
        credentials_provider: 레지스트리 이름으로 자격 증명을 돌려주는 async 함수
        connector: 호출자가 제공하는 aiohttp 커넥터 (선택사항)
        options: 동시 업로드 수, 재시도, 취소 설정

    Returns:
        str: 푸시된 인덱스의 digest (예: "sha256:abc123...")

    Raises:
        BuildCancelledError: 취소 신호 또는 마감 시간에 도달한 경우
        RegistryError: 재시도 후에도 푸시가 실패한 경우

    Examples:
        digest = await push_image(index, store, "localhost:5000/myapp:latest")
    """
    options = options or PushOptions()
    ref = parse_reference(reference) if isinstance(reference, str) else reference
    config = RegistryConfig.for_registry(
        ref.registry, insecure=options.insecure, timeout=options.timeout
    )

    async with RegistryClient(
        config,
        credentials_provider=credentials_provider,
        connector=connector,
        registry=ref.registry,
    ) as client:
        # Check connectivity first
        reachable = await retry_transient(
            client.check_registry_v2, options.retry, f"connect {config.base_url}"
        )
        if not reachable:
            raise RegistryConnectionError(
                f"Registry at {config.base_url} does not support v2 API"
            )

        uploader = _BlobUploader(client, ref.repository, store, options)
        await _gather_all(
            [
                _push_platform(client, uploader, ref.repository, store, image, options)
                for image in index.images
            ]
        )

        loop = asyncio.get_running_loop()
        index_bytes = await loop.run_in_executor(None, store.get, index.digest)
        target = ref.tag or index.digest
        await _upload_manifest(
            client, ref.repository, target, index_bytes, OCI_INDEX, options
        )

    logger.info("Pushed %s (%s)", ref.with_digest(index.digest), target)
    return index.digest
