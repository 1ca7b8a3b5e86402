"""OCI Distribution API async client implementation."""

import inspect
import logging
import re
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, Union
from urllib.parse import urljoin, urlparse

import aiohttp

from ..exceptions import (
    AuthenticationError,
    BlobUploadError,
    ManifestError,
    RegistryConnectionError,
    RegistryError,
)
from ..utils.digest import calculate_digest, validate_digest
from .media_types import MANIFEST_ACCEPT, OCI_MANIFEST
from .types import CredentialsProvider, RegistryConfig, empty_credentials_provider

logger = logging.getLogger(__name__)

CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

# (uploaded, total, message); total is 0 when the size is unknown
ProgressCallback = Callable[[int, int, str], Optional[Awaitable[None]]]


async def report_progress(
    callback: ProgressCallback, uploaded: int, total: int, message: str
) -> None:
    """Invoke a sync or async progress callback."""
    result = callback(uploaded, total, message)
    if inspect.isawaitable(result):
        await result


class RegistryClient:
    """Async client for pushing to and pulling from an OCI registry."""

    def __init__(
        self,
        config: RegistryConfig,
        credentials_provider: CredentialsProvider = empty_credentials_provider,
        connector: Optional[aiohttp.BaseConnector] = None,
        registry: Optional[str] = None,
        actions: str = "pull,push",
    ) -> None:
        """Initialize the registry client.

        Args:
            config: Registry configuration (base URL, timeout)
            credentials_provider: Async callable returning credentials for a registry
            connector: Caller-supplied aiohttp transport; not closed by the client
            registry: Registry name passed to the credentials provider
            actions: Token scope actions requested during authentication
        """
        self.registry_url = config.base_url
        self.timeout = config.timeout
        self.connector = connector
        self.registry = registry or urlparse(self.registry_url).netloc
        self.actions = actions
        self.session: Optional[aiohttp.ClientSession] = None
        self._credentials_provider = credentials_provider
        self._authorizations: Dict[str, str] = {}

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                connector_owner=self.connector is None,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _absolute(self, location: str) -> str:
        if not location.startswith("http"):
            return urljoin(self.registry_url, location)
        return location

    async def _authenticate(self, challenge: str, repository: str) -> None:
        """Answer a WWW-Authenticate challenge and cache the authorization.

        Args:
            challenge: WWW-Authenticate header value
            repository: Repository name for the token scope

        Raises:
            AuthenticationError: If no usable credentials or token are obtained
        """
        scheme, _, _ = challenge.partition(" ")
        params = dict(CHALLENGE_PARAM.findall(challenge))
        credentials = await self._credentials_provider(self.registry)

        basic = None
        if not credentials.anonymous:
            basic = aiohttp.BasicAuth(credentials.username, credentials.password)

        if scheme.lower() == "basic":
            if basic is None:
                raise AuthenticationError(
                    f"Registry {self.registry} requires credentials", status=401
                )
            self._authorizations[repository] = basic.encode()
            return

        if scheme.lower() != "bearer":
            raise AuthenticationError(f"Unsupported auth scheme: {scheme!r}", status=401)

        realm = params.get("realm")
        if not realm:
            raise AuthenticationError("No realm in WWW-Authenticate header", status=401)

        query = {"scope": f"repository:{repository}:{self.actions}"}
        if params.get("service"):
            query["service"] = params["service"]

        async with self.session.get(realm, params=query, auth=basic) as resp:
            if resp.status in (401, 403):
                raise AuthenticationError(
                    f"Token authentication failed for {self.registry}", status=resp.status
                )
            if resp.status != 200:
                raise RegistryError(
                    f"Token request failed: {resp.status}", status=resp.status
                )
            data = await resp.json(content_type=None)

        token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthenticationError(f"Token response from {realm} has no token")
        self._authorizations[repository] = f"Bearer {token}"

    async def _send(
        self,
        method: str,
        url: str,
        repository: str,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> aiohttp.ClientResponse:
        """Send a request, answering one auth challenge if the registry asks.

        The caller owns the returned response and must release it.
        """
        headers = dict(headers or {})
        for attempt in range(2):
            authorization = self._authorizations.get(repository)
            if authorization:
                headers["Authorization"] = authorization
            try:
                resp = await self.session.request(method, url, data=data, headers=headers)
            except aiohttp.ClientConnectionError as e:
                raise RegistryConnectionError(
                    f"Failed to reach {self.registry_url}: {e}"
                ) from e

            if resp.status != 401 or attempt == 1:
                return resp

            challenge = resp.headers.get("WWW-Authenticate", "")
            resp.release()
            if not challenge:
                raise AuthenticationError(
                    f"Registry {self.registry} rejected the request", status=401
                )
            await self._authenticate(challenge, repository)
        return resp

    async def check_registry_v2(self) -> bool:
        """Check if the registry supports v2 API.

        Returns:
            True if v2 API is supported (an auth challenge counts as support)
        """
        try:
            async with self.session.get(f"{self.registry_url}/v2/") as resp:
                return resp.status in (200, 401)
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(
                f"Failed to reach {self.registry_url}: {e}"
            ) from e

    async def check_blob_exists(self, repository: str, digest: str) -> bool:
        """Check if a blob exists in the registry.

        Args:
            repository: Repository name
            digest: Blob digest

        Returns:
            True if blob exists
        """
        url = f"{self.registry_url}/v2/{repository}/blobs/{digest}"
        resp = await self._send("HEAD", url, repository)
        try:
            if resp.status == 200:
                return True
            if resp.status == 404:
                return False
            raise BlobUploadError(
                f"Failed to check blob {digest}: HTTP {resp.status}", status=resp.status
            )
        finally:
            resp.release()

    async def upload_blob(
        self,
        repository: str,
        digest: str,
        data: Union[bytes, AsyncIterator[bytes]],
        progress_callback: Optional[ProgressCallback] = None,
        total_size: int = 0,
    ) -> str:
        """Upload a blob to the registry.

        Args:
            repository: Repository name
            digest: Expected blob digest
            data: Blob data (bytes or async iterator of chunks)
            progress_callback: Called after every chunk with
                ``(uploaded, total, message)``; may be sync or async
            total_size: Blob size reported to the callback (0 if unknown)

        Returns:
            Blob digest

        Raises:
            BlobUploadError: If upload fails
        """
        # Validate digest format
        if not validate_digest(digest):
            raise ValueError(f"Invalid digest format: {digest}")

        try:
            # Start upload session
            url = f"{self.registry_url}/v2/{repository}/blobs/uploads/"
            resp = await self._send("POST", url, repository)
            try:
                if resp.status not in (201, 202):
                    raise BlobUploadError(
                        f"Failed to start upload of {digest}: HTTP {resp.status}",
                        status=resp.status,
                    )
                upload_url = self._absolute(resp.headers.get("Location", ""))
            finally:
                resp.release()

            if isinstance(data, (bytes, bytearray)):
                total_size = total_size or len(data)
                chunks = _single_chunk(bytes(data))
            else:
                chunks = data

            offset = 0
            async for chunk in chunks:
                if not chunk:
                    continue
                resp = await self._send(
                    "PATCH",
                    upload_url,
                    repository,
                    data=chunk,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(len(chunk)),
                        "Content-Range": f"{offset}-{offset + len(chunk) - 1}",
                    },
                )
                try:
                    if resp.status not in (202, 204):
                        raise BlobUploadError(
                            f"Failed to upload chunk of {digest}: HTTP {resp.status}",
                            status=resp.status,
                        )
                    upload_url = self._absolute(
                        resp.headers.get("Location", "") or upload_url
                    )
                finally:
                    resp.release()
                offset += len(chunk)
                if progress_callback:
                    await report_progress(
                        progress_callback, offset, total_size, f"Uploading {digest[:19]}"
                    )

            # Finalize upload
            final_url = (
                f"{upload_url}&digest={digest}"
                if "?" in upload_url
                else f"{upload_url}?digest={digest}"
            )
            resp = await self._send(
                "PUT", final_url, repository, headers={"Content-Length": "0"}
            )
            try:
                if resp.status not in (201, 204):
                    raise BlobUploadError(
                        f"Failed to commit blob {digest}: HTTP {resp.status}",
                        status=resp.status,
                    )
            finally:
                resp.release()

            logger.debug("Uploaded blob %s (%d bytes) to %s", digest, offset, repository)
            return digest

        except aiohttp.ClientConnectionError as e:
            raise RegistryConnectionError(f"Failed to upload blob: {e}") from e
        except aiohttp.ClientError as e:
            raise BlobUploadError(f"Failed to upload blob: {e}") from e

    async def upload_manifest(
        self,
        repository: str,
        reference: str,
        manifest: bytes,
        media_type: str = OCI_MANIFEST,
    ) -> str:
        """Upload a manifest to the registry.

        Args:
            repository: Repository name
            reference: Tag or digest reference
            manifest: Canonical manifest bytes; the digest is computed over these
            media_type: Manifest media type

        Returns:
            Manifest digest

        Raises:
            ManifestError: If upload fails
        """
        try:
            url = f"{self.registry_url}/v2/{repository}/manifests/{reference}"
            resp = await self._send(
                "PUT",
                url,
                repository,
                data=manifest,
                headers={
                    "Content-Type": media_type,
                    "Content-Length": str(len(manifest)),
                },
            )
            try:
                if resp.status not in (200, 201, 202):
                    raise ManifestError(
                        f"Failed to upload manifest {reference}: HTTP {resp.status}",
                        status=resp.status,
                    )
                return resp.headers.get("Docker-Content-Digest") or calculate_digest(
                    manifest
                )
            finally:
                resp.release()

        except aiohttp.ClientConnectionError as e:
            raise RegistryConnectionError(f"Failed to upload manifest: {e}") from e
        except aiohttp.ClientError as e:
            raise ManifestError(f"Failed to upload manifest: {e}") from e

    async def get_manifest(
        self,
        repository: str,
        reference: str,
        accept: str = MANIFEST_ACCEPT,
    ) -> Tuple[bytes, str]:
        """Retrieve a manifest or index from the registry.

        Args:
            repository: Repository name
            reference: Tag or digest reference
            accept: Accepted media types

        Returns:
            Tuple of raw manifest bytes and its media type

        Raises:
            ManifestError: If retrieval fails
        """
        try:
            url = f"{self.registry_url}/v2/{repository}/manifests/{reference}"
            resp = await self._send("GET", url, repository, headers={"Accept": accept})
            try:
                if resp.status != 200:
                    raise ManifestError(
                        f"Failed to get manifest {repository}:{reference}: "
                        f"HTTP {resp.status}",
                        status=resp.status,
                    )
                body = await resp.read()
                media_type = resp.headers.get("Content-Type", "").split(";")[0]
                return body, media_type
            finally:
                resp.release()

        except aiohttp.ClientConnectionError as e:
            raise RegistryConnectionError(f"Failed to get manifest: {e}") from e
        except aiohttp.ClientError as e:
            raise ManifestError(f"Failed to get manifest: {e}") from e

    async def get_blob_stream(
        self, repository: str, digest: str, chunk_size: int = 1 << 20
    ) -> AsyncIterator[bytes]:
        """Stream a blob from the registry.

        Yields:
            Chunks of blob data

        Raises:
            RegistryError: If the blob cannot be fetched
        """
        url = f"{self.registry_url}/v2/{repository}/blobs/{digest}"
        resp = await self._send("GET", url, repository)
        try:
            if resp.status != 200:
                raise RegistryError(
                    f"Failed to get blob {digest}: HTTP {resp.status}", status=resp.status
                )
            async for chunk in resp.content.iter_chunked(chunk_size):
                yield chunk
        except aiohttp.ClientConnectionError as e:
            raise RegistryConnectionError(f"Failed to get blob {digest}: {e}") from e
        finally:
            resp.release()


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data
