"""
OCI registry artifact storage.

Talks to any registry implementing the registry v2 HTTP API. Each version
is stored as an OCI image manifest tagged ``{tag_prefix}{version}`` whose
config blob is the migration manifest and whose single layer is the
artifact archive. Tags cannot contain ``+``, so versions carrying build
metadata are refused.

Example:
    async with OCIStorage(RegistryConfig(registry="ghcr.io", repository="acme/db")) as storage:
        versions = await storage.list()
"""

import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from ..config import RegistryConfig
from ..core.interfaces import ArtifactStorage
from ..core.semver import Version, sort_versions
from ..core.types import Manifest
from ..exceptions import (
    ArtifactNotFoundError,
    ChecksumError,
    DeletionForbiddenError,
    DeletionUnsupportedError,
    DeletionVerificationError,
    InvalidVersionError,
    RegistryAuthenticationError,
    RegistryTransportError,
    StorageError,
)
from ..logging import MigrationLogger, get_migration_logger
from .auth import RegistryAuth, TokenCache, parse_challenge, resolve_credentials

logger = logging.getLogger(__name__)

OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"
ARTIFACT_TYPE = "application/vnd.squizzle.artifact.v1"
CONFIG_MEDIA_TYPE = "application/vnd.squizzle.manifest.v1+json"
LAYER_MEDIA_TYPE = "application/vnd.squizzle.artifact.v1.tar+gzip"

DIGEST_HEADER = "Docker-Content-Digest"
MANIFEST_ACCEPT = f"{OCI_MANIFEST_MEDIA_TYPE}, {DOCKER_MANIFEST_MEDIA_TYPE}"

_ACTIONS = {
    "GET": "pull",
    "HEAD": "pull",
    "POST": "push",
    "PUT": "push",
    "PATCH": "push",
    "DELETE": "delete",
}

_BODY_LIMIT = 2048


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class OCIStorage(ArtifactStorage):
    """
    Registry client implementing the artifact storage contract.

    The bearer-token cache belongs to the instance; two clients never share
    tokens. Pass ``transport`` to route requests through a custom httpx
    transport (for example ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        config: RegistryConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        migration_logger: Optional[MigrationLogger] = None,
    ):
        self.config = config
        self.repository = config.repository
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.auth = RegistryAuth(
            resolve_credentials(config.host, config.username, config.password, config.docker_config_path),
            TokenCache(expiry_margin=config.token_expiry_margin),
        )
        self.migration_logger = migration_logger or get_migration_logger("registry")

    async def __aenter__(self):
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _tag(self, version: str) -> str:
        parsed = Version.parse(version)
        if parsed.build:
            raise InvalidVersionError(
                f"Version {version} carries build metadata, which registry tags cannot hold",
                version=version,
            )
        return f"{self.config.tag_prefix}{parsed}"

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://", "/")):
            return path
        return f"/v2/{self.repository}/{path}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        **kwargs,
    ) -> httpx.Response:
        start = time.perf_counter()
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise RegistryTransportError(
                f"{method} {url} timed out after {self.config.timeout}s",
                code="TIMEOUT",
                details={"url": url},
                original_error=e,
            ) from e
        except httpx.RequestError as e:
            raise RegistryTransportError(
                f"{method} {url} failed: {e}",
                details={"url": url},
                original_error=e,
            ) from e

        self.migration_logger.log_registry_request(
            method, url, response.status_code, (time.perf_counter() - start) * 1000
        )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send a registry request, answering one auth challenge if needed.

        Returns:
            The response, whatever its status, unless authentication failed

        Raises:
            RegistryTransportError: On connection failure or timeout
            RegistryAuthenticationError: If the registry still answers 401 after authenticating
        """
        client = await self._ensure_client()
        url = self._url(path)
        action = _ACTIONS.get(method, "pull")
        request_headers = dict(headers or {})

        authorization = self.auth.cached_authorization(action)
        if authorization:
            request_headers["Authorization"] = authorization

        response = await self._send(client, method, url, request_headers, **kwargs)
        if response.status_code != 401:
            return response

        challenge = parse_challenge(response.headers.get("WWW-Authenticate"))
        if challenge is None:
            raise RegistryAuthenticationError(
                f"{method} {url} was refused without an authentication challenge",
                status_code=401,
                body=response.text[:_BODY_LIMIT],
            )

        request_headers["Authorization"] = await self.auth.authorize(
            client, challenge, action, rejected=authorization
        )
        response = await self._send(client, method, url, request_headers, **kwargs)
        if response.status_code == 401:
            raise RegistryAuthenticationError(
                f"Authentication failed for {method} {url}",
                status_code=401,
                body=response.text[:_BODY_LIMIT],
            )
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        status = response.status_code
        if status < 400:
            return
        body = response.text[:_BODY_LIMIT] if response.content else None
        if status == 404:
            raise ArtifactNotFoundError(f"{what} not found", status_code=status, body=body)
        raise StorageError(f"Registry error during {what}", status_code=status, body=body)

    # ------------------------------------------------------------------
    # Manifests and blobs
    # ------------------------------------------------------------------

    async def _get_image_manifest(self, reference: str) -> Tuple[Dict[str, Any], httpx.Response]:
        response = await self._request("GET", f"manifests/{reference}", headers={"Accept": MANIFEST_ACCEPT})
        self._raise_for_status(response, f"manifest {self.repository}:{reference}")
        try:
            return response.json(), response
        except ValueError as e:
            raise StorageError(
                f"Registry returned an invalid manifest for {reference}", original_error=e
            ) from e

    async def _blob_exists(self, digest: str) -> bool:
        response = await self._request("HEAD", f"blobs/{digest}")
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"blob {digest}")
        return True

    async def _upload_blob(self, data: bytes, media_type: str) -> Dict[str, Any]:
        """Upload ``data`` unless the registry already has it; return its descriptor."""
        digest = sha256_digest(data)
        descriptor = {"mediaType": media_type, "digest": digest, "size": len(data)}

        if await self._blob_exists(digest):
            logger.debug(f"Blob {digest} already present, skipping upload")
            return descriptor

        start = await self._request("POST", "blobs/uploads/", content=b"")
        self._raise_for_status(start, "blob upload start")
        location = start.headers.get("Location")
        if not location:
            raise StorageError("Registry did not return an upload location", status_code=start.status_code)

        upload_url = httpx.URL(location).copy_merge_params({"digest": digest})
        finish = await self._request(
            "PUT",
            str(upload_url),
            headers={"Content-Type": "application/octet-stream"},
            content=data,
        )
        self._raise_for_status(finish, f"blob upload {digest}")
        logger.debug(f"Uploaded blob {digest} ({len(data)} bytes)")
        return descriptor

    async def _fetch_blob(self, digest: str) -> bytes:
        response = await self._request("GET", f"blobs/{digest}")
        self._raise_for_status(response, f"blob {digest}")
        data = response.content
        actual = sha256_digest(data)
        if digest.startswith("sha256:") and actual != digest:
            raise ChecksumError(
                f"Blob digest mismatch: expected {digest}, got {actual}",
                expected_checksum=digest,
                actual_checksum=actual,
            )
        return data

    @staticmethod
    def _select_layer(image: Dict[str, Any], reference: str) -> Dict[str, Any]:
        layers = image.get("layers") or []
        for layer in layers:
            if layer.get("mediaType") == LAYER_MEDIA_TYPE:
                return layer
        if layers:
            return layers[0]
        raise StorageError(f"Image {reference} has no artifact layer")

    async def _read_manifest_blob(self, image: Dict[str, Any], reference: str) -> Manifest:
        config = image.get("config") or {}
        if not config.get("digest"):
            raise StorageError(f"Image {reference} has no manifest config blob")
        data = await self._fetch_blob(config["digest"])
        try:
            return Manifest.from_json(data)
        except ValidationError as e:
            raise StorageError(f"Invalid migration manifest in {reference}: {e}", original_error=e) from e

    # ------------------------------------------------------------------
    # Storage contract
    # ------------------------------------------------------------------

    async def push(self, version: str, artifact: bytes, manifest: Manifest) -> str:
        """Upload the artifact and manifest and tag them ``{tag_prefix}{version}``."""
        tag = self._tag(version)
        config_descriptor = await self._upload_blob(manifest.to_json().encode("utf-8"), CONFIG_MEDIA_TYPE)
        layer_descriptor = await self._upload_blob(artifact, LAYER_MEDIA_TYPE)
        layer_descriptor["annotations"] = {"org.opencontainers.image.title": f"squizzle-v{version}.tar.gz"}

        image = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST_MEDIA_TYPE,
            "artifactType": ARTIFACT_TYPE,
            "config": config_descriptor,
            "layers": [layer_descriptor],
            "annotations": {
                "org.opencontainers.image.version": str(version),
                "org.opencontainers.image.created": manifest.created.isoformat(),
                "io.squizzle.version": str(version),
                "io.squizzle.checksum": manifest.checksum,
            },
        }
        body = json.dumps(image, sort_keys=True, separators=(",", ":")).encode("utf-8")

        response = await self._request(
            "PUT",
            f"manifests/{tag}",
            headers={"Content-Type": OCI_MANIFEST_MEDIA_TYPE},
            content=body,
        )
        self._raise_for_status(response, f"manifest push {tag}")
        digest = response.headers.get(DIGEST_HEADER) or sha256_digest(body)

        location = f"{self.config.host}/{self.repository}:{tag}"
        logger.info(f"Pushed {location}@{digest}")
        return location

    async def pull(self, version: str) -> Tuple[bytes, Manifest]:
        tag = self._tag(version)
        try:
            image, _ = await self._get_image_manifest(tag)
        except ArtifactNotFoundError as e:
            raise ArtifactNotFoundError(
                f"Artifact not found: {version}", status_code=e.status_code, body=e.body
            ) from e

        manifest = await self._read_manifest_blob(image, tag)
        artifact = await self._fetch_blob(self._select_layer(image, tag)["digest"])
        return artifact, manifest

    async def exists(self, version: str) -> bool:
        response = await self._request(
            "HEAD", f"manifests/{self._tag(version)}", headers={"Accept": MANIFEST_ACCEPT}
        )
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"manifest {self._tag(version)}")
        return True

    async def list_tags(self) -> List[str]:
        """All tags of the repository, following pagination links."""
        tags: List[str] = []
        url: Optional[str] = self._url("tags/list")
        params = {"n": self.config.page_size} if self.config.page_size else None
        first = True

        while url:
            response = await self._request("GET", url, params=params)
            if first and response.status_code == 404:
                logger.debug(f"Repository {self.repository} does not exist yet")
                return []
            self._raise_for_status(response, f"tag list of {self.repository}")
            try:
                tags.extend(response.json().get("tags") or [])
            except ValueError as e:
                raise StorageError("Registry returned an invalid tag list", original_error=e) from e

            url = response.links.get("next", {}).get("url")
            params = None
            first = False

        return tags

    async def list(self) -> List[str]:
        prefix = self.config.tag_prefix
        candidates = [tag[len(prefix):] for tag in await self.list_tags() if tag.startswith(prefix)]
        return sort_versions(candidates)

    async def _resolve_digest(self, tag: str) -> Optional[str]:
        response = await self._request("HEAD", f"manifests/{tag}", headers={"Accept": MANIFEST_ACCEPT})
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"manifest {tag}")
        digest = response.headers.get(DIGEST_HEADER)
        if digest:
            return digest

        # Some registries omit the digest header on HEAD
        _, full = await self._get_image_manifest(tag)
        return full.headers.get(DIGEST_HEADER) or sha256_digest(full.content)

    async def delete(self, version: str) -> None:
        """
        Delete a version by digest and confirm the tag is gone.

        Raises:
            DeletionUnsupportedError: If the registry refuses the DELETE verb
            DeletionForbiddenError: If the credentials lack delete permission
            DeletionVerificationError: If the tag still resolves afterwards
        """
        tag = self._tag(version)
        digest = await self._resolve_digest(tag)
        if digest is None:
            logger.info(f"{self.repository}:{tag} already absent")
            return

        response = await self._request("DELETE", f"manifests/{digest}")
        status = response.status_code
        body = response.text[:_BODY_LIMIT] if response.content else None
        if status == 405:
            raise DeletionUnsupportedError(
                f"Registry does not support deleting {self.repository}:{tag}", status_code=status, body=body
            )
        if status == 403:
            raise DeletionForbiddenError(
                f"Not allowed to delete {self.repository}:{tag}", status_code=status, body=body
            )
        if status != 404:
            self._raise_for_status(response, f"delete of {tag}")

        if await self.exists(version):
            raise DeletionVerificationError(
                f"{self.repository}:{tag} is still present after deletion",
                details={"digest": digest},
            )
        logger.info(f"Deleted {self.repository}:{tag} ({digest})")

    async def get_manifest(self, version: str) -> Manifest:
        tag = self._tag(version)
        try:
            image, _ = await self._get_image_manifest(tag)
        except ArtifactNotFoundError as e:
            raise ArtifactNotFoundError(
                f"Artifact not found: {version}", status_code=e.status_code, body=e.body
            ) from e
        return await self._read_manifest_blob(image, tag)


RegistryClient = OCIStorage
