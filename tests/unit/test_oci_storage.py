"""
Unit tests for the OCI registry storage backend.
"""

import base64
import json

import httpx
import pytest

from squizzle.config import RegistryConfig
from squizzle.core.artifact import read_manifest
from squizzle.exceptions import (
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
from squizzle.storage.oci import CONFIG_MEDIA_TYPE, LAYER_MEDIA_TYPE, OCIStorage

from tests.conftest import FakeRegistry, sample_files


def _count(registry: FakeRegistry, method: str, fragment: str) -> int:
    return sum(1 for r in registry.requests if r.method == method and fragment in r.url.path)


@pytest.fixture
async def built(builder):
    return await builder.build("1.0.0", sample_files())


class TestPushPull:
    """Test cases for pushing and pulling artifacts."""

    @pytest.mark.asyncio
    async def test_push_then_pull(self, oci_storage, registry, built):
        """Test that a pushed artifact comes back byte for byte."""
        location = await oci_storage.push("1.0.0", built.artifact, built.manifest)

        assert location == "registry.test/squizzle-artifacts:v1.0.0"
        assert "v1.0.0" in registry.tags

        artifact, manifest = await oci_storage.pull("1.0.0")
        assert artifact == built.artifact
        assert manifest == built.manifest
        assert read_manifest(artifact).version == "1.0.0"

    @pytest.mark.asyncio
    async def test_image_manifest_layout(self, oci_storage, registry, built):
        """Test that the manifest is the config blob and the artifact the layer."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)

        image = json.loads(registry.manifests[registry.tags["v1.0.0"]])
        assert image["schemaVersion"] == 2
        assert image["config"]["mediaType"] == CONFIG_MEDIA_TYPE
        assert image["layers"][0]["mediaType"] == LAYER_MEDIA_TYPE
        assert image["layers"][0]["digest"] == FakeRegistry.digest(built.artifact)
        assert image["layers"][0]["size"] == len(built.artifact)

    @pytest.mark.asyncio
    async def test_existing_blobs_not_reuploaded(self, oci_storage, registry, built):
        """Test that blobs already in the registry are skipped."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)
        uploads = _count(registry, "POST", "blobs/uploads/")

        await oci_storage.push("1.0.0", built.artifact, built.manifest)

        assert uploads == 2
        assert _count(registry, "POST", "blobs/uploads/") == 2

    @pytest.mark.asyncio
    async def test_pull_missing(self, oci_storage):
        """Test pulling an unknown version."""
        with pytest.raises(ArtifactNotFoundError, match="Artifact not found: 9.9.9") as exc_info:
            await oci_storage.pull("9.9.9")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_corrupt_blob_detected(self, oci_storage, registry, built):
        """Test that a blob not matching its digest is refused."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)
        registry.blobs[FakeRegistry.digest(built.artifact)] = b"tampered"

        with pytest.raises(ChecksumError):
            await oci_storage.pull("1.0.0")

    @pytest.mark.asyncio
    async def test_exists_and_get_manifest(self, oci_storage, built):
        """Test probing for versions and fetching only the manifest."""
        assert not await oci_storage.exists("1.0.0")

        await oci_storage.push("1.0.0", built.artifact, built.manifest)

        assert await oci_storage.exists("1.0.0")
        assert (await oci_storage.get_manifest("1.0.0")).checksum == built.manifest.checksum

    @pytest.mark.asyncio
    async def test_build_metadata_rejected(self, oci_storage, registry, built):
        """Test that versions with build metadata are refused before any request."""
        manifest = built.manifest.model_copy(update={"version": "1.0.0+build.5"})

        with pytest.raises(InvalidVersionError, match="build metadata"):
            await oci_storage.push("1.0.0+build.5", built.artifact, manifest)

        assert registry.requests == []


class TestListing:
    """Test cases for tag listing."""

    @pytest.mark.asyncio
    async def test_pagination_follows_links(self, registry, registry_config, built):
        """Test that every page of a three-page tag list is read."""
        config = registry_config.model_copy(update={"page_size": 2})
        async with OCIStorage(config, transport=registry.transport()) as storage:
            for version in ("1.0.0", "1.1.0", "1.2.0", "2.0.0"):
                manifest = built.manifest.model_copy(update={"version": version})
                await storage.push(version, built.artifact, manifest)
            registry.tags["latest"] = registry.tags["v2.0.0"]

            versions = await storage.list()

        assert versions == ["1.0.0", "1.1.0", "1.2.0", "2.0.0"]
        assert _count(registry, "GET", "tags/list") == 3

    @pytest.mark.asyncio
    async def test_list_orders_semantically(self, oci_storage, registry, built):
        """Test that listing sorts by version, not lexically."""
        for version in ("1.10.0", "1.9.0", "1.9.0-rc.1"):
            await oci_storage.push(version, built.artifact, built.manifest.model_copy(update={"version": version}))

        assert await oci_storage.list() == ["1.9.0-rc.1", "1.9.0", "1.10.0"]

    @pytest.mark.asyncio
    async def test_list_empty_repository(self, oci_storage):
        """Test that a repository that does not exist yet lists nothing."""
        assert await oci_storage.list() == []


class TestDelete:
    """Test cases for deleting versions."""

    @pytest.mark.asyncio
    async def test_delete(self, oci_storage, registry, built):
        """Test deleting a version by digest."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)

        await oci_storage.delete("1.0.0")

        assert not await oci_storage.exists("1.0.0")
        deletes = [r for r in registry.requests if r.method == "DELETE"]
        assert len(deletes) == 1
        assert "/manifests/sha256:" in deletes[0].url.path

    @pytest.mark.asyncio
    async def test_delete_absent_is_noop(self, oci_storage, registry):
        """Test that deleting an absent version succeeds without a DELETE."""
        await oci_storage.delete("1.0.0")

        assert _count(registry, "DELETE", "manifests") == 0

    @pytest.mark.asyncio
    async def test_delete_without_head_digest(self, oci_storage, registry, built):
        """Test resolving the digest from the manifest body when HEAD omits it."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)
        registry.omit_head_digest = True

        await oci_storage.delete("1.0.0")

        assert "v1.0.0" not in registry.tags

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (405, DeletionUnsupportedError),
        (403, DeletionForbiddenError),
    ])
    async def test_delete_refused(self, oci_storage, registry, built, status, error):
        """Test that refused deletes map to distinct errors."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)
        registry.delete_status = status

        with pytest.raises(error) as exc_info:
            await oci_storage.delete("1.0.0")

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_delete_not_verified(self, oci_storage, registry, built):
        """Test that a tag surviving deletion is reported."""
        await oci_storage.push("1.0.0", built.artifact, built.manifest)
        registry.keep_tag_after_delete = True

        with pytest.raises(DeletionVerificationError):
            await oci_storage.delete("1.0.0")


class TestAuthentication:
    """Test cases for registry authentication."""

    @pytest.mark.asyncio
    async def test_bearer_token_flow_is_cached(self, oci_storage, registry, built):
        """Test that one token serves every request while it is valid."""
        registry.bearer_token = "s3cr3t"

        await oci_storage.push("1.0.0", built.artifact, built.manifest)
        await oci_storage.pull("1.0.0")
        await oci_storage.list()

        assert len(registry.token_requests) == 1
        token_request = registry.token_requests[0]
        assert token_request.url.params["service"] == "registry.test"
        assert token_request.url.params["scope"] == "repository:squizzle-artifacts:pull,push"

    @pytest.mark.asyncio
    async def test_rejected_token_fails_after_one_retry(self, oci_storage, registry):
        """Test that a second 401 is an authentication error, not a loop."""
        registry.bearer_token = "expected"
        registry.issued_token = "wrong"

        with pytest.raises(RegistryAuthenticationError) as exc_info:
            await oci_storage.exists("1.0.0")

        assert exc_info.value.status_code == 401
        assert len(registry.token_requests) == 1

    @pytest.mark.asyncio
    async def test_401_without_challenge(self, registry_config):
        """Test that a bare 401 is an authentication error."""
        transport = httpx.MockTransport(lambda request: httpx.Response(401))
        async with OCIStorage(registry_config, transport=transport) as storage:
            with pytest.raises(RegistryAuthenticationError):
                await storage.exists("1.0.0")

    @pytest.mark.asyncio
    async def test_basic_auth(self, registry, tmp_path, built):
        """Test answering a basic challenge with explicit credentials."""
        registry.basic_credentials = base64.b64encode(b"alice:pw").decode()
        config = RegistryConfig(
            registry="registry.test", username="alice", password="pw",
            docker_config_path=tmp_path / "none.json",
        )
        async with OCIStorage(config, transport=registry.transport()) as storage:
            await storage.push("1.0.0", built.artifact, built.manifest)
            assert await storage.exists("1.0.0")

    @pytest.mark.asyncio
    async def test_basic_auth_without_credentials(self, oci_storage, registry):
        """Test that a basic challenge without credentials fails clearly."""
        registry.basic_credentials = "unused"

        with pytest.raises(RegistryAuthenticationError, match="no credentials"):
            await oci_storage.exists("1.0.0")

    @pytest.mark.asyncio
    async def test_docker_config_credentials(self, registry, tmp_path):
        """Test that credentials are read from a Docker config file."""
        registry.basic_credentials = base64.b64encode(b"bob:hunter2").decode()
        docker_config = tmp_path / "config.json"
        docker_config.write_text(json.dumps({"auths": {"https://registry.test": {"auth": registry.basic_credentials}}}))
        config = RegistryConfig(registry="registry.test", docker_config_path=docker_config)

        async with OCIStorage(config, transport=registry.transport()) as storage:
            assert not await storage.exists("1.0.0")


class TestTransportErrors:
    """Test cases for transport and HTTP failures."""

    @pytest.mark.asyncio
    async def test_connection_error(self, registry_config):
        """Test that connection failures surface as transport errors."""
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with OCIStorage(registry_config, transport=httpx.MockTransport(handler)) as storage:
            with pytest.raises(RegistryTransportError):
                await storage.exists("1.0.0")

    @pytest.mark.asyncio
    async def test_timeout(self, registry_config):
        """Test that timeouts carry their own error code."""
        def handler(request):
            raise httpx.ReadTimeout("too slow")

        async with OCIStorage(registry_config, transport=httpx.MockTransport(handler)) as storage:
            with pytest.raises(RegistryTransportError) as exc_info:
                await storage.list()

        assert exc_info.value.code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_server_error_keeps_status_and_body(self, registry_config):
        """Test that unexpected statuses carry the HTTP status and body."""
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        async with OCIStorage(registry_config, transport=transport) as storage:
            with pytest.raises(StorageError) as exc_info:
                await storage.list()

        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "boom"
        assert "HTTP 500" in str(exc_info.value)
